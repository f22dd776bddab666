"""Palettes and iteration-to-color mapping."""
