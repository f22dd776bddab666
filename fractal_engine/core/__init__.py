"""Fractal parameter types and coordinate math."""
