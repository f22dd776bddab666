"""Compute backends: numba kernels, worker pool, GPU and CPU."""
