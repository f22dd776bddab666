"""
Numba JIT kernels for per-pixel fractal computation.

Point kernels map one complex coordinate to an iteration count (Newton also
yields a root index). Region kernels fill an int32 matrix for a sub-rectangle
of the full target. All kernels are pure, release the GIL and share no state,
so the same code runs in pool worker threads and on the event-loop thread.
"""

import time
from typing import Dict, Any

import numpy as np
import numba
from numba import njit
import logging

from ..core.fractal_types import FractalKind, FractalParameters, default_parameters
from ..core.math_functions import NON_CONVERGENT_ROOT, RenderRegion, encode_newton

logger = logging.getLogger(__name__)

# |f'(z)| below this is treated as a critical point
NEWTON_DERIVATIVE_EPSILON = 1e-14


@njit(cache=True, nogil=True)
def pixel_coordinate(px, py, width, height, center_x, center_y, zoom):
    """Complex coordinate (real, imag) of pixel (px, py)."""
    aspect = width / height
    scale = 3.0 / zoom
    real = center_x + ((px - width / 2.0) * scale * aspect) / width
    imag = center_y + ((py - height / 2.0) * scale) / height
    return real, imag


@njit(cache=True, nogil=True)
def mandelbrot_point(real, imag, max_iterations, escape_radius):
    zx = 0.0
    zy = 0.0
    iteration = 0
    while zx * zx + zy * zy <= escape_radius and iteration < max_iterations:
        temp = zx * zx - zy * zy + real
        zy = 2.0 * zx * zy + imag
        zx = temp
        iteration += 1
    return iteration


@njit(cache=True, nogil=True)
def julia_point(real, imag, c_real, c_imag, max_iterations, escape_radius):
    zx = real
    zy = imag
    iteration = 0
    while zx * zx + zy * zy <= escape_radius and iteration < max_iterations:
        temp = zx * zx - zy * zy + c_real
        zy = 2.0 * zx * zy + c_imag
        zx = temp
        iteration += 1
    return iteration


@njit(cache=True, nogil=True)
def burning_ship_point(real, imag, max_iterations, escape_radius):
    zx = 0.0
    zy = 0.0
    iteration = 0
    while zx * zx + zy * zy <= escape_radius and iteration < max_iterations:
        temp = zx * zx - zy * zy + real
        zy = abs(2.0 * zx * zy) + imag
        zx = temp
        iteration += 1
    return iteration


@njit(cache=True, nogil=True)
def newton_point(real, imag, roots, tolerance, max_iterations):
    """
    Newton iteration for f(z) = prod(z - r_i).

    f and f' are both evaluated straight from the root list; f' is the sum
    over i of the product of every factor except the i-th.

    Args:
        real, imag: Starting point
        roots: complex128 array of polynomial roots
        tolerance: Step size below which the iteration has converged
        max_iterations: Iteration cap

    Returns:
        Tuple of (root_index, iteration); root_index is -1 when the point
        does not converge or hits a critical point.
    """
    n = roots.shape[0]
    z = complex(real, imag)
    for iteration in range(max_iterations):
        f = complex(1.0, 0.0)
        for i in range(n):
            f = f * (z - roots[i])

        df = complex(0.0, 0.0)
        for i in range(n):
            term = complex(1.0, 0.0)
            for j in range(n):
                if j != i:
                    term = term * (z - roots[j])
            df = df + term

        if abs(df) < NEWTON_DERIVATIVE_EPSILON:
            return NON_CONVERGENT_ROOT, max_iterations

        z_next = z - f / df
        if abs(z_next - z) < tolerance:
            tolerance_sq = tolerance * tolerance
            best = NON_CONVERGENT_ROOT
            best_distance = np.inf
            for i in range(n):
                dx = z_next.real - roots[i].real
                dy = z_next.imag - roots[i].imag
                distance = dx * dx + dy * dy
                if distance < best_distance:
                    best_distance = distance
                    best = i
                    if distance < tolerance_sq:
                        break
            return best, iteration
        z = z_next

    return NON_CONVERGENT_ROOT, max_iterations


@njit(cache=True, nogil=True)
def mandelbrot_region(x0, y0, region_width, region_height, width, height,
                      center_x, center_y, zoom, max_iterations, escape_radius):
    out = np.empty((region_height, region_width), dtype=np.int32)
    for row in range(region_height):
        for col in range(region_width):
            real, imag = pixel_coordinate(x0 + col, y0 + row, width, height,
                                          center_x, center_y, zoom)
            out[row, col] = mandelbrot_point(real, imag, max_iterations, escape_radius)
    return out


@njit(cache=True, nogil=True)
def julia_region(x0, y0, region_width, region_height, width, height,
                 center_x, center_y, zoom, max_iterations, escape_radius,
                 c_real, c_imag):
    out = np.empty((region_height, region_width), dtype=np.int32)
    for row in range(region_height):
        for col in range(region_width):
            real, imag = pixel_coordinate(x0 + col, y0 + row, width, height,
                                          center_x, center_y, zoom)
            out[row, col] = julia_point(real, imag, c_real, c_imag,
                                        max_iterations, escape_radius)
    return out


@njit(cache=True, nogil=True)
def burning_ship_region(x0, y0, region_width, region_height, width, height,
                        center_x, center_y, zoom, max_iterations, escape_radius):
    out = np.empty((region_height, region_width), dtype=np.int32)
    for row in range(region_height):
        for col in range(region_width):
            real, imag = pixel_coordinate(x0 + col, y0 + row, width, height,
                                          center_x, center_y, zoom)
            out[row, col] = burning_ship_point(real, imag, max_iterations, escape_radius)
    return out


@njit(cache=True, nogil=True)
def newton_region(x0, y0, region_width, region_height, width, height,
                  center_x, center_y, zoom, max_iterations, roots, tolerance):
    """Newton region as separate (root index, iteration count) arrays."""
    root_out = np.empty((region_height, region_width), dtype=np.int32)
    iteration_out = np.empty((region_height, region_width), dtype=np.int32)
    for row in range(region_height):
        for col in range(region_width):
            real, imag = pixel_coordinate(x0 + col, y0 + row, width, height,
                                          center_x, center_y, zoom)
            root, iteration = newton_point(real, imag, roots, tolerance, max_iterations)
            root_out[row, col] = root
            iteration_out[row, col] = iteration
    return root_out, iteration_out


def roots_array(params) -> np.ndarray:
    """Newton roots as the complex128 array the kernels expect."""
    return np.array([r.to_builtin() for r in params.roots], dtype=np.complex128)


def compute_region(params: FractalParameters, width: int, height: int,
                   region: RenderRegion) -> np.ndarray:
    """
    Compute the iteration matrix for ``region`` of a ``width`` x ``height`` render.

    Args:
        params: Fractal parameters; the ``kind`` tag selects the kernel
        width, height: Full target resolution
        region: Sub-rectangle to compute

    Returns:
        int32 array of shape (region.height, region.width)
    """
    common = (region.x, region.y, region.width, region.height, width, height,
              float(params.center_x), float(params.center_y), float(params.zoom),
              int(params.iterations))
    kind = params.kind
    if kind is FractalKind.MANDELBROT:
        return mandelbrot_region(*common, float(params.escape_radius))
    elif kind is FractalKind.JULIA:
        return julia_region(*common, float(params.escape_radius),
                            float(params.c.real), float(params.c.imag))
    elif kind is FractalKind.BURNING_SHIP:
        return burning_ship_region(*common, float(params.escape_radius))
    elif kind is FractalKind.NEWTON:
        root, iterations = newton_region(*common, roots_array(params), float(params.tolerance))
        return encode_newton(root, iterations)
    raise ValueError(f"No kernel for fractal kind {kind!r}")


def warm_up_kernels() -> float:
    """
    Compile every region kernel on a tiny input.

    Returns:
        Seconds spent compiling (near zero when the on-disk cache is warm)
    """
    start_time = time.perf_counter()
    region = RenderRegion(0, 0, 2, 2)
    for kind in FractalKind:
        compute_region(default_parameters(kind), 2, 2, region)
    elapsed = time.perf_counter() - start_time
    logger.debug(f"Kernel warm-up finished in {elapsed:.2f}s")
    return elapsed


def get_kernel_info() -> Dict[str, Any]:
    """Describe the JIT environment."""
    return {
        'numba_version': numba.__version__,
        'threading_layer_threads': numba.config.NUMBA_NUM_THREADS,
        'kinds': [kind.value for kind in FractalKind],
    }
