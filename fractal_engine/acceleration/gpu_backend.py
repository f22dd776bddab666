"""
GPU backend using CuPy RawKernels.

Only the Mandelbrot set has a device kernel. It is compiled with fused
multiply-add disabled and mirrors the CPU kernel's operand order, so GPU and
CPU renders are pixel-identical. All device buffers are allocated per call
and released before the call returns.
"""

import threading
from typing import Any, Dict, Optional

import numpy as np
import logging

from ..core.fractal_types import FractalKind, FractalParameters
from ..errors import InitializationFailure, UnsupportedCombination

logger = logging.getLogger(__name__)

# Check for GPU libraries
try:
    import cupy as cp
    import cupyx
    CUPY_AVAILABLE = True
except ImportError:
    cp = None
    cupyx = None
    CUPY_AVAILABLE = False

BLOCK_SIZE = (8, 8)

MANDELBROT_KERNEL_CODE = r'''
extern "C" __global__
void mandelbrot_kernel(const double* fparams, const int* iparams, int* output) {
    const int width = iparams[0];
    const int height = iparams[1];
    const int max_iterations = iparams[2];

    const int x = blockDim.x * blockIdx.x + threadIdx.x;
    const int y = blockDim.y * blockIdx.y + threadIdx.y;
    if (x >= width || y >= height) return;

    const double center_x = fparams[0];
    const double center_y = fparams[1];
    const double zoom = fparams[2];
    const double escape_radius = fparams[3];

    const double w = (double)width;
    const double h = (double)height;
    const double aspect = w / h;
    const double scale = 3.0 / zoom;
    const double real = center_x + (((double)x - w / 2.0) * scale * aspect) / w;
    const double imag = center_y + (((double)y - h / 2.0) * scale) / h;

    double zx = 0.0;
    double zy = 0.0;
    int iteration = 0;
    while (zx * zx + zy * zy <= escape_radius && iteration < max_iterations) {
        double temp = zx * zx - zy * zy + real;
        zy = 2.0 * zx * zy + imag;
        zx = temp;
        iteration++;
    }

    output[y * width + x] = iteration;
}
'''

GPU_KINDS = frozenset({FractalKind.MANDELBROT})


def is_gpu_available() -> bool:
    """Check if CuPy is importable and sees at least one CUDA device."""
    if not CUPY_AVAILABLE:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except cp.cuda.runtime.CUDARuntimeError:
        return False


class GPUBackend:
    """Mandelbrot renderer on a single CUDA device."""

    name = 'gpu'

    def __init__(self, device_id: int = 0):
        self.device_id = device_id
        self.available = False
        self._kernel = None
        self._lock = threading.Lock()

    def supports(self, kind: FractalKind) -> bool:
        return FractalKind.parse(kind) in GPU_KINDS

    def initialize(self) -> bool:
        """
        Probe the library, select the device and compile the kernel.

        Returns:
            True once the backend is ready

        Raises:
            InitializationFailure: if any probe step fails
        """
        if not CUPY_AVAILABLE:
            raise InitializationFailure("CuPy is not installed")
        try:
            device_count = cp.cuda.runtime.getDeviceCount()
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise InitializationFailure(f"CUDA runtime unavailable: {e}") from e
        if device_count == 0:
            raise InitializationFailure("No CUDA device found")

        try:
            with cp.cuda.Device(self.device_id):
                kernel = cp.RawKernel(MANDELBROT_KERNEL_CODE, 'mandelbrot_kernel',
                                      options=('--fmad=false',))
                kernel.compile()
        except Exception as e:
            raise InitializationFailure(f"GPU kernel compilation failed: {e}") from e

        self._kernel = kernel
        self.available = True
        logger.info(f"GPU backend ready on device {self.device_id}")
        return True

    def render(self, params: FractalParameters, width: int, height: int) -> np.ndarray:
        """
        Compute the full iteration matrix on the device.

        Args:
            params: Fractal parameters (Mandelbrot only)
            width, height: Target resolution

        Returns:
            int32 array of shape (height, width)
        """
        if not self.supports(params.kind):
            raise UnsupportedCombination(params.kind.value, self.name)
        if not self.available:
            raise RuntimeError("GPU backend is not initialized")

        pixel_count = width * height
        with self._lock, cp.cuda.Device(self.device_id):
            fparams = storage = iparams = staging = None
            try:
                fparams = cp.asarray(np.array(
                    [params.center_x, params.center_y, params.zoom, params.escape_radius],
                    dtype=np.float64))
                iparams = cp.asarray(np.array([width, height, params.iterations], dtype=np.int32))
                storage = cp.empty(pixel_count, dtype=cp.int32)
                staging = cupyx.empty_pinned((pixel_count,), dtype=np.int32)

                grid = ((width + BLOCK_SIZE[0] - 1) // BLOCK_SIZE[0],
                        (height + BLOCK_SIZE[1] - 1) // BLOCK_SIZE[1])
                self._kernel(grid, BLOCK_SIZE, (fparams, iparams, storage))

                storage.get(out=staging)
                return staging.reshape(height, width).copy()
            finally:
                del fparams, iparams, storage, staging
                self._release_pools()

    @staticmethod
    def _release_pools() -> None:
        cp.get_default_memory_pool().free_all_blocks()
        cp.get_default_pinned_memory_pool().free_all_blocks()

    def get_device_info(self) -> Dict[str, Any]:
        """Get GPU device information."""
        if not self.available:
            return {'available': False}

        with cp.cuda.Device(self.device_id) as device:
            properties = cp.cuda.runtime.getDeviceProperties(self.device_id)
            free_memory, total_memory = device.mem_info
            name = properties['name']
            return {
                'available': True,
                'device_id': device.id,
                'device_name': name.decode() if isinstance(name, bytes) else name,
                'compute_capability': device.compute_capability,
                'total_memory': total_memory,
                'free_memory': free_memory,
            }

    def dispose(self) -> None:
        if self.available:
            self._release_pools()
        self._kernel = None
        self.available = False


def create_gpu_backend(device_id: int = 0) -> Optional[GPUBackend]:
    """
    Create and initialize a GPU backend.

    Returns:
        A ready GPUBackend, or None when the GPU cannot be used
    """
    backend = GPUBackend(device_id)
    try:
        backend.initialize()
    except InitializationFailure as e:
        logger.warning(f"GPU acceleration disabled: {e}")
        return None
    return backend
