"""
Single-threaded CPU fallback.

Runs the numba region kernels on the event-loop thread in row bands and
yields control between bands so other coroutines keep running during long
renders.
"""

import asyncio
from typing import Callable, Optional

import numpy as np
import logging

from ..core.fractal_types import FractalParameters
from ..core.math_functions import RenderRegion
from .numba_backend import compute_region

logger = logging.getLogger(__name__)


class CPUBackend:
    """Band-by-band renderer on the calling (event-loop) thread."""

    name = 'cpu'

    def __init__(self, yield_rows: int = 20):
        if yield_rows <= 0:
            raise ValueError("yield_rows must be positive")
        self.yield_rows = yield_rows

    async def render(self, params: FractalParameters, width: int, height: int,
                     on_progress: Optional[Callable[[float], None]] = None) -> np.ndarray:
        """
        Compute the full iteration matrix.

        Args:
            params: Fractal parameters
            width, height: Target resolution
            on_progress: Called with the completed fraction after each band

        Returns:
            int32 array of shape (height, width)
        """
        iterations = np.empty((height, width), dtype=np.int32)
        for band in RenderRegion(0, 0, width, height).row_bands(self.yield_rows):
            iterations[band.y:band.y_end] = compute_region(params, width, height, band)
            if on_progress is not None:
                on_progress(band.y_end / height)
            await asyncio.sleep(0)
        logger.debug(f"CPU render of {width}x{height} finished")
        return iterations
