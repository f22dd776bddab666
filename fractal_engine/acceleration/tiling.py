"""
Tile-size policy, tile grids and tile compositing for the worker pool.
"""

from typing import List, Optional

import numpy as np
import logging

from ..core.math_functions import RenderRegion

logger = logging.getLogger(__name__)

# (pixels per worker upper bound, tile edge) in ascending order
TILE_SIZE_THRESHOLDS = (
    (8192, 64),
    (32768, 96),
    (131072, 128),
)
LARGEST_TILE_SIZE = 160


def choose_tile_size(width: int, height: int, worker_count: int,
                     hint: Optional[int] = None) -> int:
    """
    Pick a square tile edge for a render.

    Smaller images per worker get smaller tiles so every worker has several
    tiles to chew on; an explicit ``hint`` always wins.

    Args:
        width, height: Full target resolution
        worker_count: Number of pool workers
        hint: Caller-provided tile size

    Returns:
        Tile edge length in pixels
    """
    if hint is not None:
        if hint <= 0:
            raise ValueError("tile_size must be positive")
        return int(hint)

    pixels_per_worker = (width * height) / max(1, worker_count)
    for limit, size in TILE_SIZE_THRESHOLDS:
        if pixels_per_worker < limit:
            return size
    return LARGEST_TILE_SIZE


def create_tile_grid(width: int, height: int, tile_size: int) -> List[RenderRegion]:
    """
    Create a row-major grid of tiles covering ``width`` x ``height``.

    Edge tiles are clipped, so the tiles cover the target exactly once.

    Args:
        width: Total image width
        height: Total image height
        tile_size: Tile edge (pixels)

    Returns:
        List of RenderRegion tiles
    """
    if width <= 0 or height <= 0:
        raise ValueError("Width and height must be positive")
    if tile_size <= 0:
        raise ValueError("tile_size must be positive")

    tiles = []
    for y in range(0, height, tile_size):
        for x in range(0, width, tile_size):
            tiles.append(RenderRegion(
                x=x,
                y=y,
                width=min(tile_size, width - x),
                height=min(tile_size, height - y),
            ))

    logger.debug(f"Created {len(tiles)} tiles of target size {tile_size}x{tile_size}")
    return tiles


class TileCompositor:
    """Assembles landed tiles into full-size pixel and iteration buffers."""

    def __init__(self, width: int, height: int, total_tiles: int):
        self.width = width
        self.height = height
        self.total_tiles = total_tiles
        self.pixels = np.zeros((height, width, 4), dtype=np.uint8)
        self.iterations = np.zeros((height, width), dtype=np.int32)
        self.completed = 0

    def place(self, region: RenderRegion, pixels: np.ndarray, iterations: np.ndarray) -> float:
        """
        Copy one tile into its slot.

        Returns:
            Overall progress after this tile, ``completed / total``
        """
        if not region.fits_within(self.width, self.height):
            raise ValueError(f"Tile {region} does not fit a {self.width}x{self.height} target")
        if iterations.shape != (region.height, region.width):
            raise ValueError(
                f"Tile {region} returned shape {iterations.shape}, "
                f"expected {(region.height, region.width)}"
            )

        rows, cols = region.slices()
        self.pixels[rows, cols] = pixels
        self.iterations[rows, cols] = iterations
        self.completed += 1
        return self.completed / self.total_tiles
