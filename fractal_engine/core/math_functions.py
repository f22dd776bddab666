"""
Coordinate mapping and value encodings shared by every backend.

The view is described by a center, a zoom factor and the full target
resolution: at zoom 1 the plane spans 3 units vertically and
``3 * width / height`` units horizontally. Every backend maps pixels with the
same expression, in the same operand order, so results are bit-identical.
"""

from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np
import logging

logger = logging.getLogger(__name__)

# Newton iteration counts are stored in the low two decimal digits.
NEWTON_ROOT_STRIDE = 100
NEWTON_ITERATION_CAP = NEWTON_ROOT_STRIDE - 1
NON_CONVERGENT_ROOT = -1


@dataclass(frozen=True)
class RenderRegion:
    """A sub-rectangle of the full target resolution (a tile)."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Region width and height must be positive")
        if self.x < 0 or self.y < 0:
            raise ValueError("Region origin must be non-negative")

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def x_end(self) -> int:
        return self.x + self.width

    @property
    def y_end(self) -> int:
        return self.y + self.height

    def slices(self) -> Tuple[slice, slice]:
        """Row/column slices addressing this region in a full-size array."""
        return slice(self.y, self.y_end), slice(self.x, self.x_end)

    def row_bands(self, rows: int) -> Iterator["RenderRegion"]:
        """Split into horizontal bands of at most ``rows`` rows."""
        for y in range(self.y, self.y_end, rows):
            yield RenderRegion(self.x, y, self.width, min(rows, self.y_end - y))

    def fits_within(self, width: int, height: int) -> bool:
        return self.x_end <= width and self.y_end <= height


class ComplexPlane:
    """Maps pixels of a ``width`` x ``height`` target onto the complex plane."""

    def __init__(self, width: int, height: int, center_x: float, center_y: float, zoom: float):
        """
        Initialize the plane mapping.

        Args:
            width, height: Full target resolution in pixels
            center_x, center_y: Complex coordinate at the image center
            zoom: Magnification; 1 shows a 3-unit tall window
        """
        if width <= 0 or height <= 0:
            raise ValueError("Width and height must be positive")
        if zoom <= 0:
            raise ValueError("zoom must be positive")
        self.width = width
        self.height = height
        self.center_x = center_x
        self.center_y = center_y
        self.zoom = zoom

    @classmethod
    def from_parameters(cls, params, width: int, height: int) -> "ComplexPlane":
        return cls(width, height, params.center_x, params.center_y, params.zoom)

    @property
    def scale(self) -> float:
        return 3.0 / self.zoom

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def pixel_to_complex(self, px: float, py: float) -> complex:
        """Convert pixel coordinates to a complex number."""
        scale = 3.0 / self.zoom
        aspect = self.width / self.height
        real = self.center_x + ((px - self.width / 2.0) * scale * aspect) / self.width
        imag = self.center_y + ((py - self.height / 2.0) * scale) / self.height
        return complex(real, imag)

    def complex_to_pixel(self, c: complex) -> Tuple[float, float]:
        """Convert a complex number to (fractional) pixel coordinates."""
        scale = 3.0 / self.zoom
        aspect = self.width / self.height
        px = (c.real - self.center_x) * self.width / (scale * aspect) + self.width / 2.0
        py = (c.imag - self.center_y) * self.height / scale + self.height / 2.0
        return px, py

    def bounds(self) -> Tuple[float, float, float, float]:
        """Visible window as (xmin, xmax, ymin, ymax)."""
        top_left = self.pixel_to_complex(0, 0)
        bottom_right = self.pixel_to_complex(self.width, self.height)
        return top_left.real, bottom_right.real, top_left.imag, bottom_right.imag


def encode_newton(root: np.ndarray, iterations: np.ndarray) -> np.ndarray:
    """
    Pack Newton results into the composite ``root * 100 + iterations`` value.

    Iteration counts are capped at 99 so they never spill into the root digit.
    Non-convergent pixels use root -1 and decode back to it.
    """
    capped = np.minimum(np.asarray(iterations), NEWTON_ITERATION_CAP)
    return (np.asarray(root) * NEWTON_ROOT_STRIDE + capped).astype(np.int32)


def decode_newton(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split composite Newton values into (root_index, iterations_in_range).

    Floor division keeps encoded non-convergent pixels at root -1.
    """
    root, iterations = np.divmod(np.asarray(values, dtype=np.int64), NEWTON_ROOT_STRIDE)
    return root, iterations
