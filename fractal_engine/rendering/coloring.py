"""
Palette generation and iteration-to-color mapping.

Palettes are closed-form functions of ``t`` in [0, 1] sampled at a fixed
number of steps and stored as read-only RGBA8 arrays. Mapping functions turn
an iteration matrix (or a composite Newton matrix) into an ``H x W x 4``
uint8 pixel buffer.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np
import matplotlib.colors as mcolors
import logging

from ..core.fractal_types import FractalKind
from ..core.math_functions import NON_CONVERGENT_ROOT, decode_newton

logger = logging.getLogger(__name__)

DEFAULT_STEPS = 256
DEFAULT_ROOT_COUNT = 3
OPAQUE_BLACK = np.array([0, 0, 0, 255], dtype=np.uint8)


@dataclass(frozen=True)
class Palette:
    """A named, fixed-length RGBA8 palette."""

    name: str
    colors: np.ndarray  # (steps, 4) uint8, read-only

    def __len__(self) -> int:
        return self.colors.shape[0]

    def __getitem__(self, index):
        return self.colors[index]

    @property
    def steps(self) -> int:
        return self.colors.shape[0]

    def to_colormap(self) -> mcolors.ListedColormap:
        """Convert palette to a matplotlib colormap."""
        return mcolors.ListedColormap(self.colors[:, :3] / 255.0, name=self.name)


def _rgba(r, g, b) -> np.ndarray:
    """Stack channel arrays into an opaque (steps, 4) uint8 array."""
    r, g, b = np.broadcast_arrays(r, g, b)
    alpha = np.full(r.shape, 255)
    return np.stack([r, g, b, alpha], axis=-1).astype(np.uint8)


def _hue_ramp(hue, saturation, value) -> np.ndarray:
    """HSV samples to 0-255 floats via matplotlib."""
    hsv = np.stack(np.broadcast_arrays(hue, saturation, value), axis=-1).astype(float)
    return mcolors.hsv_to_rgb(hsv) * 255.0


def _round_half_up(values) -> np.ndarray:
    return np.floor(np.asarray(values) + 0.5)


def _segments(t: np.ndarray, stops, channels) -> np.ndarray:
    """
    Piecewise-linear palette between color stops.

    Args:
        t: Sample positions in [0, 1]
        stops: Breakpoints, one fewer than the number of segments
        channels: Per-segment ((r0, g0, b0), (r1, g1, b1)) endpoints

    Returns:
        (steps, 4) uint8 array
    """
    edges = np.concatenate([[0.0], stops, [1.0]])
    segment = np.searchsorted(stops, t, side='right')
    start = edges[segment]
    width = edges[segment + 1] - start
    s = (t - start) / width
    begin = np.array([c[0] for c in channels], dtype=float)[segment]
    end = np.array([c[1] for c in channels], dtype=float)[segment]
    rgb = np.floor(begin + s[:, None] * (end - begin))
    return _rgba(rgb[:, 0], rgb[:, 1], rgb[:, 2])


def _mandelbrot(t: np.ndarray) -> np.ndarray:
    return _segments(t, [0.16, 0.42, 0.6425, 0.8575], [
        ((0, 0, 0), (66, 30, 15)),
        ((66, 30, 15), (25, 7, 26)),
        ((25, 7, 26), (9, 1, 47)),
        ((9, 1, 47), (2, 4, 73)),
        ((2, 4, 73), (0, 7, 100)),
    ])


def _julia(t: np.ndarray) -> np.ndarray:
    # cosine gradient: deep blue through teal to warm white
    phase = np.array([0.0, 0.10, 0.20])
    rgb = 0.5 + 0.5 * np.cos(2.0 * np.pi * (t[:, None] * 0.9 + 0.55 + phase))
    rgb = np.floor(rgb * 255.0)
    return _rgba(rgb[:, 0], rgb[:, 1], rgb[:, 2])


def _hot(t: np.ndarray) -> np.ndarray:
    r = np.minimum(255, np.floor(255 * t * 3))
    g = np.clip(np.floor(255 * (3 * t - 1)), 0, 255)
    b = np.clip(np.floor(255 * (3 * t - 2)), 0, 255)
    return _rgba(r, g, b)


def _cool(t: np.ndarray) -> np.ndarray:
    return _rgba(np.floor(255 * t), np.floor(255 * (1 - t)), 255)


def _rainbow(t: np.ndarray) -> np.ndarray:
    steps = t.shape[0]
    hue = np.arange(steps) / steps
    rgb = _round_half_up(_hue_ramp(hue, 1.0, 1.0))
    return _rgba(rgb[:, 0], rgb[:, 1], rgb[:, 2])


def _fire(t: np.ndarray) -> np.ndarray:
    low = t < 0.5
    s = np.where(low, t * 2, (t - 0.5) * 2)
    r = np.where(low, np.floor(s * 255), 255)
    g = np.where(low, 0, np.floor(s * 255))
    b = np.where(low, 0, np.floor(s * 100))
    return _rgba(r, g, b)


def _ocean(t: np.ndarray) -> np.ndarray:
    low = t < 0.5
    s = np.where(low, t * 2, (t - 0.5) * 2)
    r = np.where(low, 0, np.floor(s * 100))
    g = np.where(low, np.floor(s * 100), np.floor(100 + s * 155))
    b = np.where(low, np.floor(50 + s * 205), 255)
    return _rgba(r, g, b)


def _sunset(t: np.ndarray) -> np.ndarray:
    return _segments(t, [0.3, 0.7], [
        ((50, 0, 0), (255, 50, 100)),
        ((255, 50, 100), (255, 215, 155)),
        ((255, 215, 155), (255, 255, 255)),
    ])


def _grayscale(t: np.ndarray) -> np.ndarray:
    value = np.floor(t * 255)
    return _rgba(value, value, value)


def newton_palette_colors(steps: int, root_count: int) -> np.ndarray:
    """
    Root-partitioned palette for Newton fractals.

    The palette is split into ``root_count`` contiguous sets (plus a gray set
    when there are four or more roots), one hue per root, each fading from
    full brightness towards dark as the convergence time grows. The tail is
    padded with the last color so the length is exactly ``steps``.
    """
    root_count = max(1, int(root_count))
    partitions = root_count + 1 if root_count >= 4 else root_count
    per_set = max(1, steps // partitions)
    ramp = np.linspace(0.0, 1.0, per_set)
    brightness = 1.0 - 0.75 * ramp

    sets = []
    for root in range(root_count):
        rgb = np.floor(_hue_ramp(root / root_count, 0.85, brightness))
        sets.append(_rgba(rgb[:, 0], rgb[:, 1], rgb[:, 2]))
    if partitions > root_count:
        gray = np.floor(brightness * 200)
        sets.append(_rgba(gray, gray, gray))

    colors = np.concatenate(sets, axis=0)[:steps]
    if colors.shape[0] < steps:
        pad = np.repeat(colors[-1:], steps - colors.shape[0], axis=0)
        colors = np.concatenate([colors, pad], axis=0)
    return colors


PALETTE_GENERATORS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    'mandelbrot': _mandelbrot,
    'julia': _julia,
    'hot': _hot,
    'cool': _cool,
    'rainbow': _rainbow,
    'fire': _fire,
    'ocean': _ocean,
    'sunset': _sunset,
    'grayscale': _grayscale,
}

PALETTE_DESCRIPTIONS = {
    'mandelbrot': "Dark brown to deep blue bands",
    'julia': "Cosine gradient from deep blue to warm white",
    'newton': "One hue per root, darkening with convergence time",
    'hot': "Black through red and yellow to white",
    'cool': "Cyan to magenta",
    'rainbow': "Full hue wheel",
    'fire': "Black to red, then orange to yellow",
    'ocean': "Navy through teal to light blue",
    'sunset': "Maroon through pink and peach to white",
    'grayscale': "Black to white",
}

# Palette used when a render request does not name one.
DEFAULT_PALETTES = {
    FractalKind.MANDELBROT: 'mandelbrot',
    FractalKind.JULIA: 'julia',
    FractalKind.BURNING_SHIP: 'fire',
    FractalKind.NEWTON: 'newton',
}


def list_palettes() -> Dict[str, str]:
    """Get a dictionary of palette names and their descriptions."""
    return dict(PALETTE_DESCRIPTIONS)


def validate_palette_name(name: str) -> str:
    if name not in PALETTE_DESCRIPTIONS:
        available = ", ".join(sorted(PALETTE_DESCRIPTIONS))
        raise ValueError(f"Unknown palette '{name}'. Available: {available}")
    return name


def resolve_palette_name(kind: Union[str, FractalKind], name: Optional[str] = None) -> str:
    """Validated palette name, falling back to the kind's default."""
    if name is None:
        return DEFAULT_PALETTES[FractalKind.parse(kind)]
    return validate_palette_name(name)


def generate_palette(name: str, steps: int = DEFAULT_STEPS,
                     root_count: Optional[int] = None) -> Palette:
    """
    Build a palette from its closed form.

    Args:
        name: Palette name (see ``list_palettes()``)
        steps: Number of entries, at least 2
        root_count: Number of Newton roots; only used by the 'newton' palette

    Returns:
        Palette with exactly ``steps`` read-only RGBA8 entries
    """
    validate_palette_name(name)
    if steps < 2:
        raise ValueError("Palette needs at least 2 steps")

    if name == 'newton':
        colors = newton_palette_colors(steps, root_count or DEFAULT_ROOT_COUNT)
    else:
        colors = PALETTE_GENERATORS[name](np.linspace(0.0, 1.0, steps))
    colors = np.ascontiguousarray(colors, dtype=np.uint8)
    colors.setflags(write=False)
    return Palette(name, colors)


class PaletteCache:
    """
    Memoizes generated palettes by (name, steps, root_count).

    Bounded; the least recently used entry is evicted first. Not thread-safe:
    every owner (the engine, each pool worker) keeps its own instance.
    """

    def __init__(self, max_size: int = 64):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: "OrderedDict[Tuple[str, int, Optional[int]], Palette]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, name: str, steps: int = DEFAULT_STEPS,
            root_count: Optional[int] = None) -> Palette:
        """Return the cached palette, generating it on first use."""
        if name == 'newton':
            root_count = root_count or DEFAULT_ROOT_COUNT
        else:
            root_count = None
        key = (name, steps, root_count)

        palette = self._entries.get(key)
        if palette is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            return palette

        self.misses += 1
        palette = generate_palette(name, steps, root_count)
        self._entries[key] = palette
        if len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted palette {evicted}")
        return palette

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key) -> bool:
        return key in self._entries


def apply_palette(values: np.ndarray, max_iterations: int, palette: Palette) -> np.ndarray:
    """
    Standard escape-time mapping.

    ``index = floor((value / max) * (steps - 1))``; pixels that reached the
    iteration cap are opaque black.

    Args:
        values: Iteration matrix
        max_iterations: Iteration cap of the render
        palette: Palette to sample

    Returns:
        H x W x 4 uint8 pixel buffer
    """
    values = np.asarray(values)
    steps = len(palette)
    index = np.floor((values / max_iterations) * (steps - 1)).astype(np.int64)
    np.clip(index, 0, steps - 1, out=index)
    pixels = palette.colors[index]
    pixels[values == max_iterations] = OPAQUE_BLACK
    return pixels


def apply_newton_palette(values: np.ndarray, max_iterations: int, palette: Palette,
                         root_count: int) -> np.ndarray:
    """
    Root-aware mapping for composite Newton values.

    Each root owns a contiguous set of palette entries; the offset inside the
    set grows with the convergence time. Non-convergent pixels are black, as
    are roots outside the palette unless it carries the extra gray set.
    """
    root, iterations = decode_newton(values)
    steps = len(palette)
    extended = root_count >= 4
    partitions = root_count + 1 if extended else root_count
    per_set = max(1, steps // partitions)

    offset = np.floor((iterations / max_iterations) * (per_set - 1)).astype(np.int64)
    np.clip(offset, 0, per_set - 1, out=offset)

    valid = (root >= 0) & (root < root_count)
    overflow = root >= root_count
    index = np.zeros(root.shape, dtype=np.int64)
    index[valid] = root[valid] * per_set + offset[valid]
    if extended:
        index[overflow] = root_count * per_set + offset[overflow]
    np.clip(index, 0, steps - 1, out=index)

    pixels = palette.colors[index]
    pixels[~(valid | (overflow & extended))] = OPAQUE_BLACK
    return pixels


def colorize(values: np.ndarray, kind: Union[str, FractalKind], max_iterations: int,
             palette_name: str, cache: PaletteCache, steps: int = DEFAULT_STEPS,
             root_count: Optional[int] = None) -> np.ndarray:
    """
    Map a kernel's output to RGBA8 for any kind/palette combination.

    Newton data under the 'newton' palette uses the root-aware mapping. Under
    any other palette it is decoded first and colored by convergence time,
    with non-convergent pixels black.
    """
    kind = FractalKind.parse(kind)
    palette = cache.get(palette_name, steps, root_count)

    if kind is not FractalKind.NEWTON:
        return apply_palette(values, max_iterations, palette)

    root_count = root_count or DEFAULT_ROOT_COUNT
    if palette_name == 'newton':
        return apply_newton_palette(values, max_iterations, palette, root_count)

    root, iterations = decode_newton(values)
    pixels = apply_palette(iterations, max_iterations, palette)
    pixels[root == NON_CONVERGENT_ROOT] = OPAQUE_BLACK
    return pixels
