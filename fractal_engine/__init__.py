"""
Multi-backend fractal computation engine.

Computes escape-time fractals (Mandelbrot, Julia, Burning Ship) and the
Newton root-convergence fractal on a CUDA GPU, a pool of worker threads or a
single CPU thread, and maps the results to RGBA8 pixels through named
palettes.

Example usage:
    >>> import asyncio
    >>> from fractal_engine import FractalEngine, RenderOptions, create_parameters
    >>> async def main():
    ...     async with FractalEngine() as engine:
    ...         params = create_parameters('mandelbrot', iterations=200)
    ...         return await engine.render_fractal('mandelbrot', params,
    ...                                            RenderOptions(width=640, height=480))
    >>> result = asyncio.run(main())
    >>> result.pixels.shape
    (480, 640, 4)
"""

__version__ = "1.0.0"
__author__ = "Fractal Engine Team"

from fractal_engine.core.fractal_types import (
    Complex,
    FractalKind,
    FractalParameters,
    MandelbrotParameters,
    JuliaParameters,
    BurningShipParameters,
    NewtonParameters,
    create_parameters,
    default_parameters,
)
from fractal_engine.core.math_functions import RenderRegion, decode_newton
from fractal_engine.rendering.coloring import Palette, PaletteCache, generate_palette
from fractal_engine.config import EngineConfig, ConfigManager
from fractal_engine.errors import (
    FractalEngineError,
    InitializationFailure,
    UnsupportedCombination,
    BackendUnavailable,
    EngineNotReady,
    TileFailure,
)

# Main API classes
from fractal_engine.api import FractalEngine, RenderOptions, RenderResult, RenderStats, Backend

__all__ = [
    "FractalEngine",
    "RenderOptions",
    "RenderResult",
    "RenderStats",
    "Backend",
    "Complex",
    "FractalKind",
    "FractalParameters",
    "MandelbrotParameters",
    "JuliaParameters",
    "BurningShipParameters",
    "NewtonParameters",
    "create_parameters",
    "default_parameters",
    "RenderRegion",
    "decode_newton",
    "Palette",
    "PaletteCache",
    "generate_palette",
    "EngineConfig",
    "ConfigManager",
    "FractalEngineError",
    "InitializationFailure",
    "UnsupportedCombination",
    "BackendUnavailable",
    "EngineNotReady",
    "TileFailure",
]
