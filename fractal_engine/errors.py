"""
Exception types raised by the fractal engine.

Initialization problems are caught and logged by the engine and only show up
through its capability getters. Render-time problems propagate to the caller
and leave the engine usable for the next request.
"""

from typing import Optional


class FractalEngineError(Exception):
    """Base class for all engine errors."""


class InitializationFailure(FractalEngineError):
    """A GPU pipeline or a pool worker could not be started."""


class UnsupportedCombination(FractalEngineError, NotImplementedError):
    """A fractal kind was requested on a backend that has no kernel for it."""

    def __init__(self, kind: str, backend: str):
        self.kind = kind
        self.backend = backend
        super().__init__(f"Fractal kind '{kind}' is not supported by the {backend} backend")


class BackendUnavailable(FractalEngineError, RuntimeError):
    """An explicitly requested backend is not available on this engine."""


class EngineNotReady(FractalEngineError, RuntimeError):
    """Render requested before initialize() or after dispose()."""


class TileFailure(FractalEngineError, RuntimeError):
    """A worker reported an error while computing one tile."""

    def __init__(self, reason: str, task_id: Optional[str] = None, region=None):
        self.reason = reason
        self.task_id = task_id
        self.region = region
        where = f" at {region}" if region is not None else ""
        super().__init__(f"Tile {task_id or '?'}{where} failed: {reason}")
