"""
Main API classes for fractal rendering.

``FractalEngine`` is the single entry point: it owns the backends (GPU, worker
pool, single-threaded CPU), picks one per request, deduplicates identical
in-flight requests, colors the result and keeps performance metrics.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
import logging

from .config import EngineConfig
from .core.fractal_types import (
    FractalKind,
    FractalParameters,
    default_parameters,
)
from .core.math_functions import decode_newton
from .errors import (
    BackendUnavailable,
    EngineNotReady,
    UnsupportedCombination,
)
from .metrics import PerformanceMonitor
from .rendering.coloring import PaletteCache, colorize, resolve_palette_name
from .acceleration.cpu_backend import CPUBackend
from .acceleration.gpu_backend import GPU_KINDS, GPUBackend, create_gpu_backend
from .acceleration.numba_backend import warm_up_kernels
from .acceleration.tiling import TileCompositor, choose_tile_size, create_tile_grid
from .acceleration.worker_pool import WorkerPool, get_optimal_worker_count

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class Backend(str, Enum):
    """Compute backends, in order of preference."""

    GPU = 'gpu'
    WORKERS = 'workers'
    CPU = 'cpu'


@dataclass
class RenderOptions:
    """Per-request rendering options."""

    width: int = 800
    height: int = 600
    palette: Optional[str] = None  # None -> default palette of the fractal kind
    prefer_gpu: bool = True
    prefer_workers: bool = True
    tile_size: Optional[int] = None
    backend: Optional[Union[str, Backend]] = None  # forces a backend, no fallback
    on_progress: Optional[ProgressCallback] = None

    def validate(self):
        """Validate option values."""
        if not isinstance(self.width, int) or not isinstance(self.height, int):
            raise ValueError("Width and height must be integers")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Width and height must be positive")
        if self.tile_size is not None and self.tile_size <= 0:
            raise ValueError("tile_size must be positive")
        if self.backend is not None:
            self.forced_backend()

    def forced_backend(self) -> Optional[Backend]:
        if self.backend is None:
            return None
        try:
            return Backend(self.backend)
        except ValueError:
            available = ", ".join(b.value for b in Backend)
            raise ValueError(f"Unknown backend '{self.backend}'. Available: {available}") from None


@dataclass
class RenderStats:
    """Summary statistics of one render."""

    total_pixels: int
    average_iterations: float
    max_iterations: int
    memory_estimate_mb: float
    performance_score: int
    tiles_processed: Optional[int] = None
    workers_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'total_pixels': self.total_pixels,
            'average_iterations': self.average_iterations,
            'max_iterations': self.max_iterations,
            'memory_estimate_mb': self.memory_estimate_mb,
            'performance_score': self.performance_score,
        }
        if self.tiles_processed is not None:
            data['tiles_processed'] = self.tiles_processed
        if self.workers_used is not None:
            data['workers_used'] = self.workers_used
        return data


@dataclass
class RenderResult:
    """Output of ``FractalEngine.render_fractal``."""

    pixels: np.ndarray  # (height, width, 4) uint8 RGBA
    iterations: np.ndarray  # (height, width) int32; composite values for Newton
    render_time_ms: float
    backend: Backend
    stats: RenderStats
    kind: FractalKind
    palette: str

    @property
    def width(self) -> int:
        return self.iterations.shape[1]

    @property
    def height(self) -> int:
        return self.iterations.shape[0]

    def to_dict(self) -> Dict[str, Any]:
        """Summary without the pixel and iteration buffers."""
        return {
            'kind': self.kind.value,
            'width': self.width,
            'height': self.height,
            'backend': self.backend.value,
            'palette': self.palette,
            'render_time_ms': round(self.render_time_ms, 3),
            'stats': self.stats.to_dict(),
        }


def compute_stats(kind: FractalKind, iterations: np.ndarray, render_time_ms: float,
                  tiles_processed: Optional[int] = None,
                  workers_used: Optional[int] = None) -> RenderStats:
    """
    Compute render statistics.

    Newton matrices are decoded so only the iteration component counts.
    """
    values = decode_newton(iterations)[1] if kind is FractalKind.NEWTON else iterations
    total_pixels = int(values.size)
    average = float(values.mean()) if total_pixels else 0.0
    maximum = int(values.max()) if total_pixels else 0

    pixels_per_ms = total_pixels / (render_time_ms if render_time_ms > 0 else 1.0)
    complexity = average / maximum if maximum > 0 else 0.0
    return RenderStats(
        total_pixels=total_pixels,
        average_iterations=average,
        max_iterations=maximum,
        memory_estimate_mb=total_pixels * 8 / (1024 * 1024),
        performance_score=round(pixels_per_ms * (1 + complexity) * 100),
        tiles_processed=tiles_processed,
        workers_used=workers_used,
    )


def render_fingerprint(kind: FractalKind, params: FractalParameters,
                       options: RenderOptions) -> Tuple:
    """
    Deduplication key of a request.

    Covers kind, resolution, iteration cap and (for Julia) ``c`` rounded to
    four decimals. View position is not part of the key.
    """
    key: Tuple = (kind.value, options.width, options.height, params.iterations)
    if kind is FractalKind.JULIA:
        key += (round(params.c.real, 4), round(params.c.imag, 4))
    return key


class _Progress:
    """Forwards monotonically non-decreasing progress values to a callback."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.value = 0.0

    def __call__(self, value: float) -> None:
        value = min(1.0, max(self.value, float(value)))
        if value == self.value:
            return
        self.value = value
        if self.callback is not None:
            self.callback(value)


class FractalEngine:
    """Asynchronous fractal rendering engine."""

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initialize the engine (backends start in ``initialize()``).

        Args:
            config: Engine configuration (uses defaults if None)
        """
        self.config = config or EngineConfig()
        self.config.validate()

        self._gpu: Optional[GPUBackend] = None
        self._pool: Optional[WorkerPool] = None
        self._cpu = CPUBackend(self.config.cpu_yield_rows)
        self._palette_cache = PaletteCache(self.config.palette_cache_size)
        self._metrics = PerformanceMonitor(self.config.metrics_window)
        self._in_flight: Dict[Tuple, asyncio.Future] = {}
        self._init_task: Optional[asyncio.Future] = None
        self._initialized = False
        self._disposed = False
        self.dispatch_count = 0

    async def __aenter__(self) -> 'FractalEngine':
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def gpu_supported(self) -> bool:
        return self._gpu is not None

    @property
    def available_workers(self) -> int:
        return self._pool.size if self._pool is not None else 0

    async def initialize(self) -> None:
        """Start the GPU backend and the worker pool concurrently."""
        if self._disposed:
            raise EngineNotReady("Engine has been disposed")
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        start_time = time.perf_counter()
        await asyncio.gather(self._init_gpu(), self._init_workers())
        self._initialized = True
        logger.info(f"Engine initialized in {(time.perf_counter() - start_time) * 1000:.0f}ms: "
                    f"gpu={'yes' if self.gpu_supported else 'no'}, "
                    f"workers={self.available_workers}")

    async def _init_gpu(self) -> None:
        if not self.config.enable_gpu:
            logger.info("GPU acceleration disabled by configuration")
            return
        self._gpu = await asyncio.to_thread(create_gpu_backend, self.config.gpu_device)

    async def _init_workers(self) -> None:
        if not self.config.enable_workers:
            logger.info("Worker pool disabled by configuration")
            return
        count = self.config.worker_count
        if count is None:
            count = get_optimal_worker_count(self.config.max_workers)
        if count == 0:
            return

        if self.config.warm_up_kernels:
            try:
                await asyncio.to_thread(warm_up_kernels)
            except Exception as e:
                # the kernels still compile on first use
                logger.warning(f"Kernel warm-up failed: {e}")

        pool = WorkerPool(
            count,
            init_timeout=self.config.worker_init_timeout,
            palette_steps=self.config.palette_steps,
            palette_cache_size=self.config.palette_cache_size,
            progress_rows=self.config.worker_progress_rows,
        )
        started = await asyncio.to_thread(pool.start)
        if started == 0:
            logger.warning("No worker could be started; falling back to the CPU backend")
            pool.shutdown()
            return
        self._pool = pool

    async def _ensure_ready(self) -> None:
        if self._disposed:
            raise EngineNotReady("Engine has been disposed")
        if self._init_task is None:
            raise EngineNotReady("Engine not initialized; call initialize() first")
        if not self._init_task.done():
            await asyncio.shield(self._init_task)
        elif self._init_task.exception() is not None:
            raise EngineNotReady("Engine initialization failed") from self._init_task.exception()

    def select_backend(self, kind: Union[str, FractalKind], options: RenderOptions) -> Backend:
        """
        Pick the backend for a request.

        A forced ``options.backend`` is honoured or rejected; otherwise the
        preference flags fall through GPU, worker pool and CPU in that order.
        """
        kind = FractalKind.parse(kind)
        forced = options.forced_backend()
        if forced is Backend.GPU:
            if kind not in GPU_KINDS:
                raise UnsupportedCombination(kind.value, Backend.GPU.value)
            if self._gpu is None:
                raise BackendUnavailable("GPU backend is not available")
            return forced
        if forced is Backend.WORKERS:
            if self.available_workers == 0:
                raise BackendUnavailable("Worker pool is not available")
            return forced
        if forced is Backend.CPU:
            return forced

        if options.prefer_gpu and self._gpu is not None and kind in GPU_KINDS:
            return Backend.GPU
        if options.prefer_workers and self.available_workers > 0:
            return Backend.WORKERS
        return Backend.CPU

    async def render_fractal(self, kind: Union[str, FractalKind],
                             parameters: Optional[FractalParameters] = None,
                             options: Optional[RenderOptions] = None) -> RenderResult:
        """
        Render a fractal.

        Args:
            kind: Fractal kind
            parameters: Parameters matching ``kind`` (defaults if None)
            options: Resolution, palette and backend preferences

        Returns:
            RenderResult; concurrent identical requests share one result object
        """
        await self._ensure_ready()

        kind = FractalKind.parse(kind)
        params = parameters if parameters is not None else default_parameters(kind)
        if params.kind is not kind:
            raise ValueError(f"Parameters for '{params.kind.value}' passed for kind '{kind.value}'")
        params.validate()
        options = options or RenderOptions()
        options.validate()
        palette_name = resolve_palette_name(kind, options.palette)
        backend = self.select_backend(kind, options)

        key = render_fingerprint(kind, params, options)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._render(kind, params, options, palette_name, backend))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.debug(f"Joining in-flight render {key}")
        return await asyncio.shield(task)

    def _forget(self, key: Tuple, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _render(self, kind: FractalKind, params: FractalParameters,
                      options: RenderOptions, palette_name: str,
                      backend: Backend) -> RenderResult:
        self.dispatch_count += 1
        width, height = options.width, options.height
        progress = _Progress(options.on_progress)
        tiles_processed = workers_used = None
        start_time = time.perf_counter()
        logger.debug(f"Rendering {kind.value} {width}x{height} on {backend.value}")

        if backend is Backend.GPU:
            iterations = await asyncio.to_thread(self._gpu.render, params, width, height)
            pixels = self._colorize(kind, params, iterations, palette_name)
        elif backend is Backend.WORKERS:
            pixels, iterations, tiles_processed = await self._render_tiles(
                params, width, height, palette_name, options.tile_size, progress)
            workers_used = self.available_workers
        else:
            iterations = await self._cpu.render(params, width, height, on_progress=progress)
            pixels = self._colorize(kind, params, iterations, palette_name)

        render_time_ms = (time.perf_counter() - start_time) * 1000.0
        progress(1.0)
        self._metrics.record(render_time_ms)
        stats = compute_stats(kind, iterations, render_time_ms, tiles_processed, workers_used)
        logger.info(f"Rendered {kind.value} {width}x{height} via {backend.value} "
                    f"in {render_time_ms:.1f}ms")
        return RenderResult(pixels=pixels, iterations=iterations, render_time_ms=render_time_ms,
                            backend=backend, stats=stats, kind=kind, palette=palette_name)

    async def _render_tiles(self, params: FractalParameters, width: int, height: int,
                            palette_name: str, tile_hint: Optional[int],
                            progress: _Progress) -> Tuple[np.ndarray, np.ndarray, int]:
        """Split into tiles, fan out round-robin and composite the replies."""
        pool = self._pool
        tile_size = choose_tile_size(width, height, pool.size, tile_hint)
        tiles = create_tile_grid(width, height, tile_size)
        compositor = TileCompositor(width, height, len(tiles))

        async def land(index, region):
            future = pool.render_tile(params, width, height, region, palette_name, index)
            payload = await asyncio.wrap_future(future)
            progress(compositor.place(region, payload['pixels'], payload['iteration_matrix']))

        await asyncio.gather(*(land(i, region) for i, region in enumerate(tiles)))
        return compositor.pixels, compositor.iterations, len(tiles)

    def _colorize(self, kind: FractalKind, params: FractalParameters,
                  iterations: np.ndarray, palette_name: str) -> np.ndarray:
        root_count = len(params.roots) if kind is FractalKind.NEWTON else None
        return colorize(iterations, kind, params.iterations, palette_name, self._palette_cache,
                        steps=self.config.palette_steps, root_count=root_count)

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Rolling render-time metrics plus current process memory."""
        return self._metrics.snapshot()

    def clear_palette_cache(self) -> None:
        self._palette_cache.clear()

    def get_capabilities(self) -> Dict[str, Any]:
        info = {
            'initialized': self._initialized,
            'gpu_supported': self.gpu_supported,
            'available_workers': self.available_workers,
            'gpu_kinds': sorted(k.value for k in GPU_KINDS),
        }
        if self._gpu is not None:
            info['gpu_device'] = self._gpu.get_device_info()
        return info

    async def dispose(self) -> None:
        """Stop workers, release GPU resources and clear metrics. Idempotent."""
        if self._disposed:
            return
        self._disposed = True

        if self._init_task is not None and not self._init_task.done():
            try:
                await asyncio.shield(self._init_task)
            except Exception as e:
                logger.warning(f"Initialization failed during dispose: {e}")

        if self._pool is not None:
            await asyncio.to_thread(self._pool.shutdown)
            self._pool = None
        if self._gpu is not None:
            self._gpu.dispose()
            self._gpu = None
        self._metrics.clear()
        self._palette_cache.clear()
        self._initialized = False
        logger.info("Engine disposed")
