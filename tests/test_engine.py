"""Tests for the FractalEngine orchestrator.

Covers fractal_engine.api:
    - Lifecycle: initialize, dispose, EngineNotReady, non-fatal start-up failures
    - Backend selection, forced backends and their errors
    - CPU and worker-pool renders agree bit for bit
    - Deduplication of identical in-flight requests
    - Progress reporting, statistics and metrics
    - Tile failures propagate and leave the engine usable

Run:
    pytest tests/test_engine.py -v
"""

import asyncio

import numpy as np
import pytest

from fractal_engine.api import (
    Backend,
    FractalEngine,
    RenderOptions,
    _Progress,
    compute_stats,
    render_fingerprint,
)
from fractal_engine.core.fractal_types import FractalKind, create_parameters
from fractal_engine.core.math_functions import encode_newton
from fractal_engine.errors import (
    BackendUnavailable,
    EngineNotReady,
    TileFailure,
    UnsupportedCombination,
)
from fractal_engine import api as api_module
from fractal_engine.acceleration import worker_pool as worker_pool_module


def run(coro):
    return asyncio.run(coro)


class TestLifecycle:
    def test_render_before_initialize(self, cpu_config):
        engine = FractalEngine(cpu_config)
        with pytest.raises(EngineNotReady, match="initialize"):
            run(engine.render_fractal("mandelbrot"))

    def test_render_after_dispose(self, cpu_config):
        async def scenario():
            engine = FractalEngine(cpu_config)
            await engine.initialize()
            await engine.dispose()
            await engine.dispose()
            assert not engine.initialized
            with pytest.raises(EngineNotReady, match="disposed"):
                await engine.render_fractal("mandelbrot")
            with pytest.raises(EngineNotReady):
                await engine.initialize()

        run(scenario())

    def test_capabilities_without_backends(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                await engine.initialize()
                return engine.get_capabilities()

        info = run(scenario())
        assert info['initialized'] is True
        assert info['gpu_supported'] is False
        assert info['available_workers'] == 0
        assert info['gpu_kinds'] == ['mandelbrot']

    def test_worker_pool_started(self, pool_config):
        async def scenario():
            async with FractalEngine(pool_config) as engine:
                return engine.available_workers

        assert run(scenario()) == 2

    def test_zero_workers_means_no_pool(self, cpu_config):
        cpu_config.enable_workers = True
        cpu_config.worker_count = 0

        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                return engine.available_workers

        assert run(scenario()) == 0

    def test_warm_up_failure_is_not_fatal(self, pool_config, monkeypatch):
        def broken_warm_up():
            raise RuntimeError("compiler exploded")

        monkeypatch.setattr(api_module, "warm_up_kernels", broken_warm_up)
        pool_config.warm_up_kernels = True

        async def scenario():
            async with FractalEngine(pool_config) as engine:
                result = await engine.render_fractal(
                    "mandelbrot", options=RenderOptions(width=16, height=12))
                return engine.available_workers, result.backend

        assert run(scenario()) == (2, Backend.WORKERS)

    def test_gpu_that_fails_to_initialize_is_skipped(self, cpu_config, monkeypatch):
        requested = []

        def no_gpu(device_id):
            requested.append(device_id)
            return None

        monkeypatch.setattr(api_module, "create_gpu_backend", no_gpu)
        cpu_config.enable_gpu = True
        cpu_config.gpu_device = 3

        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                return engine.gpu_supported

        assert run(scenario()) is False
        assert requested == [3]


class TestBackendSelection:
    def test_preference_order(self, pool_config):
        async def scenario():
            async with FractalEngine(pool_config) as engine:
                return (
                    engine.select_backend("mandelbrot", RenderOptions()),
                    engine.select_backend("mandelbrot", RenderOptions(prefer_workers=False)),
                )

        assert run(scenario()) == (Backend.WORKERS, Backend.CPU)

    def test_forced_gpu_with_unsupported_kind(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                with pytest.raises(UnsupportedCombination, match="julia"):
                    await engine.render_fractal("julia", options=RenderOptions(backend="gpu"))

        run(scenario())

    def test_forced_backends_that_are_missing(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                with pytest.raises(BackendUnavailable, match="GPU"):
                    engine.select_backend("mandelbrot", RenderOptions(backend="gpu"))
                with pytest.raises(BackendUnavailable, match="Worker pool"):
                    engine.select_backend("mandelbrot", RenderOptions(backend=Backend.WORKERS))
                assert engine.select_backend("newton", RenderOptions(backend="cpu")) is Backend.CPU

        run(scenario())

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            RenderOptions(backend="tpu").validate()


class TestRendering:
    def test_cpu_mandelbrot_center_is_interior(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                params = create_parameters("mandelbrot", center_x=-0.5, center_y=0.0,
                                           iterations=100)
                return await engine.render_fractal(
                    "mandelbrot", params, RenderOptions(width=100, height=100))

        result = run(scenario())
        assert result.backend is Backend.CPU
        assert result.iterations[50, 50] == 100
        assert result.pixels.shape == (100, 100, 4)
        assert result.pixels[50, 50].tolist() == [0, 0, 0, 255]
        assert (result.width, result.height) == (100, 100)
        assert result.palette == "mandelbrot"

    @pytest.mark.parametrize("kind,iterations,size", [
        ("mandelbrot", 100, (100, 100)),
        ("julia", 50, (64, 64)),
        ("burning-ship", 60, (90, 70)),
        ("newton", 40, (80, 60)),
    ])
    def test_workers_match_cpu(self, pool_config, kind, iterations, size):
        width, height = size

        async def scenario():
            async with FractalEngine(pool_config) as engine:
                params = create_parameters(kind, iterations=iterations)
                cpu = await engine.render_fractal(
                    kind, params, RenderOptions(width=width, height=height, backend="cpu"))
                workers = await engine.render_fractal(
                    kind, params, RenderOptions(width=width, height=height, backend="workers"))
                return cpu, workers

        cpu, workers = run(scenario())
        assert workers.backend is Backend.WORKERS
        np.testing.assert_array_equal(workers.iterations, cpu.iterations)
        np.testing.assert_array_equal(workers.pixels, cpu.pixels)

    def test_worker_stats(self, pool_config):
        async def scenario():
            async with FractalEngine(pool_config) as engine:
                return await engine.render_fractal(
                    "mandelbrot", options=RenderOptions(width=100, height=100))

        stats = run(scenario()).stats
        # 5000 pixels per worker -> 64px tiles -> 2x2 grid
        assert stats.tiles_processed == 4
        assert stats.workers_used == 2
        assert stats.total_pixels == 10000

    def test_tile_size_hint(self, pool_config):
        async def scenario():
            async with FractalEngine(pool_config) as engine:
                return await engine.render_fractal(
                    "julia", options=RenderOptions(width=50, height=40, tile_size=10))

        assert run(scenario()).stats.tiles_processed == 20

    def test_default_and_explicit_palettes(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                ship = await engine.render_fractal(
                    "burning-ship", options=RenderOptions(width=16, height=16))
                ocean = await engine.render_fractal(
                    "burning-ship", options=RenderOptions(width=16, height=16, palette="ocean"))
                return ship, ocean

        ship, ocean = run(scenario())
        assert ship.palette == "fire"
        assert ocean.palette == "ocean"

    def test_unknown_palette(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                with pytest.raises(ValueError, match="Unknown palette"):
                    await engine.render_fractal(
                        "mandelbrot", options=RenderOptions(width=8, height=8, palette="plasma"))

        run(scenario())

    def test_kind_mismatch(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                with pytest.raises(ValueError, match="passed for kind"):
                    await engine.render_fractal("julia", create_parameters("mandelbrot"))

        run(scenario())

    def test_invalid_resolution(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                with pytest.raises(ValueError, match="positive"):
                    await engine.render_fractal("mandelbrot", options=RenderOptions(width=0))

        run(scenario())

    def test_newton_stats_use_iteration_component(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                params = create_parameters("newton", iterations=200)
                return await engine.render_fractal(
                    "newton", params, RenderOptions(width=40, height=30))

        stats = run(scenario()).stats
        assert 0 <= stats.max_iterations <= 99


class TestDeduplication:
    def test_identical_requests_share_one_render(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                options = RenderOptions(width=64, height=48)
                first, second = await asyncio.gather(
                    engine.render_fractal("mandelbrot", options=options),
                    engine.render_fractal("mandelbrot", options=options),
                )
                return engine, first, second

        engine, first, second = run(scenario())
        assert first is second
        assert engine.dispatch_count == 1
        assert engine._in_flight == {}

    def test_different_julia_constants_render_separately(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                options = RenderOptions(width=32, height=32)
                first, second = await asyncio.gather(
                    engine.render_fractal("julia", create_parameters("julia", c=(-0.8, 0.156)),
                                          options),
                    engine.render_fractal("julia", create_parameters("julia", c=(-0.4, 0.6)),
                                          options),
                )
                return engine, first, second

        engine, first, second = run(scenario())
        assert first is not second
        assert engine.dispatch_count == 2

    def test_sequential_requests_dispatch_again(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                options = RenderOptions(width=16, height=16)
                await engine.render_fractal("mandelbrot", options=options)
                await engine.render_fractal("mandelbrot", options=options)
                return engine.dispatch_count

        assert run(scenario()) == 2

    def test_fingerprint(self):
        options = RenderOptions(width=10, height=20)
        near = create_parameters("julia", c=(0.12344, 0.5))
        same = create_parameters("julia", c=(0.12341, 0.5), zoom=3.0, center_x=1.0)
        other = create_parameters("julia", c=(0.1236, 0.5))
        assert render_fingerprint(FractalKind.JULIA, near, options) == \
            render_fingerprint(FractalKind.JULIA, same, options)
        assert render_fingerprint(FractalKind.JULIA, near, options) != \
            render_fingerprint(FractalKind.JULIA, other, options)
        mandelbrot = create_parameters("mandelbrot", iterations=64)
        assert render_fingerprint(FractalKind.MANDELBROT, mandelbrot, options) == \
            ("mandelbrot", 10, 20, 64)


class TestProgress:
    def test_monotonic_and_capped(self):
        seen = []
        progress = _Progress(seen.append)
        for value in [0.2, 0.1, 0.2, 0.5, 1.5, 1.0]:
            progress(value)
        assert seen == [0.2, 0.5, 1.0]

    @pytest.mark.parametrize("backend", ["cpu", "workers"])
    def test_render_progress(self, pool_config, backend):
        seen = []

        async def scenario():
            async with FractalEngine(pool_config) as engine:
                await engine.render_fractal(
                    "julia", options=RenderOptions(width=100, height=90, backend=backend,
                                                   on_progress=seen.append))

        run(scenario())
        assert seen
        assert seen == sorted(seen)
        assert len(set(seen)) == len(seen)
        assert seen[-1] == 1.0


class TestStatsAndMetrics:
    def test_compute_stats(self):
        iterations = np.array([[0, 10], [20, 30]], dtype=np.int32)
        stats = compute_stats(FractalKind.MANDELBROT, iterations, 2.0)
        assert stats.total_pixels == 4
        assert stats.average_iterations == 15.0
        assert stats.max_iterations == 30
        # 2 px/ms * (1 + 15/30) * 100
        assert stats.performance_score == 300
        assert stats.memory_estimate_mb == pytest.approx(32 / (1024 * 1024))
        assert 'tiles_processed' not in stats.to_dict()

    def test_zero_render_time(self):
        stats = compute_stats(FractalKind.MANDELBROT, np.array([[0, 10], [20, 30]]), 0.0)
        assert stats.performance_score == 600

    def test_newton_stats_decode(self):
        values = encode_newton(np.array([[0, 1], [-1, 2]]), np.array([[5, 10], [99, 15]]))
        stats = compute_stats(FractalKind.NEWTON, values, 1.0)
        assert stats.max_iterations == 99
        assert stats.average_iterations == pytest.approx((5 + 10 + 99 + 15) / 4)

    def test_metrics_snapshot(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                for _ in range(3):
                    await engine.render_fractal("mandelbrot",
                                                options=RenderOptions(width=16, height=16))
                return engine.get_performance_metrics()

        metrics = run(scenario())
        assert set(metrics) == {'fps', 'average_render_time_ms', 'last_render_time_ms',
                                'render_count', 'total_render_time_ms', 'memory_usage_mb'}
        assert metrics['render_count'] == 3
        assert metrics['memory_usage_mb'] > 0

    def test_result_summary(self, cpu_config):
        async def scenario():
            async with FractalEngine(cpu_config) as engine:
                return await engine.render_fractal("newton",
                                                   options=RenderOptions(width=12, height=10))

        summary = run(scenario()).to_dict()
        assert summary['kind'] == 'newton'
        assert (summary['width'], summary['height']) == (12, 10)
        assert summary['backend'] == 'cpu'
        assert summary['palette'] == 'newton'
        assert summary['stats']['total_pixels'] == 120


class TestTileFailures:
    def test_failure_propagates_and_engine_recovers(self, pool_config, monkeypatch):
        def exploding_region(*args):
            raise RuntimeError("kernel exploded")

        async def scenario():
            async with FractalEngine(pool_config) as engine:
                options = RenderOptions(width=100, height=100, backend="workers")
                monkeypatch.setattr(worker_pool_module, "compute_region", exploding_region)
                with pytest.raises(TileFailure, match="kernel exploded"):
                    await engine.render_fractal("mandelbrot", options=options)
                monkeypatch.undo()
                assert engine._in_flight == {}
                return await engine.render_fractal("mandelbrot", options=options)

        result = run(scenario())
        assert result.backend is Backend.WORKERS
        assert result.iterations.shape == (100, 100)
