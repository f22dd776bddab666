"""
Command-line interface for the fractal engine.

Renders are computed in memory; the CLI reports what was rendered, on which
backend and how fast.
"""

import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import click
import numpy as np
import psutil
import logging

from .. import __version__
from ..api import Backend, FractalEngine, RenderOptions
from ..config import ConfigManager, load_engine_config
from ..errors import BackendUnavailable, UnsupportedCombination
from ..core.fractal_types import (
    JULIA_PRESETS,
    Complex,
    FractalKind,
    create_parameters,
    list_fractals as fractal_descriptions,
)
from ..rendering.coloring import DEFAULT_PALETTES, list_palettes as palette_descriptions
from ..acceleration.numba_backend import get_kernel_info
from ..acceleration.gpu_backend import is_gpu_available
from ..acceleration.worker_pool import get_optimal_worker_count

logger = logging.getLogger(__name__)

FRACTAL_CHOICES = [kind.value for kind in FractalKind]
BACKEND_CHOICES = [backend.value for backend in Backend]


def parse_complex(text: str) -> Complex:
    """Parse ``"real,imag"`` into a Complex."""
    try:
        real, imag = (float(part.strip()) for part in text.split(','))
    except ValueError:
        raise click.BadParameter(f"Expected 'real,imag', got '{text}'") from None
    return Complex(real, imag)


def parse_size(text: str):
    try:
        width, height = (int(part) for part in text.lower().split('x'))
    except ValueError:
        raise click.BadParameter(f"Expected 'WIDTHxHEIGHT', got '{text}'") from None
    return width, height


def build_engine_config(ctx, workers: Optional[int] = None, no_gpu: bool = False,
                        no_workers: bool = False):
    config = load_engine_config(ctx.obj.get('config_file'))
    if workers is not None:
        config.worker_count = workers
    if no_gpu:
        config.enable_gpu = False
    if no_workers:
        config.enable_workers = False
    config.validate()
    return config


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--config', type=click.Path(exists=True), help='Engine configuration file (JSON or YAML)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--quiet', '-q', is_flag=True, help='Suppress most output')
@click.pass_context
def main(ctx, version, config, verbose, quiet):
    """
    Fractal Engine - multi-backend fractal computation.

    Computes Mandelbrot, Julia, Burning Ship and Newton fractals on the GPU,
    a pool of worker threads, or a single CPU thread.
    """
    if quiet:
        logging.basicConfig(level=logging.ERROR)
    elif verbose:
        logging.basicConfig(level=logging.DEBUG,
                            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING,
                            format='%(levelname)s: %(message)s')

    if version:
        click.echo(f"Fractal Engine v{__version__}")
        click.echo(f"Python: {sys.version}")
        click.echo(f"GPU acceleration: {'Available' if is_gpu_available() else 'Not available'}")
        if ctx.invoked_subcommand is None:
            sys.exit(0)

    ctx.ensure_object(dict)
    ctx.obj['config_file'] = config
    ctx.obj['verbose'] = verbose


@main.command()
@click.argument('fractal_kind', type=click.Choice(FRACTAL_CHOICES))
@click.option('--width', '-w', type=int, default=800, show_default=True, help='Image width')
@click.option('--height', '-h', type=int, default=600, show_default=True, help='Image height')
@click.option('--iterations', '-i', type=int, help='Maximum iterations')
@click.option('--zoom', type=float, help='Zoom factor (1 shows a 3-unit tall window)')
@click.option('--center', type=str, help='View center "real,imag"')
@click.option('--escape-radius', type=float, help='Escape threshold on |z|^2')
@click.option('--julia-c', type=str, help='Julia constant "real,imag" or preset name')
@click.option('--root', 'roots', multiple=True, help='Newton root "real,imag" (repeatable)')
@click.option('--tolerance', type=float, help='Newton convergence tolerance')
@click.option('--palette', type=click.Choice(sorted(palette_descriptions())), help='Color palette')
@click.option('--backend', type=click.Choice(BACKEND_CHOICES), help='Force a backend')
@click.option('--tile-size', type=int, help='Tile size for the worker pool')
@click.option('--workers', type=int, help='Number of worker threads')
@click.option('--no-gpu', is_flag=True, help='Disable GPU acceleration')
@click.option('--no-workers', is_flag=True, help='Disable the worker pool')
@click.option('--json', 'as_json', is_flag=True, help='Print the summary as JSON')
@click.pass_context
def render(ctx, fractal_kind, width, height, iterations, zoom, center, escape_radius,
           julia_c, roots, tolerance, palette, backend, tile_size, workers, no_gpu,
           no_workers, as_json):
    """
    Render a fractal and print a summary.

    FRACTAL_KIND: mandelbrot, julia, burning-ship or newton
    """
    try:
        kind = FractalKind.parse(fractal_kind)
        overrides: Dict[str, Any] = {}
        if iterations is not None:
            overrides['iterations'] = iterations
        if zoom is not None:
            overrides['zoom'] = zoom
        if center is not None:
            c = parse_complex(center)
            overrides['center_x'], overrides['center_y'] = c.real, c.imag
        if escape_radius is not None:
            overrides['escape_radius'] = escape_radius
        if julia_c is not None:
            if kind is not FractalKind.JULIA:
                raise click.BadParameter("--julia-c only applies to julia")
            overrides['c'] = JULIA_PRESETS[julia_c] if julia_c in JULIA_PRESETS else parse_complex(julia_c)
        if roots or tolerance is not None:
            if kind is not FractalKind.NEWTON:
                raise click.BadParameter("--root/--tolerance only apply to newton")
            if roots:
                overrides['roots'] = [parse_complex(r) for r in roots]
            if tolerance is not None:
                overrides['tolerance'] = tolerance
        params = create_parameters(kind, **overrides)

        options = RenderOptions(width=width, height=height, palette=palette,
                                prefer_gpu=not no_gpu, prefer_workers=not no_workers,
                                tile_size=tile_size, backend=backend)
        options.validate()
        config = build_engine_config(ctx, workers, no_gpu, no_workers)

        async def run():
            async with FractalEngine(config) as engine:
                result = await engine.render_fractal(kind, params, options)
                return result, engine.get_performance_metrics()

        result, metrics = asyncio.run(run())
        summary = result.to_dict()
        summary['parameters'] = params.to_dict()
        summary['metrics'] = metrics

        if as_json:
            click.echo(json.dumps(summary, indent=2))
            return

        stats = result.stats
        click.echo(f"Rendered {kind.value} {result.width}x{result.height} "
                   f"on {result.backend.value} in {result.render_time_ms:.1f}ms")
        click.echo(f"  Palette: {result.palette}")
        click.echo(f"  Average iterations: {stats.average_iterations:.2f}")
        click.echo(f"  Max iterations: {stats.max_iterations}")
        click.echo(f"  Performance score: {stats.performance_score}")
        click.echo(f"  Memory estimate: {stats.memory_estimate_mb:.2f} MB")
        if stats.tiles_processed is not None:
            click.echo(f"  Tiles: {stats.tiles_processed} on {stats.workers_used} workers")

    except click.BadParameter:
        raise
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        if ctx.obj.get('verbose'):
            import traceback
            traceback.print_exc()
        sys.exit(1)


@main.command()
@click.option('--size', type=str, default='400x300', show_default=True, help='Image size (WIDTHxHEIGHT)')
@click.option('--iterations', type=int, default=200, show_default=True, help='Maximum iterations')
@click.option('--kind', 'fractal_kind', type=click.Choice(FRACTAL_CHOICES), default='mandelbrot',
              show_default=True, help='Fractal kind')
@click.option('--repeat', type=click.IntRange(min=1), default=3, show_default=True, help='Renders per backend')
@click.option('--workers', type=int, help='Number of worker threads')
@click.option('--json', 'as_json', is_flag=True, help='Print results as JSON')
@click.pass_context
def benchmark(ctx, size, iterations, fractal_kind, repeat, workers, as_json):
    """
    Compare render time across every available backend.
    """
    try:
        width, height = parse_size(size)
        kind = FractalKind.parse(fractal_kind)
        params = create_parameters(kind, iterations=iterations)
        config = build_engine_config(ctx, workers)

        async def run():
            results: Dict[str, Dict[str, Any]] = {}
            reference: Optional[np.ndarray] = None
            async with FractalEngine(config) as engine:
                for backend in Backend:
                    options = RenderOptions(width=width, height=height, backend=backend)
                    try:
                        engine.select_backend(kind, options)
                    except (BackendUnavailable, UnsupportedCombination) as e:
                        results[backend.value] = {'error': str(e)}
                        continue
                    times: List[float] = []
                    for _ in range(repeat):
                        result = await engine.render_fractal(kind, params, options)
                        times.append(result.render_time_ms)
                    if reference is None:
                        reference = result.iterations
                    average_ms = sum(times) / len(times)
                    results[backend.value] = {
                        'average_ms': round(average_ms, 3),
                        'best_ms': round(min(times), 3),
                        'pixels_per_second': round(width * height / (average_ms / 1000.0)),
                        'matches_reference': bool(np.array_equal(reference, result.iterations)),
                    }
            return results

        results = asyncio.run(run())

        if as_json:
            click.echo(json.dumps({'size': [width, height], 'kind': kind.value,
                                   'iterations': iterations, 'results': results}, indent=2))
            return

        click.echo("Fractal Engine Performance Benchmark")
        click.echo(f"Image size: {width}x{height} ({width * height:,} pixels)")
        click.echo(f"Fractal: {kind.value}, max iterations: {iterations}")
        click.echo("")
        for name, result in results.items():
            if 'error' in result:
                click.echo(f"  {name.upper()}: {result['error']}")
            else:
                click.echo(f"  {name.upper()}: {result['average_ms']:.1f}ms avg, "
                           f"{result['best_ms']:.1f}ms best "
                           f"({result['pixels_per_second']:,} pixels/sec)"
                           f"{'' if result['matches_reference'] else '  [MISMATCH]'}")

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        if ctx.obj.get('verbose'):
            import traceback
            traceback.print_exc()
        sys.exit(1)


@main.command()
@click.pass_context
def list_fractals(ctx):
    """List available fractal kinds and Julia presets."""
    click.echo("Available fractal types:")
    for name, description in fractal_descriptions().items():
        click.echo(f"  {name}")
        if ctx.obj.get('verbose'):
            click.echo(f"    {description}")

    click.echo("\nJulia set presets:")
    for name, c in JULIA_PRESETS.items():
        click.echo(f"  {name}: c = {c.real}{c.imag:+}i")


@main.command()
@click.pass_context
def list_palettes(ctx):
    """List available color palettes."""
    defaults = {palette: kind.value for kind, palette in DEFAULT_PALETTES.items()}
    click.echo("Available color palettes:")
    for name, description in palette_descriptions().items():
        suffix = f" (default for {defaults[name]})" if name in defaults else ""
        click.echo(f"  {name}{suffix}")
        if ctx.obj.get('verbose'):
            click.echo(f"    {description}")


@main.command()
@click.pass_context
def system_info(ctx):
    """Display system capabilities."""
    kernel_info = get_kernel_info()
    memory = psutil.virtual_memory()

    click.echo("System Information:")
    click.echo(f"  CPU cores: {psutil.cpu_count(logical=True)} logical, "
               f"{psutil.cpu_count(logical=False)} physical")
    click.echo(f"  Memory: {memory.total / (1024 ** 3):.1f} GB "
               f"({memory.available / (1024 ** 3):.1f} GB available)")
    click.echo(f"  Numba: {kernel_info['numba_version']}")
    click.echo(f"  Default worker count: {get_optimal_worker_count()}")
    click.echo(f"  GPU: {'Available' if is_gpu_available() else 'Not available'}")


@main.command()
@click.argument('config_file', type=click.Path(exists=True))
def validate_config(config_file):
    """Validate an engine configuration file."""
    try:
        manager = ConfigManager()
        config = manager.create_engine_config(manager.load_config(config_file))
    except Exception as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    click.echo(f"Configuration file is valid: {config_file}")
    for key, value in config.to_dict().items():
        click.echo(f"  {key}: {value}")


if __name__ == '__main__':
    main()
