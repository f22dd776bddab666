"""
Thread pool of message-driven fractal workers.

Each worker is a long-lived thread with its own inbox queue and palette
cache. It computes one tile per ``render`` message with the nogil numba
kernels and replies through the pool, which resolves the request's future by
correlation id. Exactly one ``complete`` or ``error`` reply is produced per
request id.
"""

import queue
import threading
import time
from concurrent.futures import Future, InvalidStateError
from typing import Callable, Dict, List, Optional

import numpy as np
import psutil
import logging

from ..core.fractal_types import FractalKind, FractalParameters, parameters_from_dict
from ..core.math_functions import RenderRegion
from ..errors import TileFailure
from ..rendering.coloring import PaletteCache, colorize
from . import protocol
from .numba_backend import compute_region

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def get_optimal_worker_count(max_workers: int = 32) -> int:
    """Logical core count, capped at ``max_workers``."""
    cores = psutil.cpu_count(logical=True) or 1
    return max(1, min(cores, max_workers))


class FractalWorker(threading.Thread):
    """One pool member: reads messages from its inbox until a None sentinel."""

    def __init__(self, index: int, post: Callable[["FractalWorker", protocol.Message], None],
                 palette_steps: int = 256, palette_cache_size: int = 64,
                 progress_rows: int = 10):
        super().__init__(name=f"fractal-worker-{index}", daemon=True)
        self.index = index
        self.inbox: "queue.Queue[Optional[protocol.Message]]" = queue.Queue()
        self.ready = threading.Event()
        self.palette_steps = palette_steps
        self.palette_cache = PaletteCache(palette_cache_size)
        self.progress_rows = progress_rows
        self.tiles_processed = 0
        self._post = post

    def run(self):
        self._post(self, protocol.init_ack())
        while True:
            message = self.inbox.get()
            if message is None:
                break
            reply = self.handle(message)
            try:
                self._post(self, reply)
            except Exception as e:
                logger.error(f"Worker {self.index} could not deliver reply {reply.get('id')}: {e}")

    def handle(self, message: protocol.Message) -> protocol.Message:
        """Process one request and build its final reply."""
        task_id = message.get('id')
        if message.get('type') != protocol.RENDER:
            return protocol.error_message(task_id, f"Unknown message type: {message.get('type')}")
        try:
            return self._render_tile(task_id, message['payload'])
        except Exception as e:
            logger.error(f"Worker {self.index} failed on tile {task_id}: {e}")
            return protocol.error_message(task_id, str(e))

    def _render_tile(self, task_id: str, payload: Dict) -> protocol.Message:
        start_time = time.perf_counter()
        params = parameters_from_dict(payload['parameters'])
        params.validate()
        region = protocol.region_of(payload)
        full_width = payload['full_width']
        full_height = payload['full_height']
        if not region.fits_within(full_width, full_height):
            raise ValueError(f"Tile {region} lies outside {full_width}x{full_height}")

        iterations = np.empty((region.height, region.width), dtype=np.int32)
        for band in region.row_bands(self.progress_rows):
            start = band.y - region.y
            iterations[start:start + band.height] = compute_region(params, full_width, full_height, band)
            self._post(self, protocol.progress_message(task_id, (start + band.height) / region.height))

        pixels = colorize(iterations, params.kind, params.iterations, payload['palette_name'],
                          self.palette_cache, steps=self.palette_steps,
                          root_count=_root_count(params))

        elapsed_ms = (time.perf_counter() - start_time) * 1000.0
        self.tiles_processed += 1
        logger.debug(f"Worker {self.index} finished tile {region} in {elapsed_ms:.1f}ms")
        return protocol.complete_message(task_id, pixels, iterations, elapsed_ms, region)


def _root_count(params: FractalParameters) -> Optional[int]:
    if params.kind is FractalKind.NEWTON:
        return len(params.roots)
    return None


class _PendingTask:
    __slots__ = ('future', 'region', 'on_progress')

    def __init__(self, future: Future, region: Optional[RenderRegion],
                 on_progress: Optional[ProgressCallback]):
        self.future = future
        self.region = region
        self.on_progress = on_progress


class WorkerPool:
    """Fixed set of FractalWorker threads with future-based request/reply."""

    def __init__(self, size: int, init_timeout: float = 2.0, palette_steps: int = 256,
                 palette_cache_size: int = 64, progress_rows: int = 10):
        """
        Initialize the pool (threads start in ``start()``).

        Args:
            size: Number of workers to spawn
            init_timeout: Seconds to wait for start-up acknowledgements
            palette_steps: Palette length used by every worker
            palette_cache_size: Per-worker palette cache bound
            progress_rows: Rows computed between progress messages
        """
        if size <= 0:
            raise ValueError("Worker pool size must be positive")
        self.requested_size = size
        self.init_timeout = init_timeout
        self.palette_steps = palette_steps
        self.palette_cache_size = palette_cache_size
        self.progress_rows = progress_rows
        self.workers: List[FractalWorker] = []
        self._pending: Dict[str, _PendingTask] = {}
        self._lock = threading.Lock()
        self._closed = False

    def __len__(self) -> int:
        return len(self.workers)

    @property
    def size(self) -> int:
        return len(self.workers)

    def start(self) -> int:
        """
        Spawn the workers and wait for their start-up acknowledgements.

        A worker whose thread cannot start is left out. A worker that does
        not acknowledge within ``init_timeout`` is kept anyway.

        Returns:
            Number of workers in the pool
        """
        candidates = []
        for index in range(self.requested_size):
            worker = FractalWorker(index, self._on_message, self.palette_steps,
                                   self.palette_cache_size, self.progress_rows)
            try:
                worker.start()
            except RuntimeError as e:
                logger.error(f"Failed to start worker {index}: {e}")
                continue
            candidates.append(worker)

        deadline = time.monotonic() + self.init_timeout
        for worker in candidates:
            if not worker.ready.wait(max(0.0, deadline - time.monotonic())):
                logger.warning(f"Worker {worker.index} did not acknowledge start-up "
                               f"within {self.init_timeout}s; keeping it")
        self.workers = candidates
        logger.info(f"Worker pool started with {len(self.workers)}/{self.requested_size} workers")
        return len(self.workers)

    def submit(self, message: protocol.Message, worker_index: int,
               region: Optional[RenderRegion] = None,
               on_progress: Optional[ProgressCallback] = None) -> Future:
        """
        Send a request to worker ``worker_index % size``.

        Returns:
            Future resolved with the ``complete`` payload, or failed with
            TileFailure on an ``error`` reply
        """
        if self._closed or not self.workers:
            raise RuntimeError("Worker pool is not running")
        future: Future = Future()
        with self._lock:
            self._pending[message['id']] = _PendingTask(future, region, on_progress)
        self.workers[worker_index % len(self.workers)].inbox.put(message)
        return future

    def render_tile(self, params: FractalParameters, full_width: int, full_height: int,
                    region: RenderRegion, palette_name: str, worker_index: int,
                    on_progress: Optional[ProgressCallback] = None) -> Future:
        """Build and submit a ``render`` request for one tile."""
        message = protocol.render_message(protocol.new_task_id(), params, full_width,
                                          full_height, region, palette_name)
        return self.submit(message, worker_index, region=region, on_progress=on_progress)

    def _on_message(self, worker: FractalWorker, message: protocol.Message) -> None:
        """Reply handler; runs on the worker's thread."""
        task_id = message.get('id')
        kind = message.get('type')

        if task_id == protocol.INIT_ID:
            worker.ready.set()
            return

        if kind == protocol.PROGRESS:
            with self._lock:
                task = self._pending.get(task_id)
            if task is not None and task.on_progress is not None:
                task.on_progress(message['payload']['progress'])
            return

        with self._lock:
            task = self._pending.pop(task_id, None)
        if task is None:
            logger.warning(f"Dropping reply for unknown task {task_id}")
            return

        try:
            if kind == protocol.COMPLETE:
                task.future.set_result(message['payload'])
            else:
                reason = message.get('payload', {}).get('error', 'unknown error')
                task.future.set_exception(TileFailure(reason, task_id=task_id, region=task.region))
        except InvalidStateError:
            # cancelled by the caller while the tile was being computed
            logger.debug(f"Discarding reply for cancelled task {task_id}")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every worker and fail requests that are still pending."""
        if self._closed:
            return
        self._closed = True
        for worker in self.workers:
            worker.inbox.put(None)
        for worker in self.workers:
            worker.join(timeout)
            if worker.is_alive():
                logger.warning(f"Worker {worker.index} did not stop within {timeout}s")

        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for task_id, task in pending:
            if not task.future.done():
                task.future.set_exception(
                    TileFailure("worker pool shut down", task_id=task_id, region=task.region))
        logger.info(f"Worker pool shut down ({len(self.workers)} workers)")
        self.workers = []
