"""
Messages exchanged between the engine and pool workers.

Every message is a dict ``{'id', 'type', 'payload'}``. Requests carry only
JSON-safe values; replies hand numpy buffers over by reference, the sender
never touches them again.
"""

import uuid
from typing import Any, Dict

import numpy as np

from ..core.fractal_types import FractalParameters
from ..core.math_functions import RenderRegion

RENDER = 'render'
PROGRESS = 'progress'
COMPLETE = 'complete'
ERROR = 'error'

INIT_ID = 'init'

Message = Dict[str, Any]


def new_task_id() -> str:
    return str(uuid.uuid4())


def render_message(task_id: str, params: FractalParameters, full_width: int,
                   full_height: int, region: RenderRegion, palette_name: str) -> Message:
    return {
        'id': task_id,
        'type': RENDER,
        'payload': {
            'fractal_kind': params.kind.value,
            'parameters': params.to_dict(),
            'full_width': full_width,
            'full_height': full_height,
            'tile_x': region.x,
            'tile_y': region.y,
            'tile_width': region.width,
            'tile_height': region.height,
            'palette_name': palette_name,
        },
    }


def progress_message(task_id: str, progress: float) -> Message:
    return {'id': task_id, 'type': PROGRESS, 'payload': {'progress': progress}}


def complete_message(task_id: str, pixels: np.ndarray, iteration_matrix: np.ndarray,
                     elapsed_time_ms: float, region: RenderRegion) -> Message:
    return {
        'id': task_id,
        'type': COMPLETE,
        'payload': {
            'pixels': pixels,
            'iteration_matrix': iteration_matrix,
            'elapsed_time_ms': elapsed_time_ms,
            'tile_x': region.x,
            'tile_y': region.y,
        },
    }


def error_message(task_id: str, error: str) -> Message:
    return {'id': task_id, 'type': ERROR, 'payload': {'error': error}}


def init_ack() -> Message:
    return {'id': INIT_ID, 'type': COMPLETE}


def region_of(payload: Dict[str, Any]) -> RenderRegion:
    """Tile region described by a ``render`` payload."""
    return RenderRegion(payload['tile_x'], payload['tile_y'],
                        payload['tile_width'], payload['tile_height'])
