"""
Engine configuration.

``EngineConfig`` holds the tunables of the orchestrator and its backends.
Values come from defaults, an optional JSON or YAML file, then
``FRACTAL_ENGINE_*`` environment variables, in that order.
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
import logging

logger = logging.getLogger(__name__)

ENV_PREFIX = 'FRACTAL_ENGINE_'

_TRUE_STRINGS = {'1', 'true', 'yes', 'on'}
_FALSE_STRINGS = {'0', 'false', 'no', 'off'}


@dataclass
class EngineConfig:
    """Configuration for FractalEngine."""

    worker_count: Optional[int] = None  # None -> logical cores, capped at max_workers
    max_workers: int = 32
    worker_init_timeout: float = 2.0
    enable_gpu: bool = True
    enable_workers: bool = True
    gpu_device: int = 0
    warm_up_kernels: bool = True
    metrics_window: int = 100
    palette_steps: int = 256
    palette_cache_size: int = 64
    cpu_yield_rows: int = 20
    worker_progress_rows: int = 10

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.worker_count is not None and self.worker_count < 0:
            raise ValueError("worker_count must be non-negative")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")
        if self.worker_init_timeout < 0:
            raise ValueError("worker_init_timeout must be non-negative")
        if self.gpu_device < 0:
            raise ValueError("gpu_device must be non-negative")
        if self.metrics_window <= 0:
            raise ValueError("metrics_window must be positive")
        if self.palette_steps < 2:
            raise ValueError("palette_steps must be at least 2")
        if self.palette_cache_size <= 0:
            raise ValueError("palette_cache_size must be positive")
        if self.cpu_yield_rows <= 0:
            raise ValueError("cpu_yield_rows must be positive")
        if self.worker_progress_rows <= 0:
            raise ValueError("worker_progress_rows must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """Create config from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown engine config keys: {', '.join(sorted(unknown))}")
        config = cls(**data)
        config.validate()
        return config

    def with_env_overrides(self, environ: Optional[Dict[str, str]] = None) -> 'EngineConfig':
        """
        Return a copy with ``FRACTAL_ENGINE_<FIELD>`` variables applied.

        Args:
            environ: Mapping to read instead of ``os.environ``
        """
        environ = os.environ if environ is None else environ
        data = self.to_dict()
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            data[f.name] = _parse_env_value(f.name, raw, data[f.name], f.type)
            logger.debug(f"Config override from environment: {f.name}={data[f.name]!r}")
        return EngineConfig.from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'EngineConfig':
        return cls().with_env_overrides(environ)


def _parse_env_value(name: str, raw: str, current: Any, annotation: Any) -> Any:
    text = raw.strip()
    if name == 'worker_count':
        return None if text.lower() in ('', 'auto', 'none') else int(text)
    if isinstance(current, bool) or annotation in (bool, 'bool'):
        lowered = text.lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"Invalid boolean for {ENV_PREFIX}{name.upper()}: {raw!r}")
    if isinstance(current, float) or annotation in (float, 'float'):
        return float(text)
    return int(text)


class ConfigManager:
    """Loads engine configuration files in JSON or YAML format."""

    SUPPORTED_SUFFIXES = ('.json', '.yaml', '.yml')

    def load_config(self, path: Union[str, Path]) -> Dict[str, Any]:
        """
        Read a configuration file.

        Args:
            path: ``.json``, ``.yaml`` or ``.yml`` file

        Returns:
            Parsed mapping (empty for an empty YAML file)
        """
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix not in self.SUPPORTED_SUFFIXES:
            raise ValueError(f"Unsupported config format '{suffix}'. "
                             f"Use one of: {', '.join(self.SUPPORTED_SUFFIXES)}")

        with open(path, 'r', encoding='utf-8') as f:
            if suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        logger.info(f"Loaded configuration from {path}")
        return data

    def save_config(self, config: EngineConfig, path: Union[str, Path]) -> None:
        path = Path(path)
        with open(path, 'w', encoding='utf-8') as f:
            if path.suffix.lower() == '.json':
                json.dump(config.to_dict(), f, indent=2)
            else:
                yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    def create_engine_config(self, data: Dict[str, Any]) -> EngineConfig:
        """Build an EngineConfig from a file mapping (optionally under an ``engine`` key)."""
        section = data.get('engine', data)
        return EngineConfig.from_dict(dict(section))


def load_engine_config(path: Optional[Union[str, Path]] = None,
                       environ: Optional[Dict[str, str]] = None) -> EngineConfig:
    """
    Build the effective configuration: defaults, then file, then environment.

    Args:
        path: Optional JSON/YAML config file
        environ: Mapping to read instead of ``os.environ``
    """
    if path is not None:
        manager = ConfigManager()
        config = manager.create_engine_config(manager.load_config(path))
    else:
        config = EngineConfig()
    return config.with_env_overrides(environ)
