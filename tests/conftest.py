"""Shared fixtures for the fractal engine test suite."""

import pytest

from fractal_engine.config import EngineConfig


@pytest.fixture
def cpu_config():
    """Engine with neither GPU nor worker pool."""
    return EngineConfig(enable_gpu=False, enable_workers=False, warm_up_kernels=False)


@pytest.fixture
def pool_config():
    """Engine with a two-thread worker pool and no GPU."""
    return EngineConfig(worker_count=2, enable_gpu=False, warm_up_kernels=False,
                        worker_init_timeout=5.0)
