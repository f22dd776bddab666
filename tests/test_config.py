"""Tests for engine configuration.

Covers fractal_engine.config:
    - EngineConfig validation and dict conversion
    - FRACTAL_ENGINE_* environment overrides
    - JSON/YAML loading and saving through ConfigManager
    - Precedence in load_engine_config

Run:
    pytest tests/test_config.py -v
"""

import json

import pytest
import yaml

from fractal_engine.config import ConfigManager, EngineConfig, load_engine_config


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        config.validate()
        assert config.worker_count is None
        assert config.enable_gpu is True
        assert config.palette_steps == 256

    @pytest.mark.parametrize("field,value,message", [
        ("worker_count", -1, "worker_count"),
        ("max_workers", 0, "max_workers"),
        ("palette_steps", 1, "palette_steps"),
        ("metrics_window", 0, "metrics_window"),
        ("worker_progress_rows", 0, "worker_progress_rows"),
    ])
    def test_validation(self, field, value, message):
        with pytest.raises(ValueError, match=message):
            EngineConfig(**{field: value}).validate()

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown engine config keys: colour"):
            EngineConfig.from_dict({'colour': 'red'})

    def test_dict_round_trip(self):
        config = EngineConfig(worker_count=3, enable_gpu=False)
        assert EngineConfig.from_dict(config.to_dict()) == config


class TestEnvironmentOverrides:
    def test_typed_overrides(self):
        config = EngineConfig.from_env({
            'FRACTAL_ENGINE_WORKER_COUNT': '4',
            'FRACTAL_ENGINE_ENABLE_GPU': 'off',
            'FRACTAL_ENGINE_WORKER_INIT_TIMEOUT': '0.5',
            'FRACTAL_ENGINE_WARM_UP_KERNELS': 'Yes',
            'UNRELATED': '1',
        })
        assert config.worker_count == 4
        assert config.enable_gpu is False
        assert config.worker_init_timeout == 0.5
        assert config.warm_up_kernels is True

    def test_auto_worker_count(self):
        config = EngineConfig(worker_count=2).with_env_overrides(
            {'FRACTAL_ENGINE_WORKER_COUNT': 'auto'})
        assert config.worker_count is None

    def test_invalid_boolean(self):
        with pytest.raises(ValueError, match="Invalid boolean"):
            EngineConfig.from_env({'FRACTAL_ENGINE_ENABLE_WORKERS': 'maybe'})

    def test_invalid_value_is_validated(self):
        with pytest.raises(ValueError, match="palette_steps"):
            EngineConfig.from_env({'FRACTAL_ENGINE_PALETTE_STEPS': '1'})

    def test_overrides_return_a_copy(self):
        config = EngineConfig()
        config.with_env_overrides({'FRACTAL_ENGINE_ENABLE_GPU': 'false'})
        assert config.enable_gpu is True


class TestConfigManager:
    def test_load_yaml_with_engine_section(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump({'engine': {'worker_count': 2, 'enable_gpu': False}}))
        manager = ConfigManager()
        config = manager.create_engine_config(manager.load_config(path))
        assert config.worker_count == 2
        assert config.enable_gpu is False

    def test_load_flat_json(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({'palette_steps': 512}))
        manager = ConfigManager()
        assert manager.create_engine_config(manager.load_config(path)).palette_steps == 512

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert ConfigManager().load_config(path) == {}

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "engine.toml"
        path.write_text("worker_count = 2")
        with pytest.raises(ValueError, match="Unsupported config format"):
            ConfigManager().load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError, match="mapping"):
            ConfigManager().load_config(path)

    @pytest.mark.parametrize("name", ["saved.json", "saved.yaml"])
    def test_save_and_reload(self, tmp_path, name):
        manager = ConfigManager()
        config = EngineConfig(worker_count=6, cpu_yield_rows=8)
        manager.save_config(config, tmp_path / name)
        assert manager.create_engine_config(manager.load_config(tmp_path / name)) == config


class TestLoadEngineConfig:
    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("worker_count: 2\nenable_gpu: false\n")
        config = load_engine_config(path, environ={'FRACTAL_ENGINE_WORKER_COUNT': '5'})
        assert config.worker_count == 5
        assert config.enable_gpu is False

    def test_defaults_without_file(self):
        assert load_engine_config(environ={}) == EngineConfig()
