"""
Tests for configuration loading.
"""

import pytest
import yaml
from pydantic import ValidationError

from pageflow.config import Config, GeneratorConfig, MonitoringConfig, StageSettings, StagesConfig, find_config_file


@pytest.mark.unit
class TestConfig:
    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = Config()
        assert config.locks.backend == "sqlite"
        assert config.locks.ttl_seconds == 10.0
        assert config.locks.key_prefix == "page:lock"
        assert config.recrawl.min_interval_minutes == 20
        assert config.recrawl.max_interval_hours == 480
        assert config.recrawl.hours_per_link == 1
        assert config.generator.base_url == "http://127.0.0.1:1234/v1"
        assert config.stages.recap.max_attempts == 3

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "pageflow.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "storage": {"db_path": str(tmp_path / "db" / "pages.db")},
                    "locks": {"backend": "redis", "redis_url": "redis://cache:6379/2"},
                    "generator": {"base_url": "http://llm:8000/v1/", "model": "qwen"},
                    "stages": {"attributes": {"max_attempts": 5, "model": "vision"}},
                }
            )
        )
        config = Config.from_yaml(path)

        assert config.storage.db_path == tmp_path / "db" / "pages.db"
        assert (tmp_path / "db").is_dir()
        assert config.locks.backend == "redis"
        assert config.generator.base_url == "http://llm:8000/v1"
        assert config.stages.attributes.max_attempts == 5
        assert config.stages.attributes.model == "vision"
        assert config.stages.recap.max_attempts == 3

    def test_empty_yaml_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.from_yaml(path).locks.backend == "sqlite"

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PAGEFLOW_LOCKS__BACKEND", "memory")
        monkeypatch.setenv("PAGEFLOW_GENERATOR__MODEL", "env-model")
        config = Config()
        assert config.locks.backend == "memory"
        assert config.generator.model == "env-model"

    def test_invalid_backend(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ValidationError):
            Config.model_validate({"locks": {"backend": "zookeeper"}})

    def test_log_level_normalized(self):
        assert MonitoringConfig(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            MonitoringConfig(log_level="chatty")

    def test_temperature_bounds(self):
        with pytest.raises(ValidationError):
            GeneratorConfig(temperature=3)

    def test_for_stage(self):
        stages = StagesConfig(recap=StageSettings(limit=7))
        assert stages.for_stage("recap").limit == 7
        assert stages.for_stage("crawl").max_attempts == 1
        assert stages.for_stage("unknown") == StageSettings()


@pytest.mark.unit
class TestConfigDiscovery:
    def test_find_config_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file() is None
        (tmp_path / "config.yaml").write_text("locks:\n  backend: memory\n")
        assert find_config_file() == tmp_path / "config.yaml"
        (tmp_path / "pageflow.yaml").write_text("locks:\n  backend: redis\n")
        assert find_config_file() == tmp_path / "pageflow.yaml"

