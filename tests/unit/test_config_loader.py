from __future__ import annotations

import pytest

from webedt.core.config.loader import load_app_config


def test_config_loader_merges_defaults_and_instance(tmp_path, monkeypatch):
    monkeypatch.delenv("AI_WORKER_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("WEBEDT_CONFIG_FILE", raising=False)
    defaults = tmp_path / "defaults.yaml"
    defaults.write_text(
        """
instance:
  name: webedt
environment: dev
worker:
  url: http://localhost:5001
  connect_retry_attempts: 3
""".strip(),
        encoding="utf-8",
    )

    instance = tmp_path / "instance.yaml"
    instance.write_text(
        """
environment: prod
worker:
  connect_retry_attempts: 5
""".strip(),
        encoding="utf-8",
    )

    cfg = load_app_config(defaults_path=defaults, instance_path=instance)
    assert cfg.instance.name == "webedt"
    assert cfg.environment == "prod"
    assert cfg.worker.url == "http://localhost:5001"
    assert cfg.worker.connect_retry_attempts == 5


def test_worker_url_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("AI_WORKER_URL", "http://worker.internal:7000/")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")
    monkeypatch.delenv("WEBEDT_CONFIG_FILE", raising=False)
    cfg = load_app_config(defaults_path=tmp_path / "missing.yaml")
    assert cfg.worker.url == "http://worker.internal:7000"
    assert cfg.database.url == "sqlite:///override.db"


def test_defaults_without_files(tmp_path, monkeypatch):
    monkeypatch.delenv("AI_WORKER_URL", raising=False)
    monkeypatch.delenv("WEBEDT_CONFIG_FILE", raising=False)
    cfg = load_app_config(defaults_path=tmp_path / "missing.yaml")
    assert cfg.worker.url == "http://localhost:5001"
    assert cfg.stream_client.max_reconnect_attempts == 5


def test_config_loader_validation_error_is_clear(tmp_path):
    defaults = tmp_path / "defaults.yaml"
    defaults.write_text("worker:\n  connect_retry_attempts: bad", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid WebEDT configuration"):
        load_app_config(defaults_path=defaults)


def test_log_level_env_override_reaches_nested_section(tmp_path, monkeypatch):
    monkeypatch.delenv("WEBEDT_CONFIG_FILE", raising=False)
    monkeypatch.setenv("WEBEDT_LOG_LEVEL", "DEBUG")
    defaults = tmp_path / "defaults.yaml"
    defaults.write_text("telemetry:\n  json_logs: false\n", encoding="utf-8")

    cfg = load_app_config(defaults_path=defaults)
    assert cfg.telemetry.log_level == "DEBUG"
    assert cfg.telemetry.json_logs is False
