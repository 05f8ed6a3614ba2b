from __future__ import annotations

from pathlib import Path

import pytest

from servicehub.settings import DashboardSettings, load_settings


def test_defaults() -> None:
    s = DashboardSettings()
    assert s.poll_interval_seconds == 30
    assert s.probe_timeout_seconds == 5.0
    assert s.store_backend == "sqlite"
    assert s.monitor_enabled is True


def test_yaml_then_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = tmp_path / "servicehub.yaml"
    cfg.write_text(
        "store_backend: memory\npoll_interval_seconds: 45\nadmin_token: from-yaml\nunknown_key: 1\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SERVICEHUB_POLL_INTERVAL_SECONDS", "10")
    monkeypatch.setenv("SERVICEHUB_MONITOR_ENABLED", "false")
    monkeypatch.delenv("SERVICEHUB_ADMIN_TOKEN", raising=False)

    s = load_settings(str(cfg))
    assert s.store_backend == "memory"
    assert s.poll_interval_seconds == 10
    assert s.admin_token == "from-yaml"
    assert s.monitor_enabled is False


def test_config_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = tmp_path / "c.yaml"
    cfg.write_text("port: 8099\n", encoding="utf-8")
    monkeypatch.setenv("SERVICEHUB_CONFIG", str(cfg))
    monkeypatch.delenv("SERVICEHUB_PORT", raising=False)
    assert load_settings().port == 8099


def test_invalid_env_value_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SERVICEHUB_CONFIG", raising=False)
    monkeypatch.setenv("SERVICEHUB_PROBE_CONCURRENCY", "many")
    assert load_settings().probe_concurrency == 16


def test_non_mapping_yaml_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(str(cfg))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"poll_interval_seconds": 0},
        {"probe_timeout_seconds": 0},
        {"probe_concurrency": 0},
        {"store_backend": "redis"},
    ],
)
def test_invalid_values_rejected(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        DashboardSettings(**kwargs)
