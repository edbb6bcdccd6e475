"""Tests for configuration loading, env resolution and overrides."""

import pytest
import yaml

from update_center.config import (
    ReconcilerConfig,
    UpdateCenterConfig,
    load_config,
    resolve_env_vars,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Isolate from real config files and UPDATE_CENTER_* variables."""
    import os

    for key in list(os.environ):
        if key.startswith("UPDATE_CENTER_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestDefaults:
    def test_defaults(self):
        cfg = UpdateCenterConfig()
        assert cfg.reconciler.max_runtime_seconds == 7200
        assert cfg.reconciler.starting_interval_seconds == 3
        assert cfg.reconciler.running_interval_seconds == 10
        assert cfg.reconciler.handle_max_attempts == 20
        assert cfg.batch.install_order_step == 100
        assert cfg.logging.level == "info"

    def test_reconciler_bounds_are_validated(self):
        with pytest.raises(ValueError):
            ReconcilerConfig(max_runtime_seconds=0)
        with pytest.raises(ValueError):
            ReconcilerConfig(handle_max_attempts=0)


class TestResolveEnvVars:
    def test_resolves_references(self, monkeypatch):
        monkeypatch.setenv("INSTALLER_PASSWORD", "s3cret")
        assert resolve_env_vars("pw=${INSTALLER_PASSWORD}") == "pw=s3cret"

    def test_missing_is_empty(self):
        assert resolve_env_vars("${NOT_SET_ANYWHERE_123}") == ""


class TestLoadConfig:
    def test_no_file_gives_defaults(self):
        cfg = load_config()
        assert cfg.installer.base_url == ""

    def test_explicit_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_loads_yaml_with_env_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("UC_PASS", "hunter2")
        path = tmp_path / "custom.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "installer": {
                        "base_url": "https://example.test",
                        "username": "admin",
                        "password": "${UC_PASS}",
                    },
                    "reconciler": {"max_runtime_seconds": 60},
                }
            )
        )
        cfg = load_config(str(path))
        assert cfg.installer.password == "hunter2"
        assert cfg.reconciler.max_runtime_seconds == 60

    def test_finds_file_in_working_directory(self, tmp_path):
        (tmp_path / "update_center.yaml").write_text("batch:\n  requested_by: ops\n")
        assert load_config().batch.requested_by == "ops"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        (tmp_path / "update_center.yaml").write_text(
            "reconciler:\n  handle_max_attempts: 3\n"
        )
        monkeypatch.setenv("UPDATE_CENTER_RECONCILER_HANDLE_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("UPDATE_CENTER_INSTALLER_BASE_URL", "https://env.test")
        monkeypatch.setenv("UPDATE_CENTER_DATABASE_ECHO", "true")
        cfg = load_config()
        assert cfg.reconciler.handle_max_attempts == 7
        assert cfg.installer.base_url == "https://env.test"
        assert cfg.database.echo is True

    def test_invalid_values_are_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("reconciler:\n  max_runtime_seconds: -5\n")
        with pytest.raises(ValueError):
            load_config(str(path))
