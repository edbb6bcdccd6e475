"""Tests for database URL resolution and session scoping."""

import pytest

from update_center.db import connection
from update_center.db.models import BatchRequest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("UPDATE_CENTER_DB_PATH", raising=False)


class TestGetDatabaseUrl:
    def test_configured_url_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
        assert connection.get_database_url("sqlite:///cfg.db") == "sqlite:///cfg.db"

    def test_database_url_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
        assert connection.get_database_url() == "sqlite:///env.db"

    def test_db_path_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("UPDATE_CENTER_DB_PATH", str(tmp_path / "uc.db"))
        assert connection.get_database_url() == f"sqlite:///{tmp_path / 'uc.db'}"

    def test_platform_default(self, monkeypatch, tmp_path):
        monkeypatch.setattr(
            "update_center.utils.paths.get_data_dir", lambda: tmp_path / "data"
        )
        url = connection.get_database_url()
        assert url == f"sqlite:///{tmp_path / 'data' / 'update_center.db'}"
        assert (tmp_path / "data").is_dir()


class TestSessionScope:
    @pytest.fixture
    def factory(self, tmp_path):
        factory = connection.configure(f"sqlite:///{tmp_path / 'state.db'}")
        connection.init_db()
        return factory

    def test_commits_on_success(self, factory):
        with connection.session_scope(factory) as db:
            db.add(BatchRequest(number="BATCH0001001", requested_by="t"))
        with connection.session_scope(factory) as db:
            assert db.query(BatchRequest).count() == 1

    def test_rolls_back_on_error(self, factory):
        with pytest.raises(RuntimeError):
            with connection.session_scope(factory) as db:
                db.add(BatchRequest(number="BATCH0001001", requested_by="t"))
                db.flush()
                raise RuntimeError("boom")
        with connection.session_scope(factory) as db:
            assert db.query(BatchRequest).count() == 0

    def test_default_factory_is_process_wide(self, factory):
        assert connection.get_session_factory() is factory
