"""
Tests for process start-up wiring (forecast_services.bootstrap).
"""

from dataclasses import replace

import pytest
from sqlalchemy import inspect

from forecast_config import DatabaseSettings, EngineSettings
from forecast_kernel.db.engine import reset_engine
from forecast_services import init_database, resolve_database_url


class TestResolveDatabaseUrl:
    def test_explicit_url_first(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
        settings = replace(EngineSettings(), database=DatabaseSettings(url="sqlite:///cfg.db"))

        assert resolve_database_url(settings, "sqlite:///arg.db") == "sqlite:///arg.db"
        assert resolve_database_url(settings) == "sqlite:///cfg.db"

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")

        assert resolve_database_url(EngineSettings()) == "sqlite:///env.db"

    def test_no_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError):
            resolve_database_url(EngineSettings())


class TestInitDatabase:
    def test_creates_schema(self, tmp_path, captured_logs):
        url = f"sqlite:///{tmp_path / 'boot.db'}"
        try:
            engine = init_database(EngineSettings(), url, create_schema=True)

            tables = set(inspect(engine).get_table_names())
            assert {"projects", "line_items", "forecast_versions", "forecast_entries"} <= tables
            assert any(r["message"] == "database_initialized" for r in captured_logs())
        finally:
            reset_engine()
