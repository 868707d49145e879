"""
forecast_services.bootstrap -- process start-up wiring.

Initializes the database engine from ``EngineSettings.database``, installs
the ORM immutability listeners and (optionally) creates the schema.  Call
once per process before constructing a ForecastService.
"""

from __future__ import annotations

import os

from sqlalchemy.engine import Engine

from forecast_config import EngineSettings, get_active_config
from forecast_kernel.db.engine import create_tables, init_engine_from_url
from forecast_kernel.db.immutability import register_immutability_listeners
from forecast_kernel.logging_config import get_logger

logger = get_logger("services.bootstrap")

DATABASE_URL_ENV = "DATABASE_URL"


def resolve_database_url(settings: EngineSettings, url: str | None = None) -> str:
    """
    Explicit ``url``, then ``database.url`` from settings, then $DATABASE_URL.

    Raises:
        ValueError: If none is set.
    """
    resolved = url or settings.database.url or os.environ.get(DATABASE_URL_ENV)
    if not resolved:
        raise ValueError(
            f"No database URL: pass one, set database.url, or export {DATABASE_URL_ENV}"
        )
    return resolved


def init_database(
    settings: EngineSettings | None = None,
    url: str | None = None,
    *,
    create_schema: bool = False,
    echo: bool = False,
) -> Engine:
    settings = settings or get_active_config()
    database = settings.database
    engine = init_engine_from_url(
        resolve_database_url(settings, url),
        echo=echo,
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        pool_recycle=database.pool_recycle,
    )
    register_immutability_listeners()
    if create_schema:
        create_tables()

    logger.info(
        "database_initialized",
        extra={"dialect": engine.dialect.name, "schema_created": create_schema},
    )
    return engine


__all__ = ["DATABASE_URL_ENV", "init_database", "resolve_database_url"]
