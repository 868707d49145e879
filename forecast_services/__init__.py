"""
forecast_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines
    (forecast_engines/) with database sessions.  This is the **only** layer
    that commits transactions, reads configuration or uses wall-clock time.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        forecast_services/ -> forecast_engines/  (allowed)
        forecast_services/ -> forecast_kernel/   (allowed)
        forecast_engines/  -> forecast_services/ (FORBIDDEN)
        forecast_kernel/   -> forecast_services/ (FORBIDDEN)
"""

from forecast_kernel.logging_config import get_logger

logger = get_logger("services")

from forecast_services.bootstrap import init_database, resolve_database_url  # noqa: E402
from forecast_services.forecast_service import (  # noqa: E402
    ForecastService,
    retry_policy_from_settings,
)

__all__ = [
    "ForecastService",
    "init_database",
    "resolve_database_url",
    "retry_policy_from_settings",
]
