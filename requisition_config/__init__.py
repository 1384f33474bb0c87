"""
requisition_config -- runtime configuration for the requisition backend.

Responsibility:
    Provides ``get_active_config()``, the entrypoint the backend container
    and CLI use to obtain a validated ``BackendConfig``.

Architecture position:
    Configuration.  Sits above ``requisition_kernel`` and below
    ``requisition_services``.  The kernel never imports from this package;
    the container passes plain values (timeout hours, roles) into kernel
    services.

Failure modes:
    - ``FileNotFoundError`` / ``yaml.YAMLError`` from the loader.
    - ``ValueError`` on unknown keys or invalid values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``REQUISITION_CONFIG_TRACE`` log entry carrying the configuration
    checksum, so a run can be tied back to the exact settings it used.
"""

from __future__ import annotations

import logging
from pathlib import Path

from requisition_config.loader import DATABASE_URL_ENV, load_config, load_yaml_file
from requisition_config.schema import BackendConfig, NotificationSettings, SmtpSettings

_logger = logging.getLogger("requisition_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "backend.yaml"


def get_active_config(path: str | Path | None = None) -> BackendConfig:
    """Load ``path`` (default: the packaged defaults) and log its trace."""
    config = load_config(path if path is not None else DEFAULT_CONFIG_PATH)
    _logger.info(
        "REQUISITION_CONFIG_TRACE",
        extra={
            "trace_type": "REQUISITION_CONFIG_TRACE",
            "checksum": config.checksum,
            "database_dialect": config.database_url.split(":", 1)[0],
            "transport": config.notifications.transport,
            "reservation_timeout_hours": config.reservation_timeout_hours,
        },
    )
    return config


__all__ = [
    "BackendConfig",
    "DATABASE_URL_ENV",
    "DEFAULT_CONFIG_PATH",
    "NotificationSettings",
    "SmtpSettings",
    "get_active_config",
    "load_config",
    "load_yaml_file",
]
