"""Process-wide access to aidchain settings.

    from aidchain.core.settings import get_settings

    prefix = get_settings().workflow.code_prefix

Settings are read from the environment once. A service that cannot load a
valid configuration refuses to start rather than run workflow actions on
defaults it was not given.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from aidchain.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _describe_validation_error(exc: ValidationError) -> str:
    return "\n".join(
        f"  - {'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: The environment does not describe a usable configuration.
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as exc:
        logger.critical("Invalid aidchain configuration:\n%s", _describe_validation_error(exc))
        raise SystemExit(1) from exc
    except ConfigValidationError as exc:
        logger.critical(
            "Invalid aidchain configuration: %s (field: %s)",
            exc.message,
            exc.field or "unknown",
        )
        raise SystemExit(1) from exc

    logger.info(
        "aidchain configured",
        extra={
            "environment": settings.environment.value,
            "app_version": settings.app_version,
            "code_prefix": settings.workflow.code_prefix,
        },
    )
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings so the next access rereads the environment."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Settings if they load, None if the configuration is invalid."""
    try:
        return get_settings()
    except SystemExit:
        return None
