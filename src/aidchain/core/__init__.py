"""aidchain core module.

Shared components used across all services:
- Configuration management
- Cached settings accessor
"""

from aidchain.core.config import (
    AuthSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    Settings,
    WorkflowSettings,
)
from aidchain.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "AuthSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "Settings",
    "WorkflowSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
