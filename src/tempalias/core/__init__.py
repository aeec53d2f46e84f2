"""tempalias core module.

Shared components used across all services:
- Configuration management
- Cached settings accessor
"""

from tempalias.core.config import (
    ConfigValidationError,
    Environment,
    LifecycleSettings,
    ProviderSettings,
    Settings,
    StoreSettings,
)
from tempalias.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "Environment",
    "LifecycleSettings",
    "ProviderSettings",
    "Settings",
    "StoreSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
