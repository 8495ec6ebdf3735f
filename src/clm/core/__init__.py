"""Core module.

Shared components used across the engine:
- Configuration management
- Error hierarchy
- Tenant context and clock
"""

from clm.core.config import (
    AlertSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    Settings,
    SweeperSettings,
)
from clm.core.context import Clock, TenantContext, utc_now
from clm.core.errors import (
    AlertNotFoundError,
    ContractLifecycleError,
    ContractNotFoundError,
    InvalidEventDataError,
    InvalidTransitionError,
    LeaseHeldError,
    LifecycleErrorReason,
    NotFoundError,
    StatusConflictError,
    StoreUnavailableError,
)
from clm.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "AlertNotFoundError",
    "AlertSettings",
    "Clock",
    "ConfigValidationError",
    "ContractLifecycleError",
    "ContractNotFoundError",
    "DatabaseSettings",
    "Environment",
    "InvalidEventDataError",
    "InvalidTransitionError",
    "LeaseHeldError",
    "LifecycleErrorReason",
    "NotFoundError",
    "Settings",
    "StatusConflictError",
    "StoreUnavailableError",
    "SweeperSettings",
    "TenantContext",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
    "utc_now",
]
