import importlib.metadata

try:
    _detected_version = importlib.metadata.version("nexus-router")
    __version__ = _detected_version if _detected_version else "0.0.0-dev"
except Exception:
    # Fallback for dev environments where metadata might not be available
    __version__ = "0.0.0-dev"

from nexus_router.core import (
    ClassifiedError,
    ConfigurationError,
    FailureKind,
    GenerationRequest,
    GenerationResult,
    Orchestrator,
    StressSignal,
)
from nexus_router.factory import build_router
from nexus_router.settings import (
    APISettings,
    LedgerSettings,
    ObservabilitySettings,
    PathSettings,
    PoolSettings,
    RouterSettings,
    Settings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "__version__",
    # Entry point
    "build_router",
    "Orchestrator",
    # Requests & results
    "GenerationRequest",
    "GenerationResult",
    "StressSignal",
    # Errors
    "ClassifiedError",
    "ConfigurationError",
    "FailureKind",
    # Settings
    "Settings",
    "APISettings",
    "PathSettings",
    "RouterSettings",
    "PoolSettings",
    "LedgerSettings",
    "ObservabilitySettings",
    "get_settings",
    "clear_settings_cache",
]
