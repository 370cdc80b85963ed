"""External CLI orchestration: discovery, trust policy and run lifecycle for codex and claude."""
from .models import (
    AuthStatus,
    AvailabilityEntry,
    AvailabilitySnapshot,
    BinaryTrust,
    ExternalCliProvider,
    InteractionType,
    PendingInteraction,
    ProgressEntry,
    ProgressKind,
    ResponseDecision,
    ResponsePayload,
    RunOrigin,
    RunRecord,
    RunStatus,
    RunSummary,
    StartRunInput,
)
from .config import ManagerConfig, ProviderRuntimeSettings, RuntimeConfig
from .errors import (
    CLI_AUTH_REQUIRED,
    CLI_PROTOCOL_ERROR,
    CLI_PROVIDER_BLOCKED,
    CLI_RUN_INTERRUPTED,
    ExternalCliError,
    ExternalCliProtocolError,
    ProviderBlockedError,
)
from .response_parser import parse_natural_language_response
from .trust import TrustDecision, TrustPolicy, evaluate_binary_trust

__all__ = [
    # Core services (lazy import to avoid circular deps)
    "DiscoveryService",
    "RunManager",
    "ExternalCliTools",
    "ToolContext",
    # Models
    "AuthStatus",
    "AvailabilityEntry",
    "AvailabilitySnapshot",
    "BinaryTrust",
    "ExternalCliProvider",
    "InteractionType",
    "PendingInteraction",
    "ProgressEntry",
    "ProgressKind",
    "ResponseDecision",
    "ResponsePayload",
    "RunOrigin",
    "RunRecord",
    "RunStatus",
    "RunSummary",
    "StartRunInput",
    # Config
    "ManagerConfig",
    "ProviderRuntimeSettings",
    "RuntimeConfig",
    # YAML config (lazy import)
    "ExtCliConfig",
    "load_yaml_config",
    # Errors
    "CLI_AUTH_REQUIRED",
    "CLI_PROTOCOL_ERROR",
    "CLI_PROVIDER_BLOCKED",
    "CLI_RUN_INTERRUPTED",
    "ExternalCliError",
    "ExternalCliProtocolError",
    "ProviderBlockedError",
    # Policy
    "TrustDecision",
    "TrustPolicy",
    "evaluate_binary_trust",
    "parse_natural_language_response",
]


def __getattr__(name: str):
    if name == "DiscoveryService":
        from .discovery import DiscoveryService
        return DiscoveryService
    if name == "RunManager":
        from .run_manager import RunManager
        return RunManager
    if name in ("ExternalCliTools", "ToolContext"):
        from . import tools
        return getattr(tools, name)
    if name in ("ExtCliConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
