"""
Mode Resolver - launch mode resolution engine.

This package decides, once per launch, which experience an application shows:
a remotely configured web destination, the native legacy experience, a setup
screen while signals are pending, or an offline screen. Resolution combines
install attribution, deep links, pushed URLs, a remote decision endpoint and
locally persisted state.
"""

__version__ = "0.1.0"
__author__ = "Mode Resolver Team"

from mode_resolver.exceptions import (
    ModeResolverError,
    FetchError,
    BuildError,
    TransportError,
    ParseError,
    PersistenceError,
    TamperingError,
    ConfigurationError,
)
from mode_resolver.enums import (
    AppState,
    EvaluationReason,
    FetchErrorCode,
    LogLevel,
    Mode,
)
from mode_resolver.config import (
    AttributionConfig,
    RemoteConfigConfig,
    DeviceConfig,
    TimingConfig,
    PersistenceConfig,
    LoggingConfig,
    SystemConfig,
)
from mode_resolver.models import (
    AttributionRecord,
    DeepLinkSignal,
    PersistentState,
    StoredState,
    Evaluation,
    ModeTransition,
)
from mode_resolver.events import (
    AttributionReceived,
    DeepLinkReceived,
    TempUrlReceived,
    ConnectivityChanged,
    PermissionAnswered,
    PermissionSkipped,
)
from mode_resolver.mode_evaluator import ModeEvaluator, is_date_gate_open, is_valid_url
from mode_resolver.permission_gate import PermissionGate
from mode_resolver.state_store import StateStore, generate_tracking_id
from mode_resolver.audit_logger import AuditLogger, LogEntry
from mode_resolver.scheduler import Scheduler, ScheduledTask
from mode_resolver.attribution_client import AttributionClient
from mode_resolver.config_client import DeviceContext, RemoteConfigClient
from mode_resolver.orchestrator import ModeOrchestrator
from mode_resolver.attribution_collector import AttributionCollector
from mode_resolver.push import PushPayloadHandler, extract_url
from mode_resolver.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from mode_resolver.collaborators import ContentHost, HostBinding, InventoryStore, needs_tutorial
from mode_resolver.self_test import (
    SelfTest,
    SelfTestResult,
    EndpointTestResult,
    ConfigValidationResult,
    run_self_test,
)
from mode_resolver.cli import (
    main as cli_main,
    create_parser,
    create_default_config,
    load_config_from_env,
    load_config_from_file,
    save_config_to_file,
)

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "ModeResolverError",
    "FetchError",
    "BuildError",
    "TransportError",
    "ParseError",
    "PersistenceError",
    "TamperingError",
    "ConfigurationError",
    # Enums
    "AppState",
    "EvaluationReason",
    "FetchErrorCode",
    "LogLevel",
    "Mode",
    # Config
    "AttributionConfig",
    "RemoteConfigConfig",
    "DeviceConfig",
    "TimingConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "SystemConfig",
    # Models
    "AttributionRecord",
    "DeepLinkSignal",
    "PersistentState",
    "StoredState",
    "Evaluation",
    "ModeTransition",
    # Events
    "AttributionReceived",
    "DeepLinkReceived",
    "TempUrlReceived",
    "ConnectivityChanged",
    "PermissionAnswered",
    "PermissionSkipped",
    # Evaluation
    "ModeEvaluator",
    "is_date_gate_open",
    "is_valid_url",
    "PermissionGate",
    # State Store
    "StateStore",
    "generate_tracking_id",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Scheduler
    "Scheduler",
    "ScheduledTask",
    # Clients
    "AttributionClient",
    "DeviceContext",
    "RemoteConfigClient",
    # Orchestrator and adapters
    "ModeOrchestrator",
    "AttributionCollector",
    "PushPayloadHandler",
    "extract_url",
    "ConnectivityMonitor",
    "HttpConnectivityProbe",
    "ContentHost",
    "HostBinding",
    "InventoryStore",
    "needs_tutorial",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config_from_env",
    "load_config_from_file",
    "save_config_to_file",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "EndpointTestResult",
    "ConfigValidationResult",
    "run_self_test",
]
