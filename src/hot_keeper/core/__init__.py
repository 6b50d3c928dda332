"""Reload orchestration core."""

from .app_loader import AppKind, EntryPoint, HandlerOnly, SelfListening, adapt_app, load_entry
from .change_bridge import ChangeEventBridge
from .errors import (
    AppContractError,
    BindFailure,
    CertificateMissing,
    ConfigInvalid,
    HotKeeperError,
    ReloadFailure,
    ShutdownFatal,
    ShutdownTimeout,
    WatcherFailure,
)
from .invalidator import invalidate, select_stale
from .listener import Generation, GenerationState, ListenerManager, load_ssl_context
from .orchestrator import OrchestratorState, RestartOrchestrator
from .path_filter import PathFilter

__all__ = [
    "AppContractError",
    "AppKind",
    "BindFailure",
    "CertificateMissing",
    "ChangeEventBridge",
    "ConfigInvalid",
    "EntryPoint",
    "Generation",
    "GenerationState",
    "HandlerOnly",
    "HotKeeperError",
    "ListenerManager",
    "OrchestratorState",
    "PathFilter",
    "ReloadFailure",
    "RestartOrchestrator",
    "SelfListening",
    "ShutdownFatal",
    "ShutdownTimeout",
    "WatcherFailure",
    "adapt_app",
    "invalidate",
    "load_entry",
    "load_ssl_context",
    "select_stale",
]
