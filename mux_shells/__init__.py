"""mux_shells - terminal sessions that survive their host, backed by tmux."""

from typing import Optional

from .backend import DIRECT_PANE_ID, RecoveredSession, SessionBackend
from .config import BackendConfig, load_config
from .control import CommandResponse, ControlModeParser, Pane, Window, percent_decode, percent_encode
from .control_session import ControlModeSession, PaneDirection
from .correlator import CommandCorrelator
from .errors import (
    CommandFailedError,
    InvalidTransitionError,
    MuxError,
    MuxUnavailableError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .events import (
    Connected,
    ControlEvent,
    Disconnected,
    EventBus,
    EventType,
    LayoutChanged,
    PaneModeChanged,
    PaneOutput,
    SessionEvent,
    WindowAdded,
    WindowClosed,
    WindowRenamed,
)
from .hooks import SessionLifecycleHooks
from .layout import LayoutError, LayoutNode, parse_layout
from .locator import TmuxInfo, TmuxLocator
from .metadata import (
    MetadataKey,
    MetadataStore,
    MetadataSync,
    SessionMetadata,
    SidecarFileStore,
    Tag,
    TmuxEnvironmentStore,
    decode_tags,
    encode_tags,
)
from .record import Attachment, BackendKind, Session, SessionState
from .registry import ReconcileResult, RecoverableSessionInfo, SessionRegistry
from .supervisor import ProcessSupervisor


async def create_backend(config: Optional[BackendConfig] = None, **kwargs) -> SessionBackend:
    """Build a backend from `config` (or `load_config()`) and run detection.

    Each call returns a new instance; the caller owns it.
    """
    backend = SessionBackend(config or load_config(), **kwargs)
    await backend.initialize()
    return backend


__all__ = [
    "create_backend",
    "SessionBackend",
    "RecoveredSession",
    "DIRECT_PANE_ID",
    "BackendConfig",
    "load_config",
    "ControlModeParser",
    "CommandResponse",
    "Pane",
    "Window",
    "percent_decode",
    "percent_encode",
    "ControlModeSession",
    "PaneDirection",
    "CommandCorrelator",
    "MuxError",
    "MuxUnavailableError",
    "SessionNotFoundError",
    "CommandFailedError",
    "SessionNotRunningError",
    "InvalidTransitionError",
    "EventBus",
    "EventType",
    "SessionEvent",
    "ControlEvent",
    "Connected",
    "Disconnected",
    "PaneOutput",
    "LayoutChanged",
    "WindowAdded",
    "WindowClosed",
    "WindowRenamed",
    "PaneModeChanged",
    "SessionLifecycleHooks",
    "LayoutError",
    "LayoutNode",
    "parse_layout",
    "TmuxInfo",
    "TmuxLocator",
    "MetadataKey",
    "MetadataStore",
    "MetadataSync",
    "SessionMetadata",
    "SidecarFileStore",
    "TmuxEnvironmentStore",
    "Tag",
    "encode_tags",
    "decode_tags",
    "Session",
    "SessionState",
    "BackendKind",
    "Attachment",
    "SessionRegistry",
    "RecoverableSessionInfo",
    "ReconcileResult",
    "ProcessSupervisor",
]
