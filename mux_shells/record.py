from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class BackendKind(str, Enum):
    DIRECT = "direct"
    MULTIPLEXED = "multiplexed"


class SessionState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    DETACHED = "detached"
    TERMINATED = "terminated"


class Attachment(str, Enum):
    ATTACHED = "attached"
    DETACHED = "detached"
    ORPHANED = "orphaned"


# Allowed lifecycle moves. DETACHED -> STARTING is a reattach.
TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.CREATED: frozenset({SessionState.STARTING, SessionState.TERMINATED}),
    SessionState.STARTING: frozenset({SessionState.RUNNING, SessionState.TERMINATED, SessionState.DETACHED}),
    SessionState.RUNNING: frozenset({SessionState.DETACHED, SessionState.TERMINATED}),
    SessionState.DETACHED: frozenset({SessionState.STARTING, SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}


@dataclass
class Session:
    """One terminal session as the host application sees it."""

    id: str
    name: str
    backend: BackendKind
    cwd: str
    shell: str
    created_at: float
    state: SessionState = SessionState.CREATED
    attachment: Attachment = Attachment.DETACHED
    mux_session_name: Optional[str] = None
    init_command: Optional[str] = None
    env_overrides: Dict[str, str] = field(default_factory=dict)
    pid: Optional[int] = None
    current_directory: Optional[str] = None
    last_activity_at: Optional[float] = None
    exit_code: Optional[int] = None

    def can_move_to(self, target: SessionState) -> bool:
        return target in TRANSITIONS[self.state]

    @property
    def is_multiplexed(self) -> bool:
        return self.backend is BackendKind.MULTIPLEXED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "backend": self.backend.value,
            "cwd": self.cwd,
            "shell": self.shell,
            "created_at": self.created_at,
            "state": self.state.value,
            "attachment": self.attachment.value,
            "mux_session_name": self.mux_session_name,
            "init_command": self.init_command,
            "env_overrides": self.env_overrides,
            "pid": self.pid,
            "current_directory": self.current_directory,
            "last_activity_at": self.last_activity_at,
            "exit_code": self.exit_code,
        }

    def to_payload(self, *, include_env: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "backend": self.backend.value,
            "cwd": self.cwd,
            "shell": self.shell,
            "created_at": self.created_at,
            "state": self.state.value,
            "attachment": self.attachment.value,
            "mux_session_name": self.mux_session_name,
            "pid": self.pid,
            "current_directory": self.current_directory,
            "last_activity_at": self.last_activity_at,
            "exit_code": self.exit_code,
            "env_keys": sorted(self.env_overrides.keys()),
        }
        if include_env:
            payload["env_overrides"] = dict(self.env_overrides)
        return payload
