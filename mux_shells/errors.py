from __future__ import annotations

from typing import List, Sequence, Union


class MuxError(Exception):
    """Base exception for session backend failures."""


class MuxUnavailableError(MuxError):
    """The tmux binary could not be located."""

    def __init__(self, message: str = "tmux is not installed. Install it with your package manager (e.g. brew install tmux)") -> None:
        super().__init__(message)


class SessionNotFoundError(MuxError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"tmux session '{name}' not found")


class CommandFailedError(MuxError):
    """A one-shot tmux invocation exited non-zero."""

    def __init__(self, command: Union[str, Sequence[str]], exit_code: int, output: str) -> None:
        if not isinstance(command, str):
            command = " ".join(str(part) for part in command)
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"tmux command failed ({exit_code}): {command}\n{output}")


class SessionNotRunningError(MuxError):
    pass


class InvalidTransitionError(MuxError):
    def __init__(self, session_id: str, current: str, target: str) -> None:
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"session {session_id}: cannot move from {current} to {target}")


__all__: List[str] = [
    "MuxError",
    "MuxUnavailableError",
    "SessionNotFoundError",
    "CommandFailedError",
    "SessionNotRunningError",
    "InvalidTransitionError",
]
