from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger

from .record import Session


MaybeAwaitable = Any


@dataclass(frozen=True)
class SessionLifecycleHooks:
    """Optional callbacks for hosts that want to follow session lifecycle.

    Callbacks may be sync or async. Failures are logged and never reach the
    caller of the backend operation.
    """

    # Session reached RUNNING (fresh open or reattach).
    on_session_running: Optional[Callable[[Session], MaybeAwaitable]] = None

    # A recovered tmux session was adopted.
    on_session_adopted: Optional[Callable[[Session], MaybeAwaitable]] = None

    # Session detached; the tmux session keeps running.
    on_session_detached: Optional[Callable[[Session], MaybeAwaitable]] = None

    # Session terminated. `exit_code` is known for direct sessions only.
    on_session_exited: Optional[Callable[[Session, Optional[int]], MaybeAwaitable]] = None


def fire_hook(hooks: Optional[SessionLifecycleHooks], name: str, *args: Any) -> None:
    """Run one hook without blocking; coroutines are scheduled as tasks."""
    hook = getattr(hooks, name, None) if hooks else None
    if not hook:
        return
    try:
        result = hook(*args)
    except Exception:
        logger.exception(f"[backend] hook {name} failed")
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        task.add_done_callback(lambda t: _report(name, t))


def _report(name: str, task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).warning(f"[backend] hook {name} failed")
