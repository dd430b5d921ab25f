from __future__ import annotations

import time
from asyncio import Queue as AsyncQueue
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set, Union


class EventType(Enum):
    CONNECTED = "control.connected"
    DISCONNECTED = "control.disconnected"
    PANE_OUTPUT = "control.pane_output"
    LAYOUT_CHANGED = "control.layout_changed"
    WINDOW_ADDED = "control.window_added"
    WINDOW_CLOSED = "control.window_closed"
    WINDOW_RENAMED = "control.window_renamed"
    PANE_MODE_CHANGED = "control.pane_mode_changed"

    SESSION_CREATED = "session.created"
    SESSION_STARTING = "session.starting"
    SESSION_RUNNING = "session.running"
    SESSION_DETACHED = "session.detached"
    SESSION_TERMINATED = "session.terminated"
    SESSION_RECOVERED = "session.recovered"
    SESSION_FALLBACK = "session.fallback"


# Control-mode events. Frozen, ordered, one per protocol notification.

@dataclass(frozen=True)
class Connected:
    session_id: str
    name: str
    type: EventType = field(default=EventType.CONNECTED, init=False)


@dataclass(frozen=True)
class Disconnected:
    reason: Optional[str] = None
    type: EventType = field(default=EventType.DISCONNECTED, init=False)


@dataclass(frozen=True)
class PaneOutput:
    pane_id: str
    data: bytes
    type: EventType = field(default=EventType.PANE_OUTPUT, init=False)


@dataclass(frozen=True)
class LayoutChanged:
    window_id: str
    layout: str
    type: EventType = field(default=EventType.LAYOUT_CHANGED, init=False)


@dataclass(frozen=True)
class WindowAdded:
    window_id: str
    type: EventType = field(default=EventType.WINDOW_ADDED, init=False)


@dataclass(frozen=True)
class WindowClosed:
    window_id: str
    type: EventType = field(default=EventType.WINDOW_CLOSED, init=False)


@dataclass(frozen=True)
class WindowRenamed:
    window_id: str
    name: str
    type: EventType = field(default=EventType.WINDOW_RENAMED, init=False)


@dataclass(frozen=True)
class PaneModeChanged:
    pane_id: str
    in_copy_mode: bool
    type: EventType = field(default=EventType.PANE_MODE_CHANGED, init=False)


ControlEvent = Union[
    Connected,
    Disconnected,
    PaneOutput,
    LayoutChanged,
    WindowAdded,
    WindowClosed,
    WindowRenamed,
    PaneModeChanged,
]


@dataclass
class SessionEvent:
    """Envelope published on the bus.

    `control` carries the protocol event for control-mode notifications; session
    lifecycle events leave it empty and describe the session in `data`.
    """

    type: EventType
    session_id: str
    timestamp: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)
    control: Optional[ControlEvent] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.data)
        if isinstance(self.control, PaneOutput):
            data.setdefault("pane_id", self.control.pane_id)
            data.setdefault("chunk", self.control.data.decode("utf-8", errors="replace"))
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "data": data,
        }


class EventBus:
    """In-process event bus with subscription support.

    One bus is owned by whatever composes the backend; there is no process-wide
    instance. Each subscriber gets every event in publish order.
    """

    def __init__(self) -> None:
        self._subscribers: Set[AsyncQueue[SessionEvent]] = set()

    def subscribe(self) -> AsyncQueue[SessionEvent]:
        q: AsyncQueue[SessionEvent] = AsyncQueue()
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: AsyncQueue[SessionEvent]) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish_nowait(self, event: SessionEvent) -> None:
        for q in list(self._subscribers):
            q.put_nowait(event)

    async def publish(self, event: SessionEvent) -> None:
        for q in list(self._subscribers):
            try:
                await q.put(event)
            except RuntimeError:
                self._subscribers.discard(q)
