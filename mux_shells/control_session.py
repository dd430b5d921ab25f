from __future__ import annotations

import asyncio
import shlex
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from loguru import logger

from .control import ControlModeParser, Pane, Window
from .correlator import CommandCorrelator
from .errors import MuxError, SessionNotRunningError
from .events import ControlEvent, Disconnected, EventBus, SessionEvent
from .registry import exact_target
from .supervisor import ProcessSupervisor


class PaneDirection(str, Enum):
    UP = "U"
    DOWN = "D"
    LEFT = "L"
    RIGHT = "R"

    @property
    def flag(self) -> str:
        return f"-{self.value}"


def _pane_ref(pane_id: str) -> str:
    return pane_id if pane_id.startswith("%") else f"%{pane_id}"


def _window_ref(window_id: str) -> str:
    return window_id if window_id.startswith("@") else f"@{window_id}"


class ControlModeSession:
    """A `tmux -C` client attached to one session.

    Output is parsed as it arrives; every resulting event is published on the
    bus (when given) and passed to `on_event`, in stream order.
    """

    def __init__(
        self,
        session_name: str,
        tmux_path: str,
        bus: Optional[EventBus] = None,
        connect_grace: float = 0.5,
        *,
        session_id: Optional[str] = None,
        poll_interval: float = 0.01,
        command_timeout: float = 5.0,
        on_event: Optional[Callable[[ControlEvent], Any]] = None,
    ) -> None:
        self.session_name = session_name
        self.tmux_path = tmux_path
        self.bus = bus
        self.connect_grace = connect_grace
        self.session_id = session_id or session_name
        self.command_timeout = command_timeout
        self.on_event = on_event
        self.parser = ControlModeParser()
        self.correlator = CommandCorrelator(self.parser, poll_interval=poll_interval)
        self.supervisor: Optional[ProcessSupervisor] = None
        self._send_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State

    @property
    def is_connected(self) -> bool:
        return self.parser.is_connected

    @property
    def is_running(self) -> bool:
        return self.supervisor is not None and self.supervisor.is_running

    @property
    def panes(self) -> Tuple[Pane, ...]:
        return self.parser.panes

    @property
    def windows(self) -> Tuple[Window, ...]:
        return self.parser.windows

    # ------------------------------------------------------------------
    # Connection

    async def connect(self) -> None:
        if self.is_running:
            return
        self.parser.reset()
        self.supervisor = ProcessSupervisor(
            f"tmux:{self.session_name}",
            on_data=self._on_data,
            on_exit=self._on_exit,
        )
        await self.supervisor.start([self.tmux_path, "-C", "attach-session", "-t", exact_target(self.session_name)])

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.connect_grace
        while not self.parser.is_connected and loop.time() < deadline:
            if not self.supervisor.is_running:
                raise MuxError(f"tmux control client for {self.session_name} exited while connecting")
            await asyncio.sleep(self.correlator.poll_interval)

        # The attach itself is answered with a %begin/%end pair no ticket owns.
        self.parser.take_begun()
        for command_id in self.parser.completed_ids():
            self.parser.claim(command_id)

        if self.parser.is_connected:
            logger.info(f"[control] attached to {self.session_name}")
        else:
            logger.warning(f"[control] no session-changed from {self.session_name} within {self.connect_grace}s")

    def _on_data(self, chunk: bytes) -> None:
        for event in self.parser.feed(chunk):
            self._dispatch(event)

    def _dispatch(self, event: ControlEvent) -> None:
        if self.bus is not None:
            self.bus.publish_nowait(SessionEvent(type=event.type, session_id=self.session_id, control=event))
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.exception(f"[control] event handler failed for {self.session_name}")

    def _on_exit(self, code: Optional[int]) -> None:
        if self.parser.is_connected:
            self.parser.is_connected = False
            self._dispatch(Disconnected(f"client exited ({code})"))

    async def disconnect(self) -> None:
        supervisor, self.supervisor = self.supervisor, None
        if supervisor is None:
            return
        await supervisor.terminate()
        self.parser.is_connected = False
        logger.info(f"[control] disconnected from {self.session_name}")

    async def detach(self) -> None:
        if self.is_running:
            try:
                await self.send_command("detach-client")
            except SessionNotRunningError:
                pass
            else:
                loop = asyncio.get_running_loop()
                deadline = loop.time() + self.connect_grace
                while self.is_running and loop.time() < deadline:
                    await asyncio.sleep(self.correlator.poll_interval)
        await self.disconnect()

    # ------------------------------------------------------------------
    # Commands

    async def send_command(self, command: str) -> int:
        """Write one command line; returns the ticket to await its response with."""
        if not self.is_running:
            raise SessionNotRunningError(f"control client for {self.session_name} is not running")
        async with self._send_lock:
            wire, ticket = self.correlator.prepare(command)
            try:
                await self.supervisor.write((wire + "\n").encode("utf-8"))
            except BaseException:
                self.correlator.forget(ticket)
                raise
        return ticket

    async def send_command_and_wait(self, command: str, timeout: Optional[float] = None) -> Optional[str]:
        ticket = await self.send_command(command)
        response = await self.correlator.await_response(
            ticket, self.command_timeout if timeout is None else timeout
        )
        if response is None:
            return None
        if response.is_error:
            logger.debug(f"[control] {command!r} failed: {response.output.strip()}")
        return response.output

    # ------------------------------------------------------------------
    # Panes

    async def split_horizontal(self) -> None:
        await self.send_command("split-window -v")

    async def split_vertical(self) -> None:
        await self.send_command("split-window -h")

    async def select_pane(self, direction: PaneDirection) -> None:
        await self.send_command(f"select-pane {PaneDirection(direction).flag}")

    async def select_pane_id(self, pane_id: str) -> None:
        await self.send_command(f"select-pane -t {_pane_ref(pane_id)}")

    async def close_pane(self) -> None:
        await self.send_command("kill-pane")

    async def toggle_zoom(self) -> None:
        await self.send_command("resize-pane -Z")

    async def resize_pane(self, direction: PaneDirection, cells: int = 5) -> None:
        if cells < 1:
            raise ValueError("cells must be >= 1")
        await self.send_command(f"resize-pane {PaneDirection(direction).flag} {int(cells)}")

    async def swap_pane(self, direction: PaneDirection) -> None:
        # swap-pane only knows previous (-U) and next (-D).
        direction = PaneDirection(direction)
        flag = "-U" if direction in (PaneDirection.UP, PaneDirection.LEFT) else "-D"
        await self.send_command(f"swap-pane {flag}")

    async def break_pane(self) -> None:
        await self.send_command("break-pane")

    async def join_pane(self, from_window_id: str, pane_id: str) -> None:
        await self.send_command(f"join-pane -s {_window_ref(from_window_id)}.{_pane_ref(pane_id)}")

    async def refresh_layout(self) -> Optional[str]:
        output = await self.send_command_and_wait("display-message -p '#{window_layout}'")
        return output.strip() if output is not None else None

    # ------------------------------------------------------------------
    # Windows

    async def new_window(self, name: Optional[str] = None) -> None:
        if name:
            await self.send_command(f"new-window -n {shlex.quote(name)}")
        else:
            await self.send_command("new-window")

    async def select_window(self, window_id: str) -> None:
        await self.send_command(f"select-window -t {_window_ref(window_id)}")

    async def rename_window(self, name: str, window_id: Optional[str] = None) -> None:
        if window_id:
            await self.send_command(f"rename-window -t {_window_ref(window_id)} {shlex.quote(name)}")
        else:
            await self.send_command(f"rename-window {shlex.quote(name)}")

    async def close_window(self, window_id: Optional[str] = None) -> None:
        if window_id:
            await self.send_command(f"kill-window -t {_window_ref(window_id)}")
        else:
            await self.send_command("kill-window")

    async def next_window(self) -> None:
        await self.send_command("next-window")

    async def previous_window(self) -> None:
        await self.send_command("previous-window")
