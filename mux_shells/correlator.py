from __future__ import annotations

import asyncio
import itertools
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from loguru import logger

from .control import CommandResponse, ControlModeParser


class CommandCorrelator:
    """Hands out tickets for commands and waits for their `%end` to show up.

    tmux numbers commands with one counter for the whole server, so the id a
    response will carry cannot be predicted. Each command gets a local ticket
    instead; tickets are bound, in write order, to the ids of the `%begin`
    lines this client's commands produce. Completion is then detected by
    polling the parser's completed table for the bound id.
    """

    def __init__(self, parser: ControlModeParser, poll_interval: float = 0.01, start_id: int = 0) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.parser = parser
        self.poll_interval = poll_interval
        self._tickets = itertools.count(start_id)
        self._unbound: Deque[int] = deque()
        self._bound: Dict[int, int] = {}
        self._abandoned: Set[int] = set()

    def prepare(self, command: str) -> Tuple[str, int]:
        ticket = next(self._tickets)
        self._unbound.append(ticket)
        return command.rstrip("\n"), ticket

    @property
    def in_flight(self) -> List[int]:
        pending = [t for t in self._unbound if t not in self._abandoned]
        return sorted([*pending, *self._bound])

    def forget(self, ticket: int) -> None:
        """Drop a ticket whose command was never written."""
        try:
            self._unbound.remove(ticket)
        except ValueError:
            pass
        self._bound.pop(ticket, None)
        self._abandoned.discard(ticket)

    def bind(self) -> None:
        """Pair tickets with the `%begin` ids that arrived since the last call."""
        for command_id in self.parser.take_begun():
            if not self._unbound:
                logger.debug(f"[control] response {command_id} matches no pending command")
                continue
            ticket = self._unbound.popleft()
            if ticket in self._abandoned:
                # Its waiter gave up; the late response stays unclaimed.
                self._abandoned.discard(ticket)
                continue
            self._bound[ticket] = command_id

    def tmux_id(self, ticket: int) -> Optional[int]:
        self.bind()
        return self._bound.get(ticket)

    async def await_response(self, ticket: int, timeout: float = 5.0) -> Optional[CommandResponse]:
        """Poll until the command behind `ticket` completes; None once `timeout` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        try:
            while True:
                command_id = self.tmux_id(ticket)
                if command_id is not None:
                    response = self.parser.claim(command_id)
                    if response is not None:
                        return response
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.debug(f"[control] command {ticket} timed out after {timeout}s")
                    return None
                await asyncio.sleep(min(self.poll_interval, remaining))
        finally:
            if self._bound.pop(ticket, None) is None and ticket in self._unbound:
                self._abandoned.add(ticket)
