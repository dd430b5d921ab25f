from __future__ import annotations

import asyncio
import re
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, NamedTuple, Optional, Sequence

from loguru import logger

from .config import BackendConfig
from .errors import CommandFailedError, MuxUnavailableError
from .locator import UNAVAILABLE, TmuxInfo, TmuxLocator

LIST_FORMAT = "#{session_name}|#{session_created}|#{session_attached}|#{pane_current_path}"
SHORT_ID_LEN = 8

# Options applied to sessions we create so they render cleanly when embedded.
SESSION_OPTIONS = (
    ("status", "off"),
    ("mouse", "on"),
    ("default-terminal", "xterm-256color"),
    ("escape-time", "10"),
    ("allow-passthrough", "off"),
)

# The host terminal's values describe the host, not the embedded session.
_SKIPPED_ENV = frozenset({"TERM", "COLORTERM"})


class RecoverableSessionInfo(NamedTuple):
    name: str
    short_id: str
    created_at: datetime
    is_attached: bool
    current_path: Optional[str] = None


class ReconcileResult(NamedTuple):
    matched: List[RecoverableSessionInfo]
    orphans: List[RecoverableSessionInfo]


def _is_no_server(output: str) -> bool:
    text = output.lower()
    return "no server running" in text or "error connecting to" in text


def exact_target(name: str) -> str:
    # A bare name also matches by prefix and glob; `=` makes tmux match it exactly.
    return f"={name}"


class SessionRegistry:
    """One-shot tmux commands plus the cache of recoverable sessions."""

    def __init__(self, config: Optional[BackendConfig] = None, locator: Optional[TmuxLocator] = None) -> None:
        self.config = config or BackendConfig()
        self.locator = locator or TmuxLocator(explicit_path=self.config.tmux_path)
        self.info: TmuxInfo = UNAVAILABLE
        self._detected = False
        self._recoverable: List[RecoverableSessionInfo] = []
        self._name_re = re.compile(rf"^{re.escape(self.config.session_prefix)}[0-9a-f]{{{SHORT_ID_LEN}}}")

    # ------------------------------------------------------------------
    # Detection

    async def detect(self, refresh: bool = False) -> TmuxInfo:
        if self._detected and not refresh:
            return self.info
        self.info = await self.locator.detect()
        self._detected = True
        return self.info

    @property
    def is_available(self) -> bool:
        return self.info.available

    @property
    def tmux_path(self) -> Optional[str]:
        return self.info.path

    # ------------------------------------------------------------------
    # Naming

    def session_name(self, card_id: str) -> str:
        hex_id = str(card_id).replace("-", "").lower()
        return f"{self.config.session_prefix}{hex_id[:SHORT_ID_LEN]}"

    def short_id(self, session_name: str) -> Optional[str]:
        if not self.is_managed(session_name):
            return None
        return session_name[len(self.config.session_prefix):]

    def is_managed(self, session_name: str) -> bool:
        return bool(self._name_re.match(session_name or ""))

    @staticmethod
    def new_card_id() -> str:
        return str(uuid.uuid4())

    # ------------------------------------------------------------------
    # Invocation

    async def run_tmux(self, args: Sequence[str]) -> str:
        """Run one tmux command and return its stdout."""
        path = self.info.path
        if not path:
            raise MuxUnavailableError()
        argv = [path, *[str(a) for a in args]]
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate()
        stdout = out.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            stderr = err.decode("utf-8", errors="replace")
            raise CommandFailedError(list(args), proc.returncode, (stderr or stdout).strip())
        return stdout

    # ------------------------------------------------------------------
    # Sessions

    @property
    def recoverable(self) -> List[RecoverableSessionInfo]:
        return list(self._recoverable)

    async def list(self) -> List[RecoverableSessionInfo]:
        try:
            output = await self.run_tmux(["list-sessions", "-F", LIST_FORMAT])
        except CommandFailedError as exc:
            if not _is_no_server(exc.output):
                raise
            output = ""

        sessions = self.parse_list_output(output)
        self._recoverable = [s for s in sessions if not s.is_attached]
        return sessions

    def parse_list_output(self, output: str) -> List[RecoverableSessionInfo]:
        sessions: List[RecoverableSessionInfo] = []
        for line in output.splitlines():
            parts = line.split("|")
            if len(parts) < 4:
                continue
            name = parts[0]
            if not self.is_managed(name):
                continue
            try:
                created = float(parts[1])
            except ValueError:
                created = 0.0
            sessions.append(
                RecoverableSessionInfo(
                    name=name,
                    short_id=name[len(self.config.session_prefix):],
                    created_at=datetime.fromtimestamp(created, tz=timezone.utc),
                    is_attached=parts[2].strip() not in ("", "0"),
                    # Paths may themselves contain the separator.
                    current_path="|".join(parts[3:]) or None,
                )
            )
        return sessions

    async def exists(self, name: str) -> bool:
        try:
            await self.run_tmux(["has-session", "-t", exact_target(name)])
        except CommandFailedError:
            return False
        return True

    async def create(self, name: str, cwd: str, shell: str, env: Optional[dict] = None) -> None:
        args: List[str] = ["new-session", "-d", "-s", name, "-c", cwd]
        for key, value in (env or {}).items():
            if key in _SKIPPED_ENV:
                continue
            args.extend(["-e", f"{key}={value}"])
        args.extend([shell, "-l"])
        await self.run_tmux(args)
        logger.info(f"[registry] created tmux session {name} in {cwd}")

    async def configure(self, name: str) -> None:
        for option, value in SESSION_OPTIONS:
            try:
                await self.run_tmux(["set-option", "-t", exact_target(name), option, value])
            except CommandFailedError as exc:
                logger.warning(f"[registry] set-option {option} on {name} failed: {exc.output or exc.exit_code}")

    async def kill(self, name: str) -> None:
        await self.run_tmux(["kill-session", "-t", exact_target(name)])
        self._recoverable = [s for s in self._recoverable if s.name != name]
        logger.info(f"[registry] killed tmux session {name}")

    async def set_environment(self, name: str, key: str, value: str) -> None:
        await self.run_tmux(["set-environment", "-t", exact_target(name), key, value])

    async def show_environment(self, name: str, key: str) -> Optional[str]:
        try:
            output = await self.run_tmux(["show-environment", "-t", exact_target(name), key])
        except CommandFailedError:
            return None
        line = output[:-1] if output.endswith("\n") else output
        # `-KEY` marks a variable removed from the session environment.
        if "=" not in line or line.startswith("-"):
            return None
        return line.split("=", 1)[1]

    def attach_command(self, name: str, control_mode: bool = True) -> List[str]:
        if not self.info.path:
            raise MuxUnavailableError()
        argv = [self.info.path]
        if control_mode:
            argv.append("-CC")
        argv.extend(["attach-session", "-t", exact_target(name)])
        return argv

    def mark_recovered(self, name: str) -> None:
        self._recoverable = [s for s in self._recoverable if s.name != name]

    async def reconcile(self, open_names: Iterable[str], known_short_ids: Iterable[str]) -> ReconcileResult:
        """Split detached sessions we do not have open into known and orphaned."""
        await self.list()
        opened = set(open_names)
        known = set(known_short_ids)
        matched: List[RecoverableSessionInfo] = []
        orphans: List[RecoverableSessionInfo] = []
        for info in self._recoverable:
            if info.name in opened:
                continue
            if info.short_id in known or info.name in known:
                matched.append(info)
            else:
                orphans.append(info)
        if matched or orphans:
            logger.info(f"[registry] reconcile: {len(matched)} known, {len(orphans)} orphaned")
        return ReconcileResult(matched, orphans)
