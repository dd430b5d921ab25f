from __future__ import annotations

import asyncio
import os
import shlex
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from loguru import logger

from .config import BackendConfig
from .control_session import ControlModeSession
from .errors import (
    InvalidTransitionError,
    MuxError,
    MuxUnavailableError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .events import ControlEvent, Disconnected, EventBus, EventType, PaneOutput, SessionEvent
from .hooks import SessionLifecycleHooks, fire_hook
from .locator import UNAVAILABLE, TmuxInfo
from .metadata import MetadataSync, SessionMetadata, SidecarFileStore, TmuxEnvironmentStore
from .record import Attachment, BackendKind, Session, SessionState
from .registry import ReconcileResult, RecoverableSessionInfo, SessionRegistry
from .supervisor import ProcessSupervisor

DIRECT_PANE_ID = "direct"

_STATE_EVENTS = {
    SessionState.STARTING: EventType.SESSION_STARTING,
    SessionState.RUNNING: EventType.SESSION_RUNNING,
    SessionState.DETACHED: EventType.SESSION_DETACHED,
    SessionState.TERMINATED: EventType.SESSION_TERMINATED,
}

SessionRef = Union[Session, str]


@dataclass
class RecoveredSession:
    """A tmux session found on the server, ready to be adopted.

    Foreign sessions carry our prefix but no card id; they get a fresh id and
    a placeholder title.
    """

    session: Session
    metadata: Optional[SessionMetadata]
    is_foreign: bool
    info: Optional[RecoverableSessionInfo] = None

    @property
    def title(self) -> str:
        return self.metadata.title if self.metadata else self.session.name


@dataclass
class _Handle:
    session: Session
    metadata: Optional[SessionMetadata] = None
    supervisor: Optional[ProcessSupervisor] = None
    control: Optional[ControlModeSession] = None
    init_task: Optional[asyncio.Task] = None
    closing: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionBackend:
    """Opens, closes and recovers terminal sessions on tmux or a plain PTY.

    Call `initialize()` once before creating sessions so tmux detection has
    run; until then every session is created with the direct backend.
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        registry: Optional[SessionRegistry] = None,
        metadata: Optional[MetadataSync] = None,
        bus: Optional[EventBus] = None,
        hooks: Optional[SessionLifecycleHooks] = None,
    ) -> None:
        self.config = config or BackendConfig()
        self.registry = registry or SessionRegistry(self.config)
        if metadata is None:
            if self.config.metadata_dir:
                store = SidecarFileStore(self.config.metadata_dir)
            else:
                store = TmuxEnvironmentStore(self.registry)
            metadata = MetadataSync(store, env_prefix=self.config.env_prefix)
        self.metadata = metadata
        self.bus = bus or EventBus()
        self.hooks = hooks
        self._handles: Dict[str, _Handle] = {}

    # ------------------------------------------------------------------
    # Setup and lookup

    async def initialize(self) -> TmuxInfo:
        if not self.config.tmux_enabled:
            logger.info("[backend] tmux disabled by config; direct backend only")
            return UNAVAILABLE
        return await self.registry.detect()

    @property
    def mux_available(self) -> bool:
        return self.config.tmux_enabled and self.registry.is_available

    def subscribe(self) -> "asyncio.Queue[SessionEvent]":
        return self.bus.subscribe()

    def get(self, session_id: str) -> Optional[Session]:
        handle = self._handles.get(session_id)
        return handle.session if handle else None

    def sessions(self) -> List[Session]:
        return [h.session for h in self._handles.values()]

    def control_session(self, session_id: str) -> Optional[ControlModeSession]:
        handle = self._handles.get(session_id)
        return handle.control if handle else None

    def _require(self, ref: SessionRef) -> _Handle:
        session_id = ref.id if isinstance(ref, Session) else ref
        handle = self._handles.get(session_id)
        if handle is None:
            raise KeyError(f"unknown session {session_id}")
        return handle

    # ------------------------------------------------------------------
    # Events and state

    def _emit(self, event_type: EventType, session: Session, **extra: Any) -> None:
        self.bus.publish_nowait(
            SessionEvent(type=event_type, session_id=session.id, data={**session.to_payload(), **extra})
        )

    def _transition(self, handle: _Handle, target: SessionState) -> None:
        session = handle.session
        if not session.can_move_to(target):
            raise InvalidTransitionError(session.id, session.state.value, target.value)
        session.state = target
        logger.debug(f"[backend] {session.id} -> {target.value}")
        self._emit(_STATE_EVENTS[target], session)

    def _settle(self, handle: _Handle, target: SessionState) -> None:
        if handle.session.state is not target:
            self._transition(handle, target)

    # ------------------------------------------------------------------
    # Creation

    def create_session(
        self,
        name: str,
        cwd: Optional[str] = None,
        shell: Optional[str] = None,
        backend: Optional[BackendKind] = None,
        init_command: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        metadata: Optional[SessionMetadata] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        session_id = session_id or self.registry.new_card_id()
        if session_id in self._handles:
            raise ValueError(f"session {session_id} already exists")
        if backend is None:
            backend = BackendKind.MULTIPLEXED if self.mux_available else BackendKind.DIRECT
        session = Session(
            id=session_id,
            name=name,
            backend=BackendKind(backend),
            cwd=os.path.expanduser(cwd) if cwd else str(Path.home()),
            shell=shell or self.config.default_shell,
            created_at=time.time(),
            init_command=init_command,
            env_overrides=dict(env or {}),
        )
        if session.is_multiplexed:
            session.mux_session_name = self.registry.session_name(session.id)
        self._handles[session.id] = _Handle(session, metadata)
        self._emit(EventType.SESSION_CREATED, session)
        return session

    # ------------------------------------------------------------------
    # Open

    async def open(self, ref: SessionRef) -> Session:
        handle = self._require(ref)
        session = handle.session
        async with handle.lock:
            if session.state is SessionState.RUNNING:
                return session
            self._transition(handle, SessionState.STARTING)
            try:
                if session.is_multiplexed:
                    if not self.mux_available:
                        self._fall_back(handle, "tmux unavailable")
                    else:
                        try:
                            await self._open_multiplexed(handle)
                        except MuxUnavailableError as exc:
                            self._fall_back(handle, str(exc))
                if not session.is_multiplexed:
                    await self._open_direct(handle)
            except BaseException:
                self._settle(handle, SessionState.DETACHED if session.is_multiplexed else SessionState.TERMINATED)
                raise
        return session

    def _fall_back(self, handle: _Handle, reason: str) -> None:
        session = handle.session
        session.backend = BackendKind.DIRECT
        session.mux_session_name = None
        logger.info(f"[backend] {session.id}: {reason}; falling back to a direct shell")
        self._emit(EventType.SESSION_FALLBACK, session, reason=reason)

    def _direct_argv(self, session: Session) -> List[str]:
        script = f"cd {shlex.quote(session.cwd)} && exec {shlex.quote(session.shell)} -l"
        return ["/bin/sh", "-c", script]

    def _direct_env(self, session: Session) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(session.env_overrides)
        env["TERM"] = "xterm-256color"
        env["COLORTERM"] = "truecolor"
        env.setdefault("LANG", "en_US.UTF-8")
        return env

    async def _open_direct(self, handle: _Handle) -> None:
        session = handle.session
        supervisor = ProcessSupervisor(
            f"direct:{session.id}",
            on_data=lambda chunk: self._on_direct_output(handle, chunk),
            on_exit=lambda code: self._on_direct_exit(handle, code),
        )
        cwd = session.cwd if os.path.isdir(session.cwd) else None
        await supervisor.start(self._direct_argv(session), cwd=cwd, env=self._direct_env(session), use_pty=True)
        handle.supervisor = supervisor
        session.pid = supervisor.pid
        session.exit_code = None
        session.attachment = Attachment.ATTACHED
        self._transition(handle, SessionState.RUNNING)
        fire_hook(self.hooks, "on_session_running", session)

        if session.init_command:
            handle.init_task = asyncio.create_task(self._run_init_command(handle, session.init_command))

    async def _run_init_command(self, handle: _Handle, command: str) -> None:
        await asyncio.sleep(self.config.init_command_delay)
        supervisor = handle.supervisor
        if supervisor is None or not supervisor.is_running:
            return
        try:
            await supervisor.write((command + "\n").encode("utf-8"))
        except (SessionNotRunningError, OSError) as exc:
            logger.warning(f"[backend] init command for {handle.session.id} not sent: {exc}")

    def _on_direct_output(self, handle: _Handle, chunk: bytes) -> None:
        session = handle.session
        session.last_activity_at = time.time()
        event = PaneOutput(DIRECT_PANE_ID, chunk)
        self.bus.publish_nowait(SessionEvent(type=event.type, session_id=session.id, control=event))

    def _on_direct_exit(self, handle: _Handle, code: Optional[int]) -> None:
        session = handle.session
        session.exit_code = code
        session.pid = None
        session.attachment = Attachment.DETACHED
        handle.supervisor = None
        if session.state is SessionState.RUNNING:
            self._transition(handle, SessionState.TERMINATED)
            fire_hook(self.hooks, "on_session_exited", session, code)

    async def _open_multiplexed(self, handle: _Handle, *, create: bool = True, sync_metadata: bool = True) -> None:
        session = handle.session
        name = session.mux_session_name or self.registry.session_name(session.id)
        session.mux_session_name = name

        if not await self.registry.exists(name):
            if not create:
                raise SessionNotFoundError(name)
            await self.registry.create(name, session.cwd, session.shell, session.env_overrides)
        if self.config.configure_sessions:
            await self.registry.configure(name)

        control = ControlModeSession(
            name,
            self.registry.tmux_path,
            bus=self.bus,
            connect_grace=self.config.connect_grace,
            session_id=session.id,
            poll_interval=self.config.poll_interval,
            command_timeout=self.config.command_timeout,
            on_event=lambda event: self._on_control_event(handle, event),
        )
        await control.connect()
        handle.control = control
        handle.closing = False
        session.pid = control.supervisor.pid if control.supervisor else None
        session.attachment = Attachment.ATTACHED
        self._transition(handle, SessionState.RUNNING)
        fire_hook(self.hooks, "on_session_running", session)

        if sync_metadata:
            if handle.metadata is None:
                handle.metadata = SessionMetadata(card_id=session.id, title=session.name)
            await self.metadata.sync(name, handle.metadata)

    def _on_control_event(self, handle: _Handle, event: ControlEvent) -> None:
        session = handle.session
        if isinstance(event, PaneOutput):
            session.last_activity_at = time.time()
        elif isinstance(event, Disconnected) and not handle.closing:
            # Detached or killed from outside; the tmux session may still exist.
            session.attachment = Attachment.DETACHED
            if session.state is SessionState.RUNNING:
                self._transition(handle, SessionState.DETACHED)
                fire_hook(self.hooks, "on_session_detached", session)

    # ------------------------------------------------------------------
    # Input

    async def write(self, session_id: str, data: Union[bytes, str]) -> None:
        handle = self._require(session_id)
        if isinstance(data, str):
            data = data.encode("utf-8")
        if handle.supervisor is not None:
            await handle.supervisor.write(data)
            return
        if handle.control is not None and handle.control.is_running:
            await self._send_keys(handle.control, data.decode("utf-8", errors="replace"))
            return
        raise SessionNotRunningError(f"session {session_id} is not running")

    async def _send_keys(self, control: ControlModeSession, text: str) -> None:
        # Command lines are newline-terminated, so line breaks go as Enter.
        lines = text.split("\n")
        for index, line in enumerate(lines):
            if line:
                await control.send_command(f"send-keys -l {shlex.quote(line)}")
            if index < len(lines) - 1:
                await control.send_command("send-keys Enter")

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        handle = self._require(session_id)
        if handle.supervisor is not None:
            handle.supervisor.resize(cols, rows)
        elif handle.control is not None and handle.control.is_running:
            await handle.control.send_command(f"refresh-client -C {max(1, cols)}x{max(1, rows)}")
        else:
            raise SessionNotRunningError(f"session {session_id} is not running")

    async def send_command(self, session_id: str, command: str, timeout: Optional[float] = None) -> Optional[str]:
        control = self.control_session(session_id)
        if control is None or not control.is_running:
            raise SessionNotRunningError(f"session {session_id} has no tmux connection")
        return await control.send_command_and_wait(command, timeout)

    # ------------------------------------------------------------------
    # Close

    async def close(self, ref: SessionRef, kill: bool = False) -> None:
        handle = self._require(ref)
        session = handle.session
        async with handle.lock:
            if session.state is SessionState.TERMINATED:
                self._handles.pop(session.id, None)
                return
            if session.state is SessionState.CREATED:
                self._transition(handle, SessionState.TERMINATED)
                self._handles.pop(session.id, None)
                return
            handle.closing = True
            try:
                if session.is_multiplexed:
                    await self._close_multiplexed(handle, kill)
                else:
                    await self._close_direct(handle)
            finally:
                handle.closing = False

    async def _close_direct(self, handle: _Handle) -> None:
        session = handle.session
        if handle.init_task is not None and not handle.init_task.done():
            handle.init_task.cancel()
        handle.init_task = None

        supervisor = handle.supervisor
        if supervisor is not None:
            if supervisor.is_running:
                try:
                    await supervisor.write(b"exit\n")
                except (SessionNotRunningError, OSError) as exc:
                    logger.debug(f"[backend] exit not delivered to {session.id}: {exc}")
                loop = asyncio.get_running_loop()
                deadline = loop.time() + self.config.exit_grace
                while supervisor.is_running and loop.time() < deadline:
                    await asyncio.sleep(self.config.poll_interval)
            await supervisor.terminate()
            if session.exit_code is None:
                session.exit_code = supervisor.exit_code
        handle.supervisor = None
        session.pid = None
        session.attachment = Attachment.DETACHED
        if session.state is not SessionState.TERMINATED:
            self._transition(handle, SessionState.TERMINATED)
            fire_hook(self.hooks, "on_session_exited", session, session.exit_code)
        self._handles.pop(session.id, None)
        logger.info(f"[backend] closed direct session {session.id}")

    async def _close_multiplexed(self, handle: _Handle, kill: bool) -> None:
        session = handle.session
        control, handle.control = handle.control, None
        session.pid = None
        session.attachment = Attachment.DETACHED

        if not kill:
            if control is not None:
                await control.detach()
            if session.state is not SessionState.DETACHED:
                self._transition(handle, SessionState.DETACHED)
                fire_hook(self.hooks, "on_session_detached", session)
            logger.info(f"[backend] detached from {session.mux_session_name}")
            return

        if control is not None:
            await control.disconnect()
        if session.mux_session_name:
            try:
                await self.registry.kill(session.mux_session_name)
            except MuxError:
                self._settle(handle, SessionState.DETACHED)
                raise
        self._transition(handle, SessionState.TERMINATED)
        fire_hook(self.hooks, "on_session_exited", session, None)
        self._handles.pop(session.id, None)

    async def restart(self, ref: SessionRef) -> Session:
        handle = self._require(ref)
        session = handle.session
        if session.is_multiplexed:
            await self.close(session, kill=False)
        else:
            await self.close(session, kill=True)
            # A direct restart is a fresh run under the same id.
            session.state = SessionState.CREATED
            session.exit_code = None
            self._handles[session.id] = _Handle(session, handle.metadata)
            self._emit(EventType.SESSION_CREATED, session, restarted=True)
        return await self.open(session)

    # ------------------------------------------------------------------
    # Recovery

    async def list_recoverable(self, exclude_open: bool = True) -> List[RecoverableSessionInfo]:
        if not self.mux_available:
            return []
        await self.registry.list()
        recoverable = self.registry.recoverable
        if not exclude_open:
            return recoverable
        open_names = self._open_mux_names()
        return [info for info in recoverable if info.name not in open_names]

    def _open_mux_names(self) -> Set[str]:
        return {
            h.session.mux_session_name
            for h in self._handles.values()
            if h.session.mux_session_name and h.control is not None and h.control.is_running
        }

    async def recover(self, name: str) -> Optional[RecoveredSession]:
        """Rebuild a session from a tmux session left running by an earlier run."""
        if not self.registry.is_managed(name):
            return None
        if not self.mux_available:
            raise MuxUnavailableError()
        if not await self.registry.exists(name):
            raise SessionNotFoundError(name)

        info = next((s for s in await self.registry.list() if s.name == name), None)
        metadata = await self.metadata.fetch(name)
        cwd = (info.current_path if info else None) or str(Path.home())
        created_at = info.created_at.timestamp() if info else time.time()

        if metadata is not None:
            session_id, title, foreign = metadata.card_id, metadata.title, False
        else:
            session_id, title, foreign = self.registry.new_card_id(), f"Recovered: {self.registry.short_id(name)}", True

        session = Session(
            id=session_id,
            name=title,
            backend=BackendKind.MULTIPLEXED,
            cwd=cwd,
            shell=self.config.default_shell,
            created_at=created_at,
            state=SessionState.DETACHED,
            attachment=Attachment.ORPHANED,
            mux_session_name=name,
            current_directory=info.current_path if info else None,
        )
        self.registry.mark_recovered(name)
        logger.info(f"[backend] recovered {name} as {'foreign session' if foreign else 'card ' + session_id}")
        return RecoveredSession(session=session, metadata=metadata, is_foreign=foreign, info=info)

    async def adopt(self, recovered: RecoveredSession, metadata: Optional[SessionMetadata] = None) -> Session:
        session = recovered.session
        existing = self._handles.get(session.id)
        if existing is not None and existing.session.state is SessionState.RUNNING:
            return existing.session

        fresh = metadata is not None or recovered.is_foreign
        if metadata is None:
            metadata = recovered.metadata or SessionMetadata(card_id=session.id, title=session.name)
        if metadata.card_id != session.id:
            metadata = replace(metadata, card_id=session.id)

        handle = _Handle(session, metadata)
        self._handles[session.id] = handle
        async with handle.lock:
            self._transition(handle, SessionState.STARTING)
            try:
                await self._open_multiplexed(handle, create=False, sync_metadata=fresh)
            except BaseException:
                self._settle(handle, SessionState.DETACHED)
                raise
        self._emit(EventType.SESSION_RECOVERED, session, is_foreign=recovered.is_foreign)
        fire_hook(self.hooks, "on_session_adopted", session)
        return session

    async def reconcile(self, auto_adopt: bool = False) -> ReconcileResult:
        """Compare tmux's detached sessions with what this backend knows."""
        if not self.mux_available:
            return ReconcileResult([], [])
        known: Set[str] = set()
        for handle in self._handles.values():
            if handle.session.mux_session_name:
                known.add(handle.session.mux_session_name)
        result = await self.registry.reconcile(self._open_mux_names(), known)
        if auto_adopt:
            for info in result.matched:
                try:
                    recovered = await self.recover(info.name)
                    if recovered is not None:
                        await self.adopt(recovered)
                except (MuxError, InvalidTransitionError) as exc:
                    logger.warning(f"[backend] could not reattach {info.name}: {exc}")
        return result

    # ------------------------------------------------------------------
    # Metadata and activity

    async def update_metadata(self, session_id: str, **fields: Any) -> int:
        handle = self._require(session_id)
        supplied = {k: v for k, v in fields.items() if v is not None}
        base = handle.metadata or SessionMetadata(card_id=handle.session.id, title=handle.session.name)
        handle.metadata = replace(base, **supplied)
        name = handle.session.mux_session_name
        if not handle.session.is_multiplexed or not name:
            return 0
        return await self.metadata.update(name, **supplied)

    def is_processing(self, session_id: str, threshold: Optional[float] = None) -> bool:
        session = self.get(session_id)
        if session is None or session.last_activity_at is None:
            return False
        limit = self.config.processing_threshold if threshold is None else threshold
        return time.time() - session.last_activity_at < limit

    def processing_ids(self, threshold: Optional[float] = None) -> Set[str]:
        return {sid for sid in list(self._handles) if self.is_processing(sid, threshold)}

    async def stats(self, session_id: str) -> Dict[str, Any]:
        handle = self._require(session_id)
        if handle.supervisor is not None:
            return await handle.supervisor.stats()
        if handle.control is not None and handle.control.supervisor is not None:
            return await handle.control.supervisor.stats()
        return {"pid": None, "alive": False, "uptime": None, "exit_code": handle.session.exit_code}

    # ------------------------------------------------------------------
    # Shutdown

    async def shutdown(self) -> None:
        """Detach tmux sessions and exit direct shells."""
        for handle in list(self._handles.values()):
            session = handle.session
            if session.state not in (SessionState.RUNNING, SessionState.STARTING):
                continue
            try:
                await self.close(session, kill=False)
            except (MuxError, OSError) as exc:
                logger.warning(f"[backend] shutdown of {session.id} failed: {exc}")
