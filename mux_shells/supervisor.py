from __future__ import annotations

import asyncio
import fcntl
import inspect
import os
import pty
import select
import signal
import struct
import termios
import time
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import psutil
from loguru import logger

from .errors import SessionNotRunningError

_READ_SIZE = 4096


def _make_raw(fd: int) -> None:
    attrs = termios.tcgetattr(fd)
    attrs[0] = attrs[0] & ~(termios.ICRNL | termios.IXON)
    attrs[1] = attrs[1] & ~termios.OPOST
    attrs[3] = attrs[3] & ~(termios.ICANON | termios.ECHO | termios.ISIG)
    attrs[6][termios.VMIN] = 1
    attrs[6][termios.VTIME] = 0
    termios.tcsetattr(fd, termios.TCSANOW, attrs)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class ProcessSupervisor:
    """Owns one child process and the task that reads its output.

    Output goes to `on_data` chunk by chunk in the order the OS delivered it.
    `on_exit(code)` runs when the child closes its output and exits on its
    own; an explicit `terminate()` does not call it.
    """

    def __init__(
        self,
        label: str,
        on_data: Callable[[bytes], Any],
        on_exit: Optional[Callable[[Optional[int]], Any]] = None,
    ) -> None:
        self.label = label
        self.on_data = on_data
        self.on_exit = on_exit
        self.uses_pty = False
        self.exit_code: Optional[int] = None
        self.started_at: Optional[float] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None
        self._reader: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._terminated = False

    # ------------------------------------------------------------------
    # State

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def is_running(self) -> bool:
        return (
            self._proc is not None
            and self._proc.returncode is None
            and not self._stop.is_set()
        )

    # ------------------------------------------------------------------
    # Launch

    async def start(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        use_pty: bool = False,
    ) -> None:
        argv = [str(part) for part in argv]
        if not argv:
            raise ValueError("argv must not be empty")
        if self._proc is not None:
            raise RuntimeError(f"{self.label} was already started")

        envp = dict(os.environ if env is None else env)
        if use_pty:
            await self._launch_pty(argv, cwd, envp)
        else:
            await self._launch_pipe(argv, cwd, envp)

        self.started_at = time.time()
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"[supervisor] {self.label} started pid={self.pid} pty={self.uses_pty}")

    async def _launch_pty(self, argv: Sequence[str], cwd: Optional[str], env: Dict[str, str]) -> None:
        self.uses_pty = True
        master_fd, slave_fd = await asyncio.to_thread(pty.openpty)
        env.setdefault("TERM", "xterm-256color")
        try:
            _make_raw(slave_fd)
        except termios.error as exc:
            logger.debug(f"[supervisor] {self.label} could not set raw mode: {exc}")

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            await asyncio.to_thread(os.close, slave_fd)
        self._master_fd = master_fd

    async def _launch_pipe(self, argv: Sequence[str], cwd: Optional[str], env: Dict[str, str]) -> None:
        self.uses_pty = False
        self._proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    # ------------------------------------------------------------------
    # Reading

    async def _read_chunk(self) -> bytes:
        if self.uses_pty:
            fd = self._master_fd
            while not self._stop.is_set():
                rlist, _, _ = await asyncio.to_thread(select.select, [fd], [], [], 0.5)
                if rlist:
                    return await asyncio.to_thread(os.read, fd, _READ_SIZE)
            return b""
        assert self._proc is not None and self._proc.stdout is not None
        return await self._proc.stdout.read(_READ_SIZE)

    async def _read_loop(self) -> None:
        try:
            while not self._stop.is_set():
                chunk = await self._read_chunk()
                if not chunk:
                    break
                try:
                    await _maybe_await(self.on_data(chunk))
                except Exception:
                    logger.exception(f"[supervisor] {self.label} output handler failed")
        except OSError as exc:
            # EIO once the child side of the PTY is gone.
            logger.debug(f"[supervisor] {self.label} read ended: {exc}")

        if self._stop.is_set():
            return
        await self._finish()

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            logger.debug(f"[supervisor] {self.label} stderr: {line.decode('utf-8', errors='replace').rstrip()}")

    async def _finish(self) -> None:
        assert self._proc is not None
        code = await self._proc.wait()
        self.exit_code = code
        self._stop.set()
        self._close_fds()
        logger.info(f"[supervisor] {self.label} exited code={code}")
        if self.on_exit is None:
            return
        try:
            await _maybe_await(self.on_exit(code))
        except Exception:
            logger.exception(f"[supervisor] {self.label} exit handler failed")

    # ------------------------------------------------------------------
    # Control

    async def write(self, data: bytes) -> None:
        if not self.is_running:
            raise SessionNotRunningError(f"{self.label} is not running")
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self.uses_pty:
            view = memoryview(data)
            while view:
                written = await asyncio.to_thread(os.write, self._master_fd, view)
                view = view[written:]
            return
        assert self._proc is not None and self._proc.stdin is not None
        self._proc.stdin.write(data)
        await self._proc.stdin.drain()

    def resize(self, cols: int, rows: int) -> None:
        if not self.uses_pty or self._master_fd is None:
            logger.debug(f"[supervisor] {self.label} has no PTY to resize")
            return
        winsz = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
        fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, winsz)

    async def terminate(self, timeout: float = 2.0) -> None:
        """Stop the reader, then SIGTERM the child, then SIGKILL after `timeout`."""
        if self._proc is None or self._terminated:
            return
        self._terminated = True
        self._stop.set()

        for task in (self._reader, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        proc = self._proc
        if not self.uses_pty and proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

        if proc.returncode is None:
            try:
                proc.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[supervisor] {self.label} ignored SIGTERM; killing")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        self.exit_code = proc.returncode
        self._close_fds()
        logger.info(f"[supervisor] {self.label} terminated code={self.exit_code}")

    def _close_fds(self) -> None:
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    # ------------------------------------------------------------------
    # Stats

    async def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "pid": self.pid,
            "alive": self.is_running,
            "uptime": None,
            "exit_code": self.exit_code,
        }
        if not self.is_running or self.pid is None:
            return stats
        if self.started_at is not None:
            stats["uptime"] = max(0.0, time.time() - self.started_at)
        try:
            proc = await asyncio.to_thread(psutil.Process, self.pid)
            with proc.oneshot():
                stats["cpu_percent"] = proc.cpu_percent(interval=0.0)
                stats["memory_rss"] = proc.memory_info().rss
                stats["num_threads"] = proc.num_threads()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        return stats
