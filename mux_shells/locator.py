from __future__ import annotations

import asyncio
import os
import shutil
from typing import Callable, List, NamedTuple, Optional, Sequence

from loguru import logger

DEFAULT_CANDIDATES: Sequence[str] = (
    "/opt/homebrew/bin/tmux",  # Apple Silicon Homebrew
    "/usr/local/bin/tmux",  # Intel Homebrew
    "/usr/bin/tmux",
    "/opt/local/bin/tmux",  # MacPorts
)


class TmuxInfo(NamedTuple):
    available: bool
    path: Optional[str] = None
    version: Optional[str] = None


UNAVAILABLE = TmuxInfo(False)


def _is_executable(path: Optional[str]) -> bool:
    return bool(path) and os.path.isfile(path) and os.access(path, os.X_OK)


def parse_version(output: str) -> Optional[str]:
    """`tmux 3.3a` -> `3.3a`."""
    parts = output.strip().split()
    if len(parts) >= 2:
        return parts[1]
    return None


class TmuxLocator:
    """Finds the tmux binary: explicit path, well-known locations, then PATH."""

    def __init__(
        self,
        candidates: Sequence[str] = DEFAULT_CANDIDATES,
        *,
        explicit_path: Optional[str] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.candidates = list(candidates)
        self.explicit_path = explicit_path
        self._which = which

    def find(self) -> Optional[str]:
        ordered: List[str] = []
        if self.explicit_path:
            ordered.append(os.path.expanduser(self.explicit_path))
        ordered.extend(self.candidates)
        for path in ordered:
            if _is_executable(path):
                return path
        found = self._which("tmux")
        if found and _is_executable(found):
            return found
        return None

    async def probe_version(self, path: str) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                path,
                "-V",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            out, _ = await proc.communicate()
        except OSError as exc:
            logger.debug(f"[locator] {path} -V failed: {exc}")
            return None
        if proc.returncode != 0:
            return None
        return parse_version(out.decode("utf-8", errors="replace")) or ""

    async def detect(self) -> TmuxInfo:
        path = await asyncio.to_thread(self.find)
        if not path:
            logger.info("[locator] tmux not found; direct backend only")
            return UNAVAILABLE
        version = await self.probe_version(path)
        if version is None:
            logger.warning(f"[locator] {path} did not answer -V; treating tmux as unavailable")
            return UNAVAILABLE
        logger.info(f"[locator] using tmux {version or '?'} at {path}")
        return TmuxInfo(True, path, version or None)
