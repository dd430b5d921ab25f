"""Shared fixtures for mux_shells tests.

tmux is never required: one-shot commands go through `FakeTmux`, which keeps
sessions and their environments in memory.
"""

from typing import Dict, List, Optional

import pytest

from mux_shells.config import BackendConfig
from mux_shells.errors import CommandFailedError, MuxError
from mux_shells.locator import TmuxInfo
from mux_shells.registry import SessionRegistry

FAKE_TMUX_PATH = "/usr/bin/tmux"


class FakeTmux:
    """Answers the tmux commands the registry issues."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Dict] = {}
        self.calls: List[List[str]] = []
        self.fail_options: set = set()

    def add_session(self, name: str, *, attached: bool = False, path: str = "/tmp", created: int = 1700000000, env: Optional[Dict[str, str]] = None) -> None:
        self.sessions[name] = {
            "created": created,
            "attached": 1 if attached else 0,
            "path": path,
            "env": dict(env or {}),
        }

    async def __call__(self, args) -> str:
        args = [str(a) for a in args]
        self.calls.append(args)
        cmd = args[0]
        target = self._resolve(args[2]) if len(args) > 2 and args[1] == "-t" else None

        if cmd == "list-sessions":
            if not self.sessions:
                raise CommandFailedError(args, 1, "no server running on /tmp/tmux-1000/default")
            return "".join(
                f"{name}|{s['created']}|{s['attached']}|{s['path']}\n" for name, s in self.sessions.items()
            )
        if cmd == "has-session":
            self._require(args, target)
            return ""
        if cmd == "new-session":
            name = args[args.index("-s") + 1]
            cwd = args[args.index("-c") + 1]
            if name in self.sessions:
                raise CommandFailedError(args, 1, f"duplicate session: {name}")
            self.add_session(name, path=cwd)
            return ""
        if cmd == "set-option":
            if args[3] in self.fail_options:
                raise CommandFailedError(args, 1, f"invalid option: {args[3]}")
            return ""
        if cmd == "kill-session":
            self._require(args, target)
            del self.sessions[target]
            return ""
        if cmd == "set-environment":
            key, value = args[3], args[4]
            self._require(args, target)["env"][key] = value
            return ""
        if cmd == "show-environment":
            key = args[3]
            env = self._require(args, target)["env"]
            if key not in env:
                raise CommandFailedError(args, 1, f"unknown variable: {key}")
            return f"{key}={env[key]}\n"
        raise AssertionError(f"unexpected tmux command: {args}")

    def _resolve(self, target: str) -> str:
        # Like tmux: `=name` matches exactly, a bare name also matches a prefix.
        if target.startswith("="):
            return target[1:]
        for name in self.sessions:
            if name.startswith(target):
                return name
        return target

    def _require(self, args: List[str], name: str) -> Dict:
        session = self.sessions.get(name)
        if session is None:
            raise CommandFailedError(args, 1, f"can't find session: {name}")
        return session

    def commands(self, verb: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == verb]


class MemoryStore:
    """In-memory MetadataStore; keys listed in `failing` raise on write."""

    def __init__(self) -> None:
        self.data: Dict[str, Dict[str, str]] = {}
        self.failing: set = set()

    async def set(self, session: str, key: str, value: str) -> None:
        if key in self.failing:
            raise MuxError(f"cannot write {key}")
        self.data.setdefault(session, {})[key] = value

    async def get(self, session: str, key: str) -> Optional[str]:
        return self.data.get(session, {}).get(key)


@pytest.fixture
def config(tmp_path):
    return BackendConfig(
        default_shell="/bin/sh",
        connect_grace=0.2,
        init_command_delay=0.05,
        exit_grace=0.5,
    )


@pytest.fixture
def fake_tmux():
    return FakeTmux()


@pytest.fixture
def registry(config, fake_tmux):
    reg = SessionRegistry(config)
    reg.info = TmuxInfo(True, FAKE_TMUX_PATH, "3.4")
    reg._detected = True
    reg.run_tmux = fake_tmux
    return reg


@pytest.fixture
def memory_store():
    return MemoryStore()
