from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

ENV_PREFIX = "MUX_SHELLS_"
CONFIG_ENV = "MUX_SHELLS_CONFIG"


def _default_shell() -> str:
    shell = os.environ.get("SHELL")
    if shell:
        return shell
    for candidate in ("/bin/zsh", "/bin/bash", "/bin/sh"):
        if os.path.exists(candidate):
            return candidate
    return "/bin/sh"


def _truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    val = str(raw).strip().lower()
    return val in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class BackendConfig:
    """Settings for the session backend subsystem."""

    session_prefix: str = "mux-"
    env_prefix: str = "MUX"
    tmux_enabled: bool = True
    tmux_path: Optional[str] = None
    default_shell: str = ""
    command_timeout: float = 5.0
    poll_interval: float = 0.01
    connect_grace: float = 0.5
    init_command_delay: float = 0.5
    exit_grace: float = 1.0
    processing_threshold: float = 2.0
    metadata_dir: Optional[str] = None
    configure_sessions: bool = True

    def __post_init__(self) -> None:
        if not self.default_shell:
            object.__setattr__(self, "default_shell", _default_shell())
        if not self.session_prefix:
            raise ValueError("session_prefix must not be empty")
        if not self.env_prefix:
            raise ValueError("env_prefix must not be empty")
        for name in ("command_timeout", "poll_interval", "connect_grace", "init_command_delay", "exit_grace", "processing_threshold"):
            if float(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(name: str, raw: Any) -> Any:
    template = BackendConfig.__dataclass_fields__[name]
    kind = template.type if isinstance(template.type, str) else getattr(template.type, "__name__", "")
    if raw is None:
        return None
    if kind == "bool":
        return _truthy(raw)
    if kind == "float":
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be a number, got {raw!r}")
    return str(raw)


def _from_mapping(raw: Mapping[str, Any]) -> Dict[str, Any]:
    known = BackendConfig.__dataclass_fields__
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        key = str(key).strip().replace("-", "_")
        if key not in known:
            raise ValueError(f"unknown config key {key!r}")
        out[key] = _coerce(key, value)
    return out


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in BackendConfig.__dataclass_fields__:
        value = env.get(ENV_PREFIX + name.upper())
        if value is None or value == "":
            continue
        out[name] = _coerce(name, value)
    return out


def load_config(path: Optional[Union[str, Path]] = None, env: Optional[Mapping[str, str]] = None) -> BackendConfig:
    """Build a config from an optional YAML file plus MUX_SHELLS_* overrides.

    The file may hold the settings at top level or under a `mux_shells` key.
    Environment variables win over the file.
    """
    env_map = os.environ if env is None else env
    if path is None and env_map.get(CONFIG_ENV):
        path = os.path.expanduser(env_map[CONFIG_ENV])

    values: Dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"config file {p} must contain a mapping")
            if isinstance(raw.get("mux_shells"), dict):
                raw = raw["mux_shells"]
            values.update(_from_mapping(raw))

    values.update(_from_env(env_map))
    return replace(BackendConfig(), **values) if values else BackendConfig()
