"""Card metadata stored alongside tmux sessions.

The host keeps a card (title, tags, board column, ...) per terminal. Writing
that card into the tmux session lets a later run rebuild it when the session
is recovered. Values travel one key at a time as ``<PREFIX>_<KEY>`` strings;
where they land is up to the `MetadataStore`:

- `TmuxEnvironmentStore` uses the session environment (``set-environment``)
- `SidecarFileStore` keeps one JSON file per session on disk
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, Union

import aiofiles
from loguru import logger

from .errors import MuxError
from .registry import SessionRegistry

DEFAULT_TITLE = "Recovered Terminal"


class MetadataKey(str, Enum):
    TITLE = "TITLE"
    DESC = "DESC"
    TAGS = "TAGS"
    LLM_PROMPT = "LLM_PROMPT"
    LLM_NEXT_ACTION = "LLM_NEXT_ACTION"
    BADGE = "BADGE"
    COLUMN_ID = "COLUMN_ID"
    IS_FAVOURITE = "IS_FAVOURITE"
    CARD_ID = "CARD_ID"


@dataclass(frozen=True)
class Tag:
    key: str
    value: str


@dataclass
class SessionMetadata:
    card_id: str
    title: str = DEFAULT_TITLE
    description: str = ""
    tags: List[Tag] = field(default_factory=list)
    llm_prompt: str = ""
    llm_next_action: str = ""
    badge: str = ""
    column_id: Optional[str] = None
    is_favourite: bool = False


def encode_tags(tags: Iterable[Tag]) -> str:
    # No escaping: keys and values must not contain ':' or ','.
    return ",".join(f"{tag.key}:{tag.value}" for tag in tags)


def decode_tags(text: Optional[str]) -> List[Tag]:
    tags: List[Tag] = []
    if not text:
        return tags
    for pair in text.split(","):
        if ":" not in pair:
            continue
        key, value = pair.split(":", 1)
        tags.append(Tag(key, value))
    return tags


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _text(value: Optional[str]) -> str:
    # Only a missing key falls back; an empty value is kept as written.
    return "" if value is None else value


class MetadataStore(Protocol):
    async def set(self, session: str, key: str, value: str) -> None: ...

    async def get(self, session: str, key: str) -> Optional[str]: ...


class TmuxEnvironmentStore:
    """Keeps values in the tmux session environment."""

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    async def set(self, session: str, key: str, value: str) -> None:
        await self.registry.set_environment(session, key, value)

    async def get(self, session: str, key: str) -> Optional[str]:
        return await self.registry.show_environment(session, key)


class SidecarFileStore:
    """One ``<session>.json`` file per session under `directory`."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory).expanduser()
        self._locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, session: str) -> Path:
        return self.directory / f"{session}.json"

    async def _load(self, session: str) -> Dict[str, str]:
        path = self.path_for(session)
        if not path.exists():
            return {}
        async with aiofiles.open(path, "r", encoding="utf-8") as fh:
            content = await fh.read()
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"[metadata] ignoring unreadable sidecar {path}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    async def set(self, session: str, key: str, value: str) -> None:
        lock = self._locks.setdefault(session, asyncio.Lock())
        async with lock:
            data = await self._load(session)
            data[key] = value
            await asyncio.to_thread(self.directory.mkdir, parents=True, exist_ok=True)
            path = self.path_for(session)
            tmp_path = path.with_suffix(".json.tmp")
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
                await fh.write(json.dumps(data, indent=2, sort_keys=True))
            await asyncio.to_thread(tmp_path.replace, path)

    async def get(self, session: str, key: str) -> Optional[str]:
        data = await self._load(session)
        return data.get(key)

    async def remove(self, session: str) -> None:
        path = self.path_for(session)
        await asyncio.to_thread(path.unlink, missing_ok=True)


class MetadataSync:
    """Reads and writes `SessionMetadata` through a store, one key at a time.

    Writes are best-effort: a failing key is logged and the rest still go out.
    Calls for the same session are serialized.
    """

    def __init__(self, store: MetadataStore, env_prefix: str = "MUX") -> None:
        self.store = store
        self.env_prefix = env_prefix
        self._locks: Dict[str, asyncio.Lock] = {}

    def env_key(self, key: MetadataKey) -> str:
        return f"{self.env_prefix}_{key.value}"

    def _lock_for(self, session: str) -> asyncio.Lock:
        lock = self._locks.get(session)
        if lock is None:
            lock = self._locks[session] = asyncio.Lock()
        return lock

    async def _write(self, session: str, pairs: List[Tuple[MetadataKey, str]]) -> int:
        written = 0
        for key, value in pairs:
            try:
                await self.store.set(session, self.env_key(key), value)
            except (MuxError, OSError) as exc:
                logger.warning(f"[metadata] failed to write {key.value} on {session}: {exc}")
                continue
            written += 1
        return written

    async def _read(self, session: str, key: MetadataKey) -> Optional[str]:
        try:
            return await self.store.get(session, self.env_key(key))
        except (MuxError, OSError) as exc:
            logger.debug(f"[metadata] failed to read {key.value} on {session}: {exc}")
            return None

    async def sync(self, session: str, metadata: SessionMetadata) -> int:
        """Write the full card; returns how many keys were stored."""
        pairs: List[Tuple[MetadataKey, str]] = [
            (MetadataKey.CARD_ID, metadata.card_id),
            (MetadataKey.TITLE, metadata.title),
            (MetadataKey.DESC, metadata.description),
            (MetadataKey.TAGS, encode_tags(metadata.tags)),
            (MetadataKey.LLM_PROMPT, metadata.llm_prompt),
            (MetadataKey.LLM_NEXT_ACTION, metadata.llm_next_action),
            (MetadataKey.BADGE, metadata.badge),
            (MetadataKey.IS_FAVOURITE, _flag(metadata.is_favourite)),
        ]
        if metadata.column_id is not None:
            pairs.append((MetadataKey.COLUMN_ID, metadata.column_id))

        async with self._lock_for(session):
            written = await self._write(session, pairs)
        if written < len(pairs):
            logger.warning(f"[metadata] synced {written}/{len(pairs)} keys to {session}")
        else:
            logger.debug(f"[metadata] synced card {metadata.card_id} to {session}")
        return written

    async def fetch(self, session: str) -> Optional[SessionMetadata]:
        """Rebuild the card, or None when the session carries no card id."""
        async with self._lock_for(session):
            card_id = await self._read(session, MetadataKey.CARD_ID)
            if not card_id:
                return None
            values = {key: await self._read(session, key) for key in MetadataKey if key is not MetadataKey.CARD_ID}

        return SessionMetadata(
            card_id=card_id,
            title=DEFAULT_TITLE if values[MetadataKey.TITLE] is None else values[MetadataKey.TITLE],
            description=_text(values[MetadataKey.DESC]),
            tags=decode_tags(values[MetadataKey.TAGS]),
            llm_prompt=_text(values[MetadataKey.LLM_PROMPT]),
            llm_next_action=_text(values[MetadataKey.LLM_NEXT_ACTION]),
            badge=_text(values[MetadataKey.BADGE]),
            column_id=values[MetadataKey.COLUMN_ID],
            is_favourite=(values[MetadataKey.IS_FAVOURITE] or "").strip().lower() in ("1", "true"),
        )

    async def update(
        self,
        session: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[Tag]] = None,
        llm_prompt: Optional[str] = None,
        llm_next_action: Optional[str] = None,
        badge: Optional[str] = None,
        column_id: Optional[str] = None,
        is_favourite: Optional[bool] = None,
    ) -> int:
        """Write only the fields that were passed."""
        pairs: List[Tuple[MetadataKey, str]] = []
        if title is not None:
            pairs.append((MetadataKey.TITLE, title))
        if description is not None:
            pairs.append((MetadataKey.DESC, description))
        if tags is not None:
            pairs.append((MetadataKey.TAGS, encode_tags(tags)))
        if llm_prompt is not None:
            pairs.append((MetadataKey.LLM_PROMPT, llm_prompt))
        if llm_next_action is not None:
            pairs.append((MetadataKey.LLM_NEXT_ACTION, llm_next_action))
        if badge is not None:
            pairs.append((MetadataKey.BADGE, badge))
        if column_id is not None:
            pairs.append((MetadataKey.COLUMN_ID, column_id))
        if is_favourite is not None:
            pairs.append((MetadataKey.IS_FAVOURITE, _flag(is_favourite)))
        if not pairs:
            return 0
        async with self._lock_for(session):
            return await self._write(session, pairs)
