"""Tests for card metadata encoding and the metadata stores."""

import asyncio
import json

import pytest

from mux_shells.metadata import (
    DEFAULT_TITLE,
    MetadataKey,
    MetadataSync,
    SessionMetadata,
    SidecarFileStore,
    Tag,
    TmuxEnvironmentStore,
    decode_tags,
    encode_tags,
)

SESSION = "mux-0123abcd"
CARD_ID = "0123abcd-1111-2222-3333-444444444444"


def full_card():
    return SessionMetadata(
        card_id=CARD_ID,
        title="Deploy",
        description="prod rollout",
        tags=[Tag("env", "prod"), Tag("owner", "ops")],
        llm_prompt="watch the logs",
        llm_next_action="tail -f",
        badge="🚀",
        column_id="col-2",
        is_favourite=True,
    )


class TestTags:
    def test_encode(self):
        assert encode_tags([Tag("a", "1"), Tag("b", "2")]) == "a:1,b:2"
        assert encode_tags([]) == ""

    def test_decode(self):
        assert decode_tags("a:1,b:2") == [Tag("a", "1"), Tag("b", "2")]

    def test_decode_splits_on_first_colon_and_drops_bare_keys(self):
        assert decode_tags("url:http://x,bare,k:") == [Tag("url", "http://x"), Tag("k", "")]

    def test_decode_empty(self):
        assert decode_tags("") == []
        assert decode_tags(None) == []


class TestMetadataSync:
    @pytest.mark.asyncio
    async def test_fetch_without_card_id_is_none(self, memory_store):
        sync = MetadataSync(memory_store)
        memory_store.data[SESSION] = {"MUX_TITLE": "orphan title"}

        assert await sync.fetch(SESSION) is None
        assert await sync.fetch("mux-ffffffff") is None

    @pytest.mark.asyncio
    async def test_fetch_with_only_card_id_uses_defaults(self, memory_store):
        sync = MetadataSync(memory_store)
        memory_store.data[SESSION] = {"MUX_CARD_ID": CARD_ID}

        metadata = await sync.fetch(SESSION)

        assert metadata == SessionMetadata(card_id=CARD_ID)
        assert metadata.title == DEFAULT_TITLE
        assert metadata.tags == []
        assert metadata.column_id is None
        assert metadata.is_favourite is False

    @pytest.mark.asyncio
    async def test_sync_then_fetch_round_trip(self, memory_store):
        sync = MetadataSync(memory_store)
        card = full_card()

        written = await sync.sync(SESSION, card)

        assert written == len(MetadataKey)
        assert await sync.fetch(SESSION) == card

    @pytest.mark.asyncio
    async def test_sync_writes_card_id_first_and_flags_as_digits(self, memory_store):
        sync = MetadataSync(memory_store, env_prefix="TERMQ")
        card = full_card()
        card.column_id = None
        card.is_favourite = False

        written = await sync.sync(SESSION, card)

        stored = memory_store.data[SESSION]
        assert list(stored)[0] == "TERMQ_CARD_ID"
        assert stored["TERMQ_IS_FAVOURITE"] == "0"
        assert "TERMQ_COLUMN_ID" not in stored
        assert written == len(MetadataKey) - 1

    @pytest.mark.asyncio
    async def test_sync_failures_are_not_raised(self, memory_store):
        sync = MetadataSync(memory_store)
        memory_store.failing.add("MUX_BADGE")

        written = await sync.sync(SESSION, full_card())

        assert written == len(MetadataKey) - 1
        assert "MUX_BADGE" not in memory_store.data[SESSION]
        assert memory_store.data[SESSION]["MUX_TITLE"] == "Deploy"

    @pytest.mark.asyncio
    async def test_update_writes_only_supplied_fields(self, memory_store):
        sync = MetadataSync(memory_store)
        await sync.sync(SESSION, full_card())

        written = await sync.update(SESSION, title="Renamed", is_favourite=False, tags=[Tag("env", "dev")])

        assert written == 3
        metadata = await sync.fetch(SESSION)
        assert metadata.title == "Renamed"
        assert metadata.is_favourite is False
        assert metadata.tags == [Tag("env", "dev")]
        assert metadata.description == "prod rollout"
        assert metadata.column_id == "col-2"

    @pytest.mark.asyncio
    async def test_update_with_nothing(self, memory_store):
        sync = MetadataSync(memory_store)
        assert await sync.update(SESSION) == 0
        assert memory_store.data == {}

    @pytest.mark.asyncio
    async def test_same_session_calls_are_serialized(self, memory_store):
        sync = MetadataSync(memory_store)
        active = 0
        peak = 0
        original_set = memory_store.set

        async def slow_set(session, key, value):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.001)
            await original_set(session, key, value)
            active -= 1

        memory_store.set = slow_set
        await asyncio.gather(
            sync.update(SESSION, title="a", badge="x"),
            sync.update(SESSION, title="b", badge="y"),
        )

        assert peak == 1

    def test_env_key(self, memory_store):
        assert MetadataSync(memory_store, env_prefix="APP").env_key(MetadataKey.LLM_NEXT_ACTION) == "APP_LLM_NEXT_ACTION"


class TestTmuxEnvironmentStore:
    @pytest.mark.asyncio
    async def test_round_trip_through_session_environment(self, registry, fake_tmux):
        fake_tmux.add_session(SESSION)
        sync = MetadataSync(TmuxEnvironmentStore(registry))

        await sync.sync(SESSION, full_card())

        assert fake_tmux.sessions[SESSION]["env"]["MUX_CARD_ID"] == CARD_ID
        assert await sync.fetch(SESSION) == full_card()

    @pytest.mark.asyncio
    async def test_empty_title_is_not_replaced_by_default(self, registry, fake_tmux):
        fake_tmux.add_session(SESSION)
        sync = MetadataSync(TmuxEnvironmentStore(registry))
        card = SessionMetadata(card_id=CARD_ID, title="", badge="", column_id="")

        await sync.sync(SESSION, card)

        assert await sync.fetch(SESSION) == card

    @pytest.mark.asyncio
    async def test_surrounding_whitespace_survives(self, registry, fake_tmux):
        fake_tmux.add_session(SESSION)
        sync = MetadataSync(TmuxEnvironmentStore(registry))
        card = SessionMetadata(
            card_id=CARD_ID,
            title="  padded  ",
            description="trailing newline\n",
            llm_next_action=" run tests",
        )

        await sync.sync(SESSION, card)

        assert await sync.fetch(SESSION) == card

    @pytest.mark.asyncio
    async def test_missing_session_reads_as_none_and_sync_survives(self, registry):
        sync = MetadataSync(TmuxEnvironmentStore(registry))

        assert await sync.fetch("mux-ffffffff") is None
        assert await sync.sync("mux-ffffffff", full_card()) == 0


class TestSidecarFileStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        store = SidecarFileStore(tmp_path / "meta")
        sync = MetadataSync(store)

        await sync.sync(SESSION, full_card())

        path = tmp_path / "meta" / f"{SESSION}.json"
        assert path.exists()
        assert not path.with_suffix(".json.tmp").exists()
        assert json.loads(path.read_text(encoding="utf-8"))["MUX_CARD_ID"] == CARD_ID
        assert await sync.fetch(SESSION) == full_card()

    @pytest.mark.asyncio
    async def test_missing_and_corrupt_files(self, tmp_path):
        store = SidecarFileStore(tmp_path)
        assert await store.get(SESSION, "MUX_CARD_ID") is None

        (tmp_path / f"{SESSION}.json").write_text("{not json", encoding="utf-8")
        assert await store.get(SESSION, "MUX_CARD_ID") is None

        await store.set(SESSION, "MUX_CARD_ID", CARD_ID)
        assert await store.get(SESSION, "MUX_CARD_ID") == CARD_ID

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path):
        store = SidecarFileStore(tmp_path)
        await store.set(SESSION, "MUX_TITLE", "x")
        await store.remove(SESSION)
        await store.remove(SESSION)
        assert await store.get(SESSION, "MUX_TITLE") is None
