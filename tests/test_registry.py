"""Tests for SessionRegistry with tmux faked at run_tmux."""

import uuid
from datetime import timezone

import pytest

from mux_shells.config import BackendConfig
from mux_shells.errors import CommandFailedError, MuxUnavailableError
from mux_shells.registry import SessionRegistry

from .conftest import FAKE_TMUX_PATH


class TestNaming:
    def test_round_trip(self, registry):
        for _ in range(20):
            card_id = str(uuid.uuid4())
            name = registry.session_name(card_id)
            assert name.startswith("mux-")
            assert registry.short_id(name) == card_id.replace("-", "")[:8].lower()

    def test_uppercase_ids_are_lowered(self, registry):
        assert registry.session_name("ABCDEF12-0000-0000-0000-000000000000") == "mux-abcdef12"

    def test_foreign_names_have_no_short_id(self, registry):
        assert registry.short_id("main") is None
        assert registry.short_id("mux-XYZ") is None
        assert registry.short_id("other-0123abcd") is None

    def test_custom_prefix(self):
        reg = SessionRegistry(BackendConfig(session_prefix="termq-"))
        assert reg.session_name("0123abcd-1111-2222-3333-444444444444") == "termq-0123abcd"
        assert reg.is_managed("termq-0123abcd")
        assert not reg.is_managed("mux-0123abcd")


class TestList:
    @pytest.mark.asyncio
    async def test_filters_foreign_sessions(self, registry, fake_tmux):
        fake_tmux.add_session("main")
        fake_tmux.add_session("mux-0123abcd", path="/work")
        fake_tmux.add_session("mux-nothex00")
        fake_tmux.add_session("mux-feedbeef", attached=True)

        sessions = await registry.list()

        assert [s.name for s in sessions] == ["mux-0123abcd", "mux-feedbeef"]
        first = sessions[0]
        assert first.short_id == "0123abcd"
        assert first.current_path == "/work"
        assert first.created_at.tzinfo is timezone.utc
        assert first.created_at.timestamp() == 1700000000
        assert [s.name for s in registry.recoverable] == ["mux-0123abcd"]

    @pytest.mark.asyncio
    async def test_no_server_is_empty(self, registry):
        assert await registry.list() == []
        assert registry.recoverable == []

    @pytest.mark.asyncio
    async def test_other_failures_raise(self, registry):
        async def broken(args):
            raise CommandFailedError(args, 2, "permission denied")

        registry.run_tmux = broken
        with pytest.raises(CommandFailedError) as excinfo:
            await registry.list()
        assert excinfo.value.exit_code == 2
        assert "permission denied" in str(excinfo.value)

    def test_parse_keeps_empty_fields_and_skips_short_lines(self, registry):
        output = (
            "mux-0123abcd|1700000000|0|\n"
            "mux-11112222|1700000000\n"
            "mux-33334444|bad|1|/a|b\n"
        )

        sessions = registry.parse_list_output(output)

        assert [s.name for s in sessions] == ["mux-0123abcd", "mux-33334444"]
        assert sessions[0].current_path is None
        assert sessions[1].is_attached
        assert sessions[1].current_path == "/a|b"
        assert sessions[1].created_at.timestamp() == 0


class TestCommands:
    @pytest.mark.asyncio
    async def test_create_builds_command_line(self, registry, fake_tmux):
        await registry.create(
            "mux-0123abcd",
            "/work",
            "/bin/zsh",
            env={"TERM": "screen", "COLORTERM": "truecolor", "PROJECT": "demo"},
        )

        assert fake_tmux.commands("new-session") == [
            ["new-session", "-d", "-s", "mux-0123abcd", "-c", "/work", "-e", "PROJECT=demo", "/bin/zsh", "-l"]
        ]
        assert await registry.exists("mux-0123abcd")
        assert not await registry.exists("mux-ffffffff")

    @pytest.mark.asyncio
    async def test_configure_is_best_effort(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")
        fake_tmux.fail_options.add("allow-passthrough")

        await registry.configure("mux-0123abcd")

        options = [c[3] for c in fake_tmux.commands("set-option")]
        assert options == ["status", "mouse", "default-terminal", "escape-time", "allow-passthrough"]

    @pytest.mark.asyncio
    async def test_kill_surfaces_failures(self, registry, fake_tmux):
        with pytest.raises(CommandFailedError) as excinfo:
            await registry.kill("mux-0123abcd")
        assert "kill-session" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_kill_forgets_recoverable(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")
        await registry.list()

        await registry.kill("mux-0123abcd")

        assert registry.recoverable == []
        assert "mux-0123abcd" not in fake_tmux.sessions

    @pytest.mark.asyncio
    async def test_environment(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")

        await registry.set_environment("mux-0123abcd", "MUX_TITLE", "a=b")

        assert await registry.show_environment("mux-0123abcd", "MUX_TITLE") == "a=b"
        assert await registry.show_environment("mux-0123abcd", "MUX_BADGE") is None

    @pytest.mark.asyncio
    async def test_removed_variable_reads_as_none(self, registry):
        async def removed(args):
            return "-MUX_TITLE\n"

        registry.run_tmux = removed
        assert await registry.show_environment("mux-0123abcd", "MUX_TITLE") is None

    @pytest.mark.asyncio
    async def test_environment_values_keep_whitespace(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")

        await registry.set_environment("mux-0123abcd", "MUX_TITLE", "  padded  ")
        await registry.set_environment("mux-0123abcd", "MUX_BADGE", "")

        assert await registry.show_environment("mux-0123abcd", "MUX_TITLE") == "  padded  "
        assert await registry.show_environment("mux-0123abcd", "MUX_BADGE") == ""

    @pytest.mark.asyncio
    async def test_commands_target_the_exact_session(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")

        await registry.exists("mux-0123abcd")
        await registry.configure("mux-0123abcd")
        await registry.set_environment("mux-0123abcd", "MUX_TITLE", "x")
        await registry.show_environment("mux-0123abcd", "MUX_TITLE")
        await registry.kill("mux-0123abcd")

        targets = {c[2] for c in fake_tmux.calls if c[1] == "-t"}
        assert targets == {"=mux-0123abcd"}
        assert fake_tmux.commands("has-session") == [["has-session", "-t", "=mux-0123abcd"]]

    @pytest.mark.asyncio
    async def test_prefix_of_another_session_does_not_match(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")

        assert not await registry.exists("mux-0123")
        with pytest.raises(CommandFailedError):
            await registry.kill("mux-0123")
        assert "mux-0123abcd" in fake_tmux.sessions

    def test_attach_command(self, registry):
        assert registry.attach_command("mux-0123abcd") == [FAKE_TMUX_PATH, "-CC", "attach-session", "-t", "=mux-0123abcd"]
        assert registry.attach_command("mux-0123abcd", control_mode=False) == [
            FAKE_TMUX_PATH, "attach-session", "-t", "=mux-0123abcd"
        ]

    @pytest.mark.asyncio
    async def test_unavailable_without_binary(self):
        reg = SessionRegistry(BackendConfig())
        with pytest.raises(MuxUnavailableError):
            await reg.run_tmux(["list-sessions"])
        with pytest.raises(MuxUnavailableError):
            reg.attach_command("mux-0123abcd")


class TestRecovery:
    @pytest.mark.asyncio
    async def test_mark_recovered(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")
        fake_tmux.add_session("mux-44445555")
        await registry.list()

        registry.mark_recovered("mux-0123abcd")

        assert [s.name for s in registry.recoverable] == ["mux-44445555"]

    @pytest.mark.asyncio
    async def test_reconcile(self, registry, fake_tmux):
        fake_tmux.add_session("mux-0123abcd")
        fake_tmux.add_session("mux-44445555")
        fake_tmux.add_session("mux-66667777")
        fake_tmux.add_session("mux-88889999", attached=True)

        result = await registry.reconcile(
            open_names=["mux-66667777"],
            known_short_ids=["0123abcd", "88889999"],
        )

        assert [s.name for s in result.matched] == ["mux-0123abcd"]
        assert [s.name for s in result.orphans] == ["mux-44445555"]
