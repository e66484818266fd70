"""Tests for the control-panel shell and command-line handling."""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from greenlink.config import Settings
from greenlink.errors import ChecksumMismatch, TransportError
from greenlink.node import ChannelClient
from greenlink.run_node import (
    ControlPanelShell,
    format_help,
    normalize_command,
    parse_args,
    run_control_panel,
    settings_from_args,
)


@pytest.fixture
def channel() -> MagicMock:
    """Mock ChannelClient; its coroutine methods become AsyncMocks."""
    return MagicMock(spec=ChannelClient)


@pytest.fixture
def shell(channel):
    """Shell that collects output instead of printing."""
    shell = ControlPanelShell(channel, output=MagicMock())
    return shell


def _printed(shell) -> str:
    return "\n".join(c.args[0] for c in shell.output.call_args_list)


class TestNormalizeCommand:
    """Tests for normalize_command()."""

    def test_upper_cases_tag_only(self):
        """The tag is upper-cased; fields are kept."""
        assert normalize_command("request_sensor_data 1") == "REQUEST_SENSOR_DATA 1"

    def test_blank(self):
        """Blank input stays blank."""
        assert normalize_command("   ") == ""


class TestControlPanelShell:
    """Tests for ControlPanelShell.handle_line()."""

    @pytest.mark.asyncio
    async def test_command_round_trip(self, shell, channel):
        """Typed commands are sent and the response printed."""
        channel.request.return_value = "Node 1 sensors: temperature=27.0 °C"
        assert await shell.handle_line("request_sensor_data 1") is True
        channel.request.assert_awaited_once_with("REQUEST_SENSOR_DATA 1")
        assert "Response: Node 1 sensors" in _printed(shell)

    @pytest.mark.asyncio
    async def test_list(self, shell, channel):
        """'list' asks for LIST_SENSORS."""
        channel.request.return_value = "Sensors:"
        assert await shell.handle_line("list") is True
        channel.request.assert_awaited_once_with("LIST_SENSORS")

    @pytest.mark.asyncio
    async def test_help(self, shell, channel):
        """'help' prints the command table without touching the channel."""
        assert await shell.handle_line("help") is True
        assert "toggle" in _printed(shell)
        channel.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_toggle(self, shell, channel):
        """'toggle' reports the heartbeat state."""
        channel.toggle_heartbeat.return_value = True
        assert await shell.handle_line("toggle") is True
        assert "Heartbeat toggled on." in _printed(shell)

    @pytest.mark.asyncio
    async def test_exit(self, shell, channel):
        """'exit' closes the channel and stops the shell."""
        assert await shell.handle_line("exit") is False
        channel.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bad_response_keeps_shell(self, shell, channel):
        """An unreadable response prints an error and the shell continues."""
        channel.request.side_effect = ChecksumMismatch("bad digest")
        assert await shell.handle_line("REQUEST_SENSOR_DATA 1") is True
        assert "Error: could not read response" in _printed(shell)
        channel.open.assert_not_called()

    @pytest.mark.asyncio
    async def test_lost_link_reconnects(self, shell, channel):
        """A transport error triggers one reconnect; success keeps the shell."""
        channel.request.side_effect = TransportError("reset")
        channel.open.return_value = True
        assert await shell.handle_line("REQUEST_SENSOR_DATA 1") is True
        channel.open.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_link_without_reconnect_stops(self, shell, channel):
        """If the reconnect fails too the shell stops."""
        channel.request.side_effect = TransportError("reset")
        channel.open.return_value = False
        assert await shell.handle_line("REQUEST_SENSOR_DATA 1") is False
        assert "Reconnection failed" in _printed(shell)

    @pytest.mark.asyncio
    async def test_run_until_eof(self, shell, channel):
        """run() reads lines until EOF, then closes the channel."""
        lines = iter(["list"])

        def read_line(prompt):
            try:
                return next(lines)
            except StopIteration:
                raise EOFError from None

        channel.request.return_value = "Sensors:"
        await shell.run(read_line)
        channel.request.assert_awaited_once_with("LIST_SENSORS")
        channel.close.assert_awaited_once()
        assert shell.running is False

    @pytest.mark.asyncio
    async def test_input_is_read_on_a_daemon_thread(self, shell, channel):
        """The blocking reader runs on a daemon thread, never the loop's executor."""
        seen = []

        def read_line(prompt):
            seen.append(threading.current_thread().daemon)
            raise EOFError

        await shell.run(read_line)
        assert seen == [True]


class TestRunControlPanel:
    """Tests for run_control_panel()."""

    @pytest.mark.asyncio
    async def test_cancellation_still_closes_the_channel(self, channel):
        """Interrupting the shell still closes the channel, which sends SHUTDOWN."""
        channel.open.return_value = True
        shell = MagicMock()
        shell.return_value.run = AsyncMock(side_effect=asyncio.CancelledError)
        with patch("greenlink.run_node.ChannelClient.from_settings", return_value=channel), patch(
            "greenlink.run_node.ControlPanelShell", shell
        ):
            with pytest.raises(asyncio.CancelledError):
                await run_control_panel(Settings(), heartbeat=True)
        channel.start_heartbeat.assert_called_once()
        channel.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_greenhouse_exits(self, channel):
        """A failed open() exits without starting the shell."""
        channel.open.return_value = False
        with patch("greenlink.run_node.ChannelClient.from_settings", return_value=channel):
            with pytest.raises(SystemExit):
                await run_control_panel(Settings())
        channel.start_heartbeat.assert_not_called()


class TestCommandLine:
    """Tests for argument parsing and settings overlay."""

    def test_help_table_lists_commands(self):
        """Every shell word appears in the help table."""
        table = format_help()
        for word in ("list", "toggle", "help", "exit", "SEND_ACTUATOR_COMMAND"):
            assert word in table

    def test_flags_override_environment(self):
        """Command-line values win over environment settings."""
        args = parse_args(["--mode", "panel", "--host", "10.0.0.5", "--port", "9999", "--log-level", "debug"])
        settings = settings_from_args(args, base=Settings(host="localhost", max_attempts=2))
        assert settings.host == "10.0.0.5"
        assert settings.port == 9999
        assert settings.log_level == "DEBUG"
        assert settings.max_attempts == 2

    def test_mode_is_required(self):
        """Running without --mode is a usage error."""
        with pytest.raises(SystemExit):
            parse_args([])
