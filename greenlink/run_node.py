"""
run_node.py — single entry point for the greenhouse demo.

What you can do here:
- Greenhouse:     serve the default three-node greenhouse over TCP
- Control panel:  connect, start the heartbeat, and type commands interactively

Quick examples:
  Greenhouse:     python -m greenlink.run_node --mode greenhouse --port 9057
  Control panel:  python -m greenlink.run_node --mode panel --host localhost --port 9057
"""

import argparse
import asyncio
import functools
import logging
import threading
from dataclasses import replace
from typing import Callable, Optional

from .config import Settings
from .errors import ChecksumMismatch, CryptoError, MalformedEnvelope, TransportError
from .greenhouse import create_default_registry
from .messages import LIST_SENSORS
from .node import ChannelClient, GreenhouseServer

_LOGGER = logging.getLogger(__name__)

HELP_ROWS = [
    ("REQUEST_SENSOR_DATA [nodeId]", "Request sensor data from a node", "REQUEST_SENSOR_DATA 1"),
    ("REQUEST_ACTUATOR_STATUS [nodeId]", "Request actuator data from a node", "REQUEST_ACTUATOR_STATUS 1"),
    ("SEND_ACTUATOR_COMMAND [node] [act]", "Turn an actuator on a node on or off", "SEND_ACTUATOR_COMMAND 1 0"),
    ("REQUEST_COMMAND_ACK [commandId]", "Ask whether a command went through", "REQUEST_COMMAND_ACK 1"),
    ("list", "Lists all sensor/actuator nodes", "list"),
    ("toggle", "Toggles the heartbeat", "toggle"),
    ("help", "Prints the available commands", "help"),
    ("exit", "Exits the control panel", "exit"),
]


def format_help() -> str:
    rule = "-" * 112
    lines = [rule, f"| {'COMMAND':<36} | {'DESCRIPTION':<38} | {'EXAMPLE USE':<28} |", rule]
    for cmd, desc, example in HELP_ROWS:
        lines.append(f"| {cmd:<36} | {desc:<38} | {example:<28} |")
    lines.append(rule)
    return "\n".join(lines)


def normalize_command(line: str) -> str:
    """Upper-case the tag token only; numeric fields pass through untouched."""
    tokens = line.split()
    if not tokens:
        return ""
    return " ".join([tokens[0].upper(), *tokens[1:]])


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_greenhouse(settings: Settings) -> None:
    """Build the default greenhouse and serve it until cancelled."""
    registry = create_default_registry()
    server = GreenhouseServer(
        registry, host=settings.host, port=settings.port, allowed_node_ids=settings.node_ids
    )
    await server.start()
    try:
        await server.serve_forever()
    finally:
        await server.stop()


def _read_in_daemon_thread(
    loop: asyncio.AbstractEventLoop, read_line: Callable[[str], str], prompt: str
) -> "asyncio.Future[str]":
    """Run a blocking read_line(prompt) on a daemon thread; nothing joins it at exit."""
    future = loop.create_future()

    def deliver(outcome: Callable[[], None]) -> None:
        if not future.done():
            outcome()

    def worker() -> None:
        try:
            line = read_line(prompt)
        except Exception as exc:  # EOFError included; handed to the awaiting coroutine
            result = functools.partial(future.set_exception, exc)
        else:
            result = functools.partial(future.set_result, line)
        try:
            loop.call_soon_threadsafe(deliver, result)
        except RuntimeError:
            pass  # loop already closed; nobody is waiting for this line

    threading.Thread(target=worker, name="greenlink-stdin", daemon=True).start()
    return future


class ControlPanelShell:
    """
    Line-oriented control panel on top of a ChannelClient.

    A bad round trip prints one error line and the shell carries on; only a
    lost connection that cannot be re-opened stops it.
    """

    def __init__(self, client: ChannelClient, output: Callable[[str], None] = print) -> None:
        self.client = client
        self.output = output
        self.running = False

    async def handle_line(self, line: str) -> bool:
        """Handle one input line. Returns False once the shell should stop."""
        word = line.strip().lower()
        if not word:
            return True
        if word == "help":
            self.output(format_help())
        elif word == "toggle":
            state = "on" if await self.client.toggle_heartbeat() else "off"
            self.output(f"Heartbeat toggled {state}.")
        elif word == "exit":
            await self.client.close()
            return False
        elif word == "list":
            return await self._round_trip(LIST_SENSORS)
        else:
            return await self._round_trip(normalize_command(line))
        return True

    async def _round_trip(self, command: str) -> bool:
        try:
            response = await self.client.request(command)
        except (ChecksumMismatch, MalformedEnvelope, CryptoError) as exc:
            self.output(f"Error: could not read response: {exc}")
            return True
        except TransportError as exc:
            self.output(f"Error on sending/receiving command: {exc}")
            self.output("Trying to reconnect...")
            if not await self.client.open():
                self.output("Reconnection failed, stopping the control panel")
                await self.client.close()
                return False
            return True
        self.output(f"Response: {response}")
        return True

    async def run(self, read_line: Optional[Callable[[str], str]] = None) -> None:
        """Read lines (from stdin by default) until exit, EOF or a dead link."""
        read_line = read_line or input
        loop = asyncio.get_running_loop()
        self.running = True
        self.output(format_help())
        while self.running:
            try:
                # input() blocks; keep it off the loop so the heartbeat keeps ticking.
                line = await _read_in_daemon_thread(loop, read_line, "Enter a command: ")
            except EOFError:
                await self.client.close()
                break
            self.running = await self.handle_line(line)
        self.running = False


async def run_control_panel(settings: Settings, heartbeat: bool = True) -> None:
    """Connect to the greenhouse and hand the terminal to the shell."""
    client = ChannelClient.from_settings(settings)
    if not await client.open():
        raise SystemExit(f"Could not connect to greenhouse at {settings.host}:{settings.port}")
    _LOGGER.info("Control panel connected")
    try:
        if heartbeat:
            client.start_heartbeat()
        await ControlPanelShell(client).run()
    finally:
        # Sends SHUTDOWN unless the shell already closed the channel.
        await client.close()


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="greenlink", description="Greenhouse command channel demo")
    p.add_argument("--mode", choices=["greenhouse", "panel"], required=True)
    p.add_argument("--host", help="Bind address (greenhouse) or server address (panel)")
    p.add_argument("--port", type=int)
    p.add_argument("--log-level", dest="log_level")
    p.add_argument("--no-heartbeat", action="store_true", help="Panel only: don't poll nodes")
    return p.parse_args(argv)


def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Overlay command-line flags on top of environment settings."""
    settings = base if base is not None else Settings.from_env()
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    return replace(settings, **overrides)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    settings = settings_from_args(args)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.mode == "greenhouse":
            asyncio.run(run_greenhouse(settings))
        else:
            asyncio.run(run_control_panel(settings, heartbeat=not args.no_heartbeat))
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
