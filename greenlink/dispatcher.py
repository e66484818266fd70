"""
dispatcher.py — runs a parsed command against the node registry.

Every outcome is a response string. Unknown nodes, unknown actuators and
commands the greenhouse does not serve come back as "ERROR: ..." text so the
session always has something to reply with; nothing raised here should ever
reach the session loop.
"""

import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from . import messages as m
from .errors import ActuatorNotFound, NodeNotFound
from .greenhouse import AckLedger, Node, NodeRegistry

_LOGGER = logging.getLogger(__name__)

ERROR_PREFIX = "ERROR: "

ACK_RESPONSES = {
    m.AckStatus.SUCCESS: "Command {id} executed successfully",
    m.AckStatus.PENDING: "Command {id} is still being processed",
    m.AckStatus.FAILED: "Command {id} failed to execute",
    None: "No acknowledgment found for command {id}",
}


def error_response(text: str) -> str:
    return ERROR_PREFIX + text


def _state(is_on: bool) -> str:
    return m.STATUS_ON if is_on else m.STATUS_OFF


class Dispatcher:
    """
    Executes commands for any number of sessions.

    Args:
        registry:         shared node registry (owned by the caller).
        ledger:           ACK ledger; a fresh one is created if omitted.
        allowed_node_ids: access-control list; ids outside it are answered
                          exactly like unknown nodes. None means "whatever
                          the registry holds".
    """

    def __init__(
        self,
        registry: NodeRegistry,
        ledger: Optional[AckLedger] = None,
        allowed_node_ids: Optional[Iterable[int]] = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger if ledger is not None else AckLedger()
        self.allowed_node_ids = frozenset(allowed_node_ids) if allowed_node_ids is not None else None
        self._handlers: Dict[str, Callable[..., Awaitable[str]]] = {
            m.REQUEST_SENSOR_DATA: self._sensor_data,
            m.REQUEST_ACTUATOR_STATUS: self._actuator_status,
            m.SEND_ACTUATOR_COMMAND: self._toggle_actuator,
            m.REQUEST_COMMAND_ACK: self._request_ack,
            m.COMMAND_ACK: self._record_ack,
            m.LIST_SENSORS: self._list_sensors,
            m.SENSOR_DATA: self._unsupported,
            m.ACTUATOR_STATUS: self._unsupported,
        }

    async def execute(self, command: m.Command) -> str:
        """Run one command and return the text to send back."""
        handler = self._handlers.get(command.TAG)
        if handler is None:
            # Every tag in messages.py has a handler; reaching here is a bug.
            raise TypeError(f"No handler for {command!r}")
        return await handler(command)

    # -------------------------
    # Helpers
    # -------------------------

    def _resolve(self, node_id: int) -> Node:
        if self.allowed_node_ids is not None and node_id not in self.allowed_node_ids:
            raise NodeNotFound(node_id)
        return self.registry.get(node_id)

    # -------------------------
    # Handlers
    # -------------------------

    async def _sensor_data(self, command: m.RequestSensorData) -> str:
        try:
            node = self._resolve(command.node_id)
        except NodeNotFound as exc:
            return error_response(str(exc))
        if not node.sensors:
            return f"Node {node.node_id} has no sensors"
        readings = ", ".join(f"{s.type}={s.reading.formatted()}" for s in node.sensors)
        return f"Node {node.node_id} sensors: {readings}"

    async def _actuator_status(self, command: m.RequestActuatorStatus) -> str:
        try:
            node = self._resolve(command.node_id)
        except NodeNotFound as exc:
            return error_response(str(exc))
        if not node.actuators:
            return f"Node {node.node_id} has no actuators"
        async with node.lock:
            states = ", ".join(f"{a.id} {a.type}={_state(a.is_on)}" for a in node.actuators)
        return f"Node {node.node_id} actuators: {states}"

    async def _toggle_actuator(self, command: m.SendActuatorCommand) -> str:
        command_id = self.ledger.next_id()
        self.ledger.record(command_id, m.AckStatus.PENDING)
        try:
            self._resolve(command.node_id)
            actuator = await self.registry.toggle_actuator(command.node_id, command.actuator_id)
        except (NodeNotFound, ActuatorNotFound) as exc:
            self.ledger.record(command_id, m.AckStatus.FAILED)
            return error_response(f"{exc} (command {command_id})")
        self.ledger.record(command_id, m.AckStatus.SUCCESS)
        return (
            f"Actuator {actuator.id} ({actuator.type}) on node {command.node_id} "
            f"is now {_state(actuator.is_on)} (command {command_id})"
        )

    async def _request_ack(self, command: m.RequestCommandAck) -> str:
        status = self.ledger.status(command.command_id)
        return ACK_RESPONSES[status].format(id=command.command_id)

    async def _record_ack(self, command: m.CommandAck) -> str:
        self.ledger.record(command.command_id, command.status)
        return f"Acknowledged command {command.command_id} as {command.status.value}"

    async def _list_sensors(self, command: m.ListSensors) -> str:
        lines = ["Sensors:"]
        visible = [
            node for node in self.registry
            if self.allowed_node_ids is None or node.node_id in self.allowed_node_ids
        ]
        for i, node in enumerate(visible, start=1):
            sensor_types = [s.type for s in node.sensors]
            actuator_types = [a.type for a in node.actuators]
            lines.append(
                f"{i}. Node with nodeId = {node.node_id} has sensor types: {sensor_types}, "
                f"and has these actuators: {actuator_types}"
            )
        return "\n".join(lines)

    async def _unsupported(self, command: m.Command) -> str:
        _LOGGER.debug("Ignoring node-to-panel push %s on the greenhouse side", command.TAG)
        return error_response(f"{command.TAG} is not supported by the greenhouse")
