"""
messages.py — the plaintext command language and its typed values.

What this module does:
- Defines one frozen dataclass per wire tag. Together they form a closed
  union (`Command`); the dispatcher switches on `TAG`, nobody subclasses.
- Parses a single command line into one of those values.
- Serializes a value back into the exact line the parser accepts.

Wire grammar (one line, space-separated, first token is the tag):

    REQUEST_SENSOR_DATA      <nodeId>
    REQUEST_ACTUATOR_STATUS  <nodeId>
    SEND_ACTUATOR_COMMAND    <nodeId> <actuatorId>
    REQUEST_COMMAND_ACK      <commandId>
    COMMAND_ACK              <commandId> [SUCCESS|PENDING|FAILED]
    SENSOR_DATA              <nodeId> <temperature> <humidity>
    ACTUATOR_STATUS          <nodeId> ON|OFF
    LIST_SENSORS

No escaping exists, so field values can never contain spaces.
"""

import enum
import re
from dataclasses import dataclass
from typing import Callable, ClassVar, Dict, List, Union

from .errors import MessageFormatError, NumericFieldError

# -----------------------
# Public message type tags
# -----------------------
REQUEST_SENSOR_DATA = "REQUEST_SENSOR_DATA"
REQUEST_ACTUATOR_STATUS = "REQUEST_ACTUATOR_STATUS"
SEND_ACTUATOR_COMMAND = "SEND_ACTUATOR_COMMAND"
REQUEST_COMMAND_ACK = "REQUEST_COMMAND_ACK"
COMMAND_ACK = "COMMAND_ACK"
SENSOR_DATA = "SENSOR_DATA"
ACTUATOR_STATUS = "ACTUATOR_STATUS"
LIST_SENSORS = "LIST_SENSORS"

# Plaintext sentinel; ends a session from either side. Not a Command.
SHUTDOWN = "SHUTDOWN"

STATUS_ON = "ON"
STATUS_OFF = "OFF"


class AckStatus(enum.Enum):
    """Outcome recorded for a previously issued command."""

    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RequestSensorData:
    TAG: ClassVar[str] = REQUEST_SENSOR_DATA
    node_id: int


@dataclass(frozen=True)
class RequestActuatorStatus:
    TAG: ClassVar[str] = REQUEST_ACTUATOR_STATUS
    node_id: int


@dataclass(frozen=True)
class SendActuatorCommand:
    TAG: ClassVar[str] = SEND_ACTUATOR_COMMAND
    node_id: int
    actuator_id: int


@dataclass(frozen=True)
class RequestCommandAck:
    TAG: ClassVar[str] = REQUEST_COMMAND_ACK
    command_id: int


@dataclass(frozen=True)
class CommandAck:
    TAG: ClassVar[str] = COMMAND_ACK
    command_id: int
    status: AckStatus = AckStatus.SUCCESS


@dataclass(frozen=True)
class SensorData:
    """Node -> control panel telemetry push."""

    TAG: ClassVar[str] = SENSOR_DATA
    node_id: int
    temperature: int
    humidity: int


@dataclass(frozen=True)
class ActuatorStatus:
    """Node -> control panel state push."""

    TAG: ClassVar[str] = ACTUATOR_STATUS
    node_id: int
    is_on: bool


@dataclass(frozen=True)
class ListSensors:
    TAG: ClassVar[str] = LIST_SENSORS


Command = Union[
    RequestSensorData,
    RequestActuatorStatus,
    SendActuatorCommand,
    RequestCommandAck,
    CommandAck,
    SensorData,
    ActuatorStatus,
    ListSensors,
]


# -------------------------
# Parsing
# -------------------------

def _expect_fields(tag: str, fields: List[str], minimum: int, maximum: int) -> None:
    if not minimum <= len(fields) <= maximum:
        wanted = str(minimum) if minimum == maximum else f"{minimum}-{maximum}"
        raise MessageFormatError(f"{tag} expects {wanted} field(s), got {len(fields)}")


_INTEGER = re.compile(r"[+-]?[0-9]+")


def _int_field(tag: str, name: str, value: str) -> int:
    # int() alone would also take "1_0" and non-ASCII digits.
    if not _INTEGER.fullmatch(value):
        raise NumericFieldError(f"{tag}: {name} must be an integer, got {value!r}")
    return int(value)


def _parse_node_only(cls):
    def parse(fields: List[str]):
        _expect_fields(cls.TAG, fields, 1, 1)
        return cls(_int_field(cls.TAG, "nodeId", fields[0]))
    return parse


def _parse_send_actuator(fields: List[str]) -> SendActuatorCommand:
    _expect_fields(SEND_ACTUATOR_COMMAND, fields, 2, 2)
    return SendActuatorCommand(
        _int_field(SEND_ACTUATOR_COMMAND, "nodeId", fields[0]),
        _int_field(SEND_ACTUATOR_COMMAND, "actuatorId", fields[1]),
    )


def _parse_request_ack(fields: List[str]) -> RequestCommandAck:
    _expect_fields(REQUEST_COMMAND_ACK, fields, 1, 1)
    return RequestCommandAck(_int_field(REQUEST_COMMAND_ACK, "commandId", fields[0]))


def _parse_command_ack(fields: List[str]) -> CommandAck:
    _expect_fields(COMMAND_ACK, fields, 1, 2)
    command_id = _int_field(COMMAND_ACK, "commandId", fields[0])
    if len(fields) == 1:
        return CommandAck(command_id)
    try:
        status = AckStatus(fields[1])
    except ValueError as exc:
        raise MessageFormatError(f"{COMMAND_ACK}: unknown status {fields[1]!r}") from exc
    return CommandAck(command_id, status)


def _parse_sensor_data(fields: List[str]) -> SensorData:
    _expect_fields(SENSOR_DATA, fields, 3, 3)
    return SensorData(
        _int_field(SENSOR_DATA, "nodeId", fields[0]),
        _int_field(SENSOR_DATA, "temperature", fields[1]),
        _int_field(SENSOR_DATA, "humidity", fields[2]),
    )


def _parse_actuator_status(fields: List[str]) -> ActuatorStatus:
    _expect_fields(ACTUATOR_STATUS, fields, 2, 2)
    node_id = _int_field(ACTUATOR_STATUS, "nodeId", fields[0])
    if fields[1] not in (STATUS_ON, STATUS_OFF):
        raise MessageFormatError(f"{ACTUATOR_STATUS}: status must be ON or OFF, got {fields[1]!r}")
    return ActuatorStatus(node_id, fields[1] == STATUS_ON)


def _parse_list_sensors(fields: List[str]) -> ListSensors:
    _expect_fields(LIST_SENSORS, fields, 0, 0)
    return ListSensors()


_PARSERS: Dict[str, Callable[[List[str]], Command]] = {
    REQUEST_SENSOR_DATA: _parse_node_only(RequestSensorData),
    REQUEST_ACTUATOR_STATUS: _parse_node_only(RequestActuatorStatus),
    SEND_ACTUATOR_COMMAND: _parse_send_actuator,
    REQUEST_COMMAND_ACK: _parse_request_ack,
    COMMAND_ACK: _parse_command_ack,
    SENSOR_DATA: _parse_sensor_data,
    ACTUATOR_STATUS: _parse_actuator_status,
    LIST_SENSORS: _parse_list_sensors,
}


def parse_command(line: str) -> Command:
    """
    Turn one plaintext line into a typed command.

    Raises:
        MessageFormatError: empty line, unknown tag, wrong field count.
        NumericFieldError:  a numeric field is not a base-10 integer
                            (subclass of MessageFormatError, same handling).
    """
    tokens = line.split()
    if not tokens:
        raise MessageFormatError("empty message")
    tag, fields = tokens[0], tokens[1:]
    parser = _PARSERS.get(tag)
    if parser is None:
        raise MessageFormatError(f"unknown command: {tag}")
    return parser(fields)


# -------------------------
# Serialization
# -------------------------

def _command_fields(command: Command) -> List[str]:
    tag = getattr(command, "TAG", None)
    if tag in (REQUEST_SENSOR_DATA, REQUEST_ACTUATOR_STATUS):
        return [str(command.node_id)]
    if tag == SEND_ACTUATOR_COMMAND:
        return [str(command.node_id), str(command.actuator_id)]
    if tag == REQUEST_COMMAND_ACK:
        return [str(command.command_id)]
    if tag == COMMAND_ACK:
        # SUCCESS is the implied default; keep the short form on the wire.
        if command.status is AckStatus.SUCCESS:
            return [str(command.command_id)]
        return [str(command.command_id), command.status.value]
    if tag == SENSOR_DATA:
        return [str(command.node_id), str(command.temperature), str(command.humidity)]
    if tag == ACTUATOR_STATUS:
        return [str(command.node_id), STATUS_ON if command.is_on else STATUS_OFF]
    if tag == LIST_SENSORS:
        return []
    raise TypeError(f"Not a command: {command!r}")


def serialize_command(command: Command) -> str:
    """Inverse of parse_command(); field order fixed by the grammar above."""
    fields = _command_fields(command)
    return " ".join([command.TAG, *fields])
