"""
greenhouse.py — nodes, sensors, actuators and the registry that owns them.

The registry is handed to whoever needs it (dispatcher, server); there is no
module-level singleton. It is shared by every session, so the only mutation
path, toggle_actuator(), runs under the node's own asyncio.Lock.
"""

import asyncio
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import ActuatorNotFound, NodeNotFound
from .messages import AckStatus

_LOGGER = logging.getLogger(__name__)

TEMPERATURE = "temperature"
HUMIDITY = "humidity"
WINDOW = "window"
FAN = "fan"
HEATER = "heater"


@dataclass(frozen=True)
class SensorReading:
    value: float
    unit: str

    def formatted(self) -> str:
        return f"{self.value:.1f} {self.unit}"


@dataclass
class Sensor:
    """Read-only as far as the protocol is concerned."""

    type: str
    reading: SensorReading


@dataclass
class Actuator:
    id: int
    type: str
    is_on: bool = False


@dataclass
class Node:
    node_id: int
    sensors: List[Sensor] = field(default_factory=list)
    actuators: List[Actuator] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def find_actuator(self, actuator_id: int) -> Actuator:
        for actuator in self.actuators:
            if actuator.id == actuator_id:
                return actuator
        raise ActuatorNotFound(self.node_id, actuator_id)


class NodeRegistry:
    """nodeId -> Node. Built once at startup; nodes are never added or removed later."""

    def __init__(self, nodes: Iterable[Node]) -> None:
        self._nodes: Dict[int, Node] = {}
        for node in nodes:
            if node.node_id in self._nodes:
                raise ValueError(f"Duplicate node id {node.node_id}")
            self._nodes[node.node_id] = node
        if not self._nodes:
            raise ValueError("Registry needs at least one node")

    def get(self, node_id: int) -> Node:
        """Look a node up. Unknown ids raise NodeNotFound; nothing is created."""
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFound(node_id) from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[Node]:
        # Sorted so listings are stable across runs.
        return iter(sorted(self._nodes.values(), key=lambda n: n.node_id))

    def __len__(self) -> int:
        return len(self._nodes)

    def node_ids(self) -> List[int]:
        return sorted(self._nodes)

    async def toggle_actuator(self, node_id: int, actuator_id: int) -> Actuator:
        """
        Flip one actuator and return it with its new state.

        The read-modify-write happens under the node's lock, so two sessions
        toggling the same actuator never both see the old value.
        """
        node = self.get(node_id)
        async with node.lock:
            actuator = node.find_actuator(actuator_id)
            actuator.is_on = not actuator.is_on
            _LOGGER.info(
                "Node %s actuator %s (%s) -> %s",
                node_id, actuator_id, actuator.type, "ON" if actuator.is_on else "OFF",
            )
            return actuator


MAX_ACK_ENTRIES = 1024


class AckLedger:
    """
    Remembers the outcome of issued commands so REQUEST_COMMAND_ACK can be answered.

    Ids are handed out sequentially from 1 by next_id(); peers may also record
    their own ids through COMMAND_ACK. At most max_entries ids are kept; the
    least recently recorded one is forgotten first.
    """

    def __init__(self, max_entries: int = MAX_ACK_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._statuses: "OrderedDict[int, AckStatus]" = OrderedDict()
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def record(self, command_id: int, status: AckStatus) -> None:
        self._statuses[command_id] = status
        self._statuses.move_to_end(command_id)
        while len(self._statuses) > self.max_entries:
            self._statuses.popitem(last=False)

    def __len__(self) -> int:
        return len(self._statuses)

    def status(self, command_id: int) -> Optional[AckStatus]:
        return self._statuses.get(command_id)


# -------------------------
# Reference deployment
# -------------------------

DEFAULT_TEMPERATURE = SensorReading(27.0, "°C")
DEFAULT_HUMIDITY = SensorReading(80.0, "%")


def create_node(
    node_id: int,
    temperature: int = 0,
    humidity: int = 0,
    windows: int = 0,
    fans: int = 0,
    heaters: int = 0,
) -> Node:
    """Build a node with the given number of each sensor/actuator kind.

    Actuator ids are 0-based and run across kinds in the order windows, fans, heaters.
    """
    sensors = [Sensor(TEMPERATURE, DEFAULT_TEMPERATURE) for _ in range(temperature)]
    sensors += [Sensor(HUMIDITY, DEFAULT_HUMIDITY) for _ in range(humidity)]
    kinds = [WINDOW] * windows + [FAN] * fans + [HEATER] * heaters
    actuators = [Actuator(i, kind) for i, kind in enumerate(kinds)]
    return Node(node_id, sensors, actuators)


def create_default_registry() -> NodeRegistry:
    """The three-node greenhouse the control panel expects (ids 1, 2, 3)."""
    registry = NodeRegistry([
        create_node(1, temperature=1, humidity=2, windows=1),
        create_node(2, temperature=1, fans=2, heaters=1),
        create_node(3, temperature=2),
    ])
    _LOGGER.info("Greenhouse initialized with nodes %s", registry.node_ids())
    return registry
