"""Record model shared by the local store, the sync engine and the server.

Each loggable health event is a Record whose payload is one of the typed
payload dataclasses below, selected by its EntityType.
"""

import time
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class EntityType(Enum):
    """Entity types; the value is both the wire tag and the local table name."""

    INTAKE = "intake"
    OUTPUT = "output"
    FLUSH = "flush"
    BOWEL_MOVEMENT = "bowel"
    DRESSING_CHECK = "dressing"
    DAILY_TOTAL = "dailyTotals"
    GOAL = "goal"


@dataclass
class Payload:
    """Base class for entity payloads.

    Payloads serialize to camelCase keys so sealed blobs stay readable by
    every client generation.
    """

    entity_type: ClassVar[EntityType]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a camelCase dictionary for sealing."""
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Payload":
        """Create from a camelCase dictionary, ignoring unknown keys."""
        known = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in data:
                known[f.name] = data[key]
            elif f.name in data:
                known[f.name] = data[f.name]
        return cls(**known)


@dataclass
class IntakePayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.INTAKE

    amount_ml: float = 0
    note: str = ""


@dataclass
class OutputPayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.OUTPUT

    type: str = "bag"  # "bag" or "urinal"
    amount_ml: float = 0
    color_note: str = ""
    clots: bool = False
    pain: bool = False
    leakage: bool = False
    fever: bool = False
    other_note: str = ""


@dataclass
class FlushPayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.FLUSH

    amount_ml: float = 30
    note: str = ""


@dataclass
class BowelMovementPayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.BOWEL_MOVEMENT

    bristol_scale: int = 0
    note: str = ""


DRESSING_STATES = ("Checked", "Needs Changing", "Changed Today")

# Older clients recorded a finer-grained dressing vocabulary
_DRESSING_STATE_ALIASES = {
    "Clean/Dry": "Checked",
    "Damp": "Needs Changing",
    "Needs Change": "Needs Changing",
    "Leaking": "Needs Changing",
    "Changed": "Changed Today",
}


def normalize_dressing_state(raw: str) -> str:
    """Map a stored dressing state onto the current vocabulary."""
    if raw in DRESSING_STATES:
        return raw
    return _DRESSING_STATE_ALIASES.get(raw, "Checked")


@dataclass
class DressingCheckPayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.DRESSING_CHECK

    state: str = "Checked"
    note: str = ""

    def __post_init__(self) -> None:
        self.state = normalize_dressing_state(self.state)


@dataclass
class DailyTotalPayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.DAILY_TOTAL

    date: str = ""  # YYYY-MM-DD
    bag_ml: float = 0
    urinal_ml: float = 0
    total_ml: float | None = None
    intake_ml: float = 0

    def __post_init__(self) -> None:
        if self.total_ml is None:
            self.total_ml = self.bag_ml + self.urinal_ml


@dataclass
class GoalPayload(Payload):
    entity_type: ClassVar[EntityType] = EntityType.GOAL

    intake_ml: float | None = None
    output_ml: float | None = None


PAYLOAD_TYPES: dict[EntityType, type[Payload]] = {
    EntityType.INTAKE: IntakePayload,
    EntityType.OUTPUT: OutputPayload,
    EntityType.FLUSH: FlushPayload,
    EntityType.BOWEL_MOVEMENT: BowelMovementPayload,
    EntityType.DRESSING_CHECK: DressingCheckPayload,
    EntityType.DAILY_TOTAL: DailyTotalPayload,
    EntityType.GOAL: GoalPayload,
}

# Wire tags seen from older clients and alternate spellings
ENTITY_ALIASES: dict[str, EntityType] = {
    "bag": EntityType.OUTPUT,
    "urinal": EntityType.OUTPUT,
    "bowel-movement": EntityType.BOWEL_MOVEMENT,
    "bowel_movement": EntityType.BOWEL_MOVEMENT,
    "bowelMovement": EntityType.BOWEL_MOVEMENT,
    "dressing-check": EntityType.DRESSING_CHECK,
    "dressing_check": EntityType.DRESSING_CHECK,
    "dressingCheck": EntityType.DRESSING_CHECK,
    "daily-total": EntityType.DAILY_TOTAL,
    "daily_total": EntityType.DAILY_TOTAL,
    "dailyTotal": EntityType.DAILY_TOTAL,
    "goals": EntityType.GOAL,
}


def resolve_entity_type(tag: str) -> EntityType | None:
    """Resolve a wire tag to an entity type.

    Args:
        tag: Entity type tag as received from the server.

    Returns:
        The matching EntityType, or None for tags this client does not know.
    """
    try:
        return EntityType(tag)
    except ValueError:
        return ENTITY_ALIASES.get(tag)


def parse_payload(
    entity_type: EntityType | str, data: dict[str, Any]
) -> Payload:
    """Build the typed payload for an entity type from a plain dictionary.

    When ``entity_type`` is an output alias tag ("bag", "urinal") and the
    data does not carry its own output type, the tag fills it in.

    Raises:
        ValueError: If the entity type tag is unknown.
    """
    tag = entity_type.value if isinstance(entity_type, EntityType) else entity_type
    resolved = resolve_entity_type(tag)
    if resolved is None:
        raise ValueError(f"Unknown entity type: {tag}")

    if resolved is EntityType.OUTPUT and tag in ("bag", "urinal") and "type" not in data:
        data = {**data, "type": tag}

    return PAYLOAD_TYPES[resolved].from_dict(data)


@dataclass
class Record:
    """A single health event as held by a client replica."""

    id: str
    entity_type: EntityType
    payload: Payload
    timestamp: int
    updated_at: int
    deleted: bool = False
    deleted_at: int | None = None
    synced: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for local serialization."""
        return {
            "id": self.id,
            "entityType": self.entity_type.value,
            "payload": self.payload.to_dict(),
            "timestamp": self.timestamp,
            "updatedAt": self.updated_at,
            "deleted": self.deleted,
            "deletedAt": self.deleted_at,
            "synced": self.synced,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        """Create from dictionary."""
        entity_type = resolve_entity_type(data["entityType"])
        if entity_type is None:
            raise ValueError(f"Unknown entity type: {data['entityType']}")
        return cls(
            id=data["id"],
            entity_type=entity_type,
            payload=parse_payload(data["entityType"], data.get("payload") or {}),
            timestamp=data["timestamp"],
            updated_at=data["updatedAt"],
            deleted=bool(data.get("deleted", False)),
            deleted_at=data.get("deletedAt"),
            synced=bool(data.get("synced", False)),
        )

    def to_wire(self, sealed_payload: str) -> dict[str, Any]:
        """Build a push entry, dropping local-only fields."""
        return {
            "id": self.id,
            "entityType": self.entity_type.value,
            "sealedPayload": sealed_payload,
            "timestamp": self.timestamp,
            "updatedAt": self.updated_at,
            "deleted": self.deleted,
            "deletedAt": self.deleted_at,
        }
