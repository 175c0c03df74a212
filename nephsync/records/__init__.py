"""Record model for health events.

One typed payload per entity type, plus the alias table that maps wire tags
from every client generation onto local store names.
"""

from .models import (
    PAYLOAD_TYPES,
    BowelMovementPayload,
    DailyTotalPayload,
    DressingCheckPayload,
    EntityType,
    FlushPayload,
    GoalPayload,
    IntakePayload,
    OutputPayload,
    Payload,
    Record,
    now_ms,
    parse_payload,
    resolve_entity_type,
)

__all__ = [
    "PAYLOAD_TYPES",
    "BowelMovementPayload",
    "DailyTotalPayload",
    "DressingCheckPayload",
    "EntityType",
    "FlushPayload",
    "GoalPayload",
    "IntakePayload",
    "OutputPayload",
    "Payload",
    "Record",
    "now_ms",
    "parse_payload",
    "resolve_entity_type",
]
