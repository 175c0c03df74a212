"""Pydantic wire schemas for the sync endpoints (camelCase on the wire)."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PushEntry(WireModel):
    id: str = Field(min_length=1, max_length=128)
    entity_type: str = Field(min_length=1, max_length=64)
    sealed_payload: str
    timestamp: int
    updated_at: int
    deleted: bool = False
    deleted_at: int | None = None


class PushRequest(WireModel):
    entries: list[PushEntry] = Field(default_factory=list, max_length=1000)


class PushResponse(WireModel):
    accepted_ids: list[str] = Field(default_factory=list)
    skipped_ids: list[str] = Field(default_factory=list)


class PullEntry(PushEntry):
    server_updated_at: int


class PullResponse(WireModel):
    entries: list[PullEntry] = Field(default_factory=list)
    next_cursor: int
    server_time: int
