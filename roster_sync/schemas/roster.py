from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

EventAction = Literal["created", "updated", "deleted"]


class RosterRecord(BaseModel):
    """A single record as returned by the roster source, already flattened to column values."""

    source_id: str = Field(min_length=1)
    entity_type: str
    fields: dict[str, Any] = Field(default_factory=dict)
    last_modified: datetime | None = None
    # Member source ids by link name; None when the payload did not carry the lists.
    links: dict[str, list[str]] | None = None


class RosterEvent(BaseModel):
    id: str = Field(min_length=1)
    entity_type: str
    action: EventAction
    source_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    links: dict[str, list[str]] | None = None
    created: datetime | None = None
