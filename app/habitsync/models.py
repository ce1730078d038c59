from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ACTIVITY_RECORD_TYPE = "Activity"
SESSION_RECORD_TYPE = "ActivitySession"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SyncStatus(str, Enum):
    idle = "idle"
    syncing = "syncing"
    completed = "completed"
    failed = "failed"


class EntityKind(str, Enum):
    activity = "activity"
    session = "session"

    @property
    def record_type(self) -> str:
        return ACTIVITY_RECORD_TYPE if self is EntityKind.activity else SESSION_RECORD_TYPE

    @property
    def table(self) -> str:
        return "activities" if self is EntityKind.activity else "sessions"

    @classmethod
    def from_record_type(cls, record_type: str) -> "EntityKind":
        if record_type == ACTIVITY_RECORD_TYPE:
            return cls.activity
        if record_type == SESSION_RECORD_TYPE:
            return cls.session
        raise ValueError(f"unknown_record_type: {record_type}")


# Record types in upload/fetch order: parents before dependents.
RECORD_TYPES = (ACTIVITY_RECORD_TYPE, SESSION_RECORD_TYPE)


class LocalEntity(BaseModel):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    remote_ref: Optional[str] = None
    remote_tag: Optional[str] = None
    dirty: bool = False
    last_modified_at: Optional[datetime] = None

    def domain_fields(self) -> dict[str, Any]:
        raise NotImplementedError


class Activity(LocalEntity):
    kind: Literal[EntityKind.activity] = EntityKind.activity
    name: str = ""
    activity_type: Literal["numeric", "timer"] = "numeric"
    color: str = "#CD3A2E"
    sort_order: int = 0
    is_active: bool = True

    def domain_fields(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "activity_type": self.activity_type,
            "color": self.color,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }


class Session(LocalEntity):
    kind: Literal[EntityKind.session] = EntityKind.session
    activity_id: str
    session_date: datetime = Field(default_factory=utcnow)
    duration: Optional[float] = None
    numeric_value: Optional[float] = None
    is_completed: bool = True

    def domain_fields(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "activity_id": self.activity_id,
            "session_date": self.session_date.isoformat(),
            "duration": self.duration,
            "numeric_value": self.numeric_value,
            "is_completed": self.is_completed,
            "created_at": self.created_at.isoformat(),
        }


class RemoteRecord(BaseModel):
    record_type: str
    record_id: str
    zone: str
    fields: dict[str, Any] = Field(default_factory=dict)
    modified_at: Optional[datetime] = None
    change_tag: Optional[str] = None

    @property
    def domain_id(self) -> str:
        raw = self.fields.get("id")
        return str(raw) if raw else self.record_id


class ZoneChanges(BaseModel):
    changed: list[RemoteRecord] = Field(default_factory=list)
    deleted_ids: list[str] = Field(default_factory=list)
    new_token: Optional[str] = None
    more_coming: bool = False


class DatabaseChanges(BaseModel):
    """Zones changed since a database-level change token."""

    changed_zones: list[str] = Field(default_factory=list)
    new_token: Optional[str] = None


class MutationEvent(BaseModel):
    origin: Literal["local", "sync"] = "local"
    inserted: list[tuple[EntityKind, str]] = Field(default_factory=list)
    updated: list[tuple[EntityKind, str]] = Field(default_factory=list)
    deleted: list[tuple[EntityKind, str]] = Field(default_factory=list)
    committed_at: datetime = Field(default_factory=utcnow)
