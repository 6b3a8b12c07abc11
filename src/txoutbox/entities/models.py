"""
Versioned Entity Models

Base model for any mutable entity guarded by optimistic locking.
"""

import json
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class VersionedEntity(BaseModel):
    """
    An entity carrying a monotonic version counter.

    Subclasses declare their own fields and a ``table_name``. Those
    fields are stored as one JSON document next to the fixed columns
    id, version, created_at and updated_at.

    Example:
        class Board(VersionedEntity):
            table_name: ClassVar[str] = "boards"

            name: str
            members: List[str] = []
    """

    table_name: ClassVar[str] = ""
    FIXED_FIELDS: ClassVar[frozenset] = frozenset({"id", "version", "created_at", "updated_at"})

    id: str = Field(default_factory=_new_id)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def entity_type(cls) -> str:
        return cls.__name__

    def to_document(self) -> Dict[str, Any]:
        """Entity-specific fields, JSON-ready."""
        return self.model_dump(mode="json", exclude=set(self.FIXED_FIELDS))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VersionedEntity":
        data = row.get("data") or {}
        if isinstance(data, str):
            data = json.loads(data)
        return cls.model_validate({
            **data,
            "id": row["id"],
            "version": row["version"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        })
