"""Message metadata shared by every envelope placed on a queue.

Every message carries ``requestedAt``, ``correlationId`` and ``priority``
alongside its application payload. Python code uses the snake_case field
names; the wire form uses the camelCase aliases.
"""
from __future__ import annotations

import datetime as _dt
import random
import uuid
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from otr_queue.constants import MessagePriority
from otr_queue.errors import PayloadConflictError


class MessageMetadata(BaseModel):
    """Fully populated metadata for a single message."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    requested_at: str = Field(alias="requestedAt")
    correlation_id: str = Field(alias="correlationId")
    priority: MessagePriority = MessagePriority.NORMAL

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class MessageMetadataOverrides(BaseModel):
    """Any subset of ``MessageMetadata``; unset fields are generated."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    requested_at: Optional[str] = Field(default=None, alias="requestedAt")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    priority: Optional[MessagePriority] = None


MetadataOverrides = Union[MessageMetadataOverrides, Mapping[str, Any], None]

# Field names as they appear in a serialized envelope
METADATA_FIELDS = frozenset(f.alias or name for name, f in MessageMetadata.model_fields.items())


def now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision, e.g. ``2025-01-01T00:00:00.000Z``."""
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_correlation_id() -> str:
    try:
        return str(uuid.uuid4())
    except NotImplementedError:
        # os.urandom has no entropy source on this platform
        return str(uuid.UUID(int=random.getrandbits(128), version=4))


def create_message_metadata(overrides: MetadataOverrides = None) -> MessageMetadata:
    """Build metadata, filling every field not present in ``overrides``.

    Example:
        >>> meta = create_message_metadata({"priority": MessagePriority.HIGH})
        >>> meta.priority
        <MessagePriority.HIGH: 10>
    """
    if not isinstance(overrides, MessageMetadataOverrides):
        overrides = MessageMetadataOverrides.model_validate(dict(overrides or {}))
    return MessageMetadata(
        requested_at=overrides.requested_at or now_iso(),
        correlation_id=overrides.correlation_id or new_correlation_id(),
        priority=overrides.priority if overrides.priority is not None else MessagePriority.NORMAL,
    )


def build_envelope(metadata: MessageMetadata, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Merge wire-form metadata with ``payload`` into a new envelope dict.

    Raises ``PayloadConflictError`` if the payload uses a metadata field name.
    """
    conflicts = sorted(METADATA_FIELDS.intersection(payload))
    if conflicts:
        raise PayloadConflictError(conflicts)
    return {**metadata.to_wire(), **payload}
