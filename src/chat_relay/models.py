"""Pydantic models shared by the store, assembler, dispatcher and server."""
from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal["user", "assistant"]


# -----------------------------
# Timestamps
# -----------------------------
_clock_lock = threading.Lock()
_last_ns = 0


def _format_ns(ns: int) -> str:
    secs, frac = divmod(ns, 1_000_000_000)
    base = datetime.fromtimestamp(secs, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{frac:09d}Z"


def utc_timestamp() -> str:
    """Return a UTC timestamp with nanosecond resolution, e.g. ``2023-04-01T12:00:00.123456789Z``.

    Values are strictly increasing within the process: if the wall clock has
    not moved since the previous call, the previous value plus one
    nanosecond is returned.
    """
    global _last_ns
    with _clock_lock:
        now = time.time_ns()
        if now <= _last_ns:
            now = _last_ns + 1
        _last_ns = now
    return _format_ns(now)


# -----------------------------
# Stored messages
# -----------------------------
class Message(BaseModel):
    """A single immutable conversation turn."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., alias="userId")
    role: Role
    content: str
    typed_at: str = Field(default_factory=utc_timestamp, alias="typedAt")

    def to_item(self) -> Dict[str, Any]:
        """Serialize with the storage field names (``userId``, ``typedAt``)."""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Message":
        return cls.model_validate(item)


# -----------------------------
# Inbound webhook events
# -----------------------------
class EventSource(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "user"
    user_id: Optional[str] = Field(default=None, alias="userId")


class EventMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    id: Optional[str] = None
    text: Optional[str] = None


class WebhookEvent(BaseModel):
    """One messaging-platform event. Unknown fields are kept but ignored."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    source: Optional[EventSource] = None
    message: Optional[EventMessage] = None
    timestamp: Optional[int] = None


class WebhookBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    destination: Optional[str] = None
    events: List[WebhookEvent] = Field(default_factory=list)


# -----------------------------
# Dispatcher results
# -----------------------------
class EventResult(BaseModel):
    """Outcome of one handled event. Skipped events are reported as ``None``."""

    status: Literal["replied", "failed"]
    reply: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
