from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from jobrelay.core.models.status import Status


class EventKind(StrEnum):
    """Event kinds a caller can subscribe to on a job session."""

    status = "status"
    data = "data"
    log = "log"


class MessageKind(StrEnum):
    """Normalized kinds produced by the message interpreter."""

    hash = "hash"
    data = "data"
    update = "update"
    complete = "complete"
    generating = "generating"
    log = "log"
    heartbeat = "heartbeat"
    unexpected_error = "unexpected_error"
    none = "none"


class InterpretedMessage(BaseModel):
    """Result of interpreting one raw wire message.

    `data` carries the raw output record (``{"data": [...], ...}``) for
    ``generating``/``complete`` kinds and the whole log record for ``log``.
    `raw_kind` keeps the service-defined ``msg`` value for diagnostics.
    """

    kind: MessageKind
    status: Optional[Status] = None
    data: Optional[dict[str, Any]] = None
    raw_kind: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StatusEvent(Status):
    type: Literal["status"] = "status"


class DataEvent(BaseModel):
    type: Literal["data"] = "data"
    data: Any = None
    endpoint: Optional[str] = None
    fn_index: Optional[int] = None
    time: datetime = Field(default_factory=_now)


class LogEvent(BaseModel):
    type: Literal["log"] = "log"
    log: Optional[str] = None
    level: Optional[str] = None
    endpoint: Optional[str] = None
    fn_index: Optional[int] = None
