from datetime import datetime
from enum import StrEnum
from typing import Any, Optional, Union

from pydantic import BaseModel


class Stage(StrEnum):
    pending = "pending"
    generating = "generating"
    complete = "complete"
    error = "error"


TERMINAL_STAGES = {Stage.complete, Stage.error}

# Ordering used to check that observed stages never move backwards
STAGE_ORDER = {
    Stage.pending: 0,
    Stage.generating: 1,
    Stage.complete: 2,
    Stage.error: 2,
}


class Status(BaseModel):
    """Normalized job status as delivered to ``status`` listeners.

    Notes:
    - `stage` is the only required field; queue metrics (`size`, `position`,
      `eta`) are filled from ``estimation``/``process_starts`` messages.
    - `broken` is set when the transport dropped while the job was in flight.
    - `endpoint`, `fn_index` and `time` are stamped by the job session when
      the status is fired, not by the message interpreter.
    """

    stage: Stage
    queue: bool = False
    code: Optional[Union[str, int]] = None
    size: Optional[int] = None
    position: Optional[int] = None
    eta: Optional[float] = None
    progress_data: Optional[list[dict[str, Any]]] = None
    message: Optional[str] = None
    success: Optional[bool] = None
    broken: Optional[bool] = None
    endpoint: Optional[str] = None
    fn_index: Optional[int] = None
    time: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    model_config = {"extra": "ignore"}


class JobState(StrEnum):
    """Lifecycle of a single submission, one level above the wire stage."""

    idle = "idle"
    awaiting_upload = "awaiting-upload"
    pending = "pending"
    generating = "generating"
    complete = "complete"
    error = "error"


def stage_to_state(stage: Stage) -> JobState:
    return JobState(str(stage))


def default_error_status(message: Optional[str] = None, **extra: Any) -> Status:
    fields = {"queue": True, **extra}
    return Status(stage=Stage.error, message=message, **fields)
