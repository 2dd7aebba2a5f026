"""Translate raw wire messages into normalized engine events.

Every transport variant (socket, legacy stream, shared stream) delivers the
same service-defined message records, tagged by their ``msg`` field. This
module maps one record plus the job's last known stage onto an
``InterpretedMessage``. It is a pure function of its inputs: no state is
kept between calls, and the input record is never mutated.

Mapping:
- send_data / send_hash: handshake requests (``data`` / ``hash`` kinds)
- queue_full / unexpected_error: error statuses
- estimation: queue metrics, reusing the last known stage
- progress / process_starts: pending updates
- process_generating: streamed partial output
- process_completed: terminal output, or an error update when the output carries ``error``
- log / heartbeat: passed through as their own kinds
"""

from typing import Any, Callable, Dict, Mapping, Optional

from jobrelay.core.exceptions import QUEUE_FULL_MSG
from jobrelay.core.models.events import InterpretedMessage, MessageKind
from jobrelay.core.models.status import Stage, Status

Handler = Callable[[Mapping[str, Any], Optional[Stage]], InterpretedMessage]


def _send_data(data, last_stage):
    return InterpretedMessage(kind=MessageKind.data)


def _send_hash(data, last_stage):
    return InterpretedMessage(kind=MessageKind.hash)


def _queue_full(data, last_stage):
    return InterpretedMessage(
        kind=MessageKind.update,
        status=Status(
            queue=True,
            message=QUEUE_FULL_MSG,
            stage=Stage.error,
            code=data.get("code"),
            success=data.get("success"),
        ),
    )


def _heartbeat(data, last_stage):
    return InterpretedMessage(kind=MessageKind.heartbeat)


def _unexpected_error(data, last_stage):
    return InterpretedMessage(
        kind=MessageKind.unexpected_error,
        status=Status(
            queue=True,
            message=data.get("message"),
            stage=Stage.error,
            success=False,
        ),
    )


def _estimation(data, last_stage):
    # Estimation only refreshes queue metrics; it never moves the stage.
    return InterpretedMessage(
        kind=MessageKind.update,
        status=Status(
            queue=True,
            stage=last_stage or Stage.pending,
            code=data.get("code"),
            size=data.get("queue_size"),
            position=data.get("rank"),
            eta=data.get("rank_eta"),
            success=data.get("success"),
        ),
    )


def _progress(data, last_stage):
    return InterpretedMessage(
        kind=MessageKind.update,
        status=Status(
            queue=True,
            stage=Stage.pending,
            code=data.get("code"),
            progress_data=data.get("progress_data"),
            success=data.get("success"),
        ),
    )


def _log(data, last_stage):
    return InterpretedMessage(kind=MessageKind.log, data=dict(data))


def _output_error(output: Any) -> Optional[str]:
    if isinstance(output, Mapping) and output.get("error") is not None:
        return str(output["error"])
    return None


def _process_generating(data, last_stage):
    success = bool(data.get("success"))
    output = data.get("output")
    return InterpretedMessage(
        kind=MessageKind.generating,
        status=Status(
            queue=True,
            message=None if success else _output_error(output),
            stage=Stage.generating if success else Stage.error,
            code=data.get("code"),
            progress_data=data.get("progress_data"),
            eta=data.get("average_duration"),
        ),
        data=dict(output) if success and isinstance(output, Mapping) else None,
    )


def _process_completed(data, last_stage):
    output = data.get("output")
    if isinstance(output, Mapping) and "error" in output:
        return InterpretedMessage(
            kind=MessageKind.update,
            status=Status(
                queue=True,
                message=_output_error(output),
                stage=Stage.error,
                code=data.get("code"),
                success=data.get("success"),
            ),
        )
    success = bool(data.get("success"))
    return InterpretedMessage(
        kind=MessageKind.complete,
        status=Status(
            queue=True,
            message=None if success else _output_error(output),
            stage=Stage.complete if success else Stage.error,
            code=data.get("code"),
            progress_data=data.get("progress_data"),
        ),
        data=dict(output) if success and isinstance(output, Mapping) else None,
    )


def _process_starts(data, last_stage):
    return InterpretedMessage(
        kind=MessageKind.update,
        status=Status(
            queue=True,
            stage=Stage.pending,
            code=data.get("code"),
            size=data.get("rank"),
            position=0,
            success=data.get("success"),
            eta=data.get("eta"),
        ),
    )


MESSAGE_HANDLERS: Dict[str, Handler] = {
    "send_data": _send_data,
    "send_hash": _send_hash,
    "queue_full": _queue_full,
    "heartbeat": _heartbeat,
    "unexpected_error": _unexpected_error,
    "estimation": _estimation,
    "progress": _progress,
    "log": _log,
    "process_generating": _process_generating,
    "process_completed": _process_completed,
    "process_starts": _process_starts,
}


def interpret_message(
    data: Mapping[str, Any], last_stage: Optional[Stage] = None
) -> InterpretedMessage:
    """Map one raw wire message onto a normalized event.

    Args:
        data: Decoded wire message; its ``msg`` field selects the handler.
        last_stage: Stage most recently fired for the same job (None before the first status).

    Returns:
        InterpretedMessage. Unknown ``msg`` values produce kind ``none`` with a
        default error status; the job session decides what to do with it.
    """
    raw_kind = data.get("msg") if isinstance(data, Mapping) else None
    handler = MESSAGE_HANDLERS.get(raw_kind) if isinstance(raw_kind, str) else None
    if handler is None:
        return InterpretedMessage(
            kind=MessageKind.none,
            status=Status(stage=Stage.error, queue=True),
            raw_kind=raw_kind if isinstance(raw_kind, str) else None,
        )
    result = handler(data, last_stage)
    result.raw_kind = raw_kind
    return result
