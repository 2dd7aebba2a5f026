from enum import StrEnum

from jobrelay.core.exceptions import UnsupportedProtocolError
from jobrelay.core.models.service_config import KNOWN_PROTOCOLS, ServiceConfig


class Transport(StrEnum):
    direct = "direct"
    socket = "ws"
    stream = "sse"
    shared_v1 = "sse_v1"
    shared_v2 = "sse_v2"

    @property
    def is_shared(self) -> bool:
        return self in (Transport.shared_v1, Transport.shared_v2)

    @property
    def supports_diffs(self) -> bool:
        return self is Transport.shared_v2


def skip_queue(fn_index: int, config: ServiceConfig) -> bool:
    """True when the job should bypass the queue with a direct call.

    A job-level ``queue`` flag wins; ``None`` falls back to the service-wide
    ``enable_queue`` flag.
    """
    dependency = config.dependency(fn_index)
    queue = dependency.queue if dependency is not None else None
    if queue is None:
        queue = bool(config.enable_queue)
    return not queue


def select_transport(fn_index: int, config: ServiceConfig) -> Transport:
    if skip_queue(fn_index, config):
        return Transport.direct
    protocol = config.protocol or "ws"
    if protocol not in KNOWN_PROTOCOLS:
        raise UnsupportedProtocolError(protocol)
    return Transport(protocol)
