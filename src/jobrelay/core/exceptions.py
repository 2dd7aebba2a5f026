from typing import Optional

from jobrelay.core.models.service_error import ServiceErrorResponse
from jobrelay.core.models.status import Status

QUEUE_FULL_MSG = "This application is too busy. Keep trying!"
BROKEN_CONNECTION_MSG = "Connection errored out."
UNEXPECTED_ERROR_MSG = "An Unexpected Error Occurred!"


class RemoteServiceException(Exception):
    """Raised by HTTP adapters when the remote service cannot be reached or answers badly."""
    def __init__(self, response: ServiceErrorResponse):
        self.response = response
        super().__init__(response.detail)


class JobRelayError(Exception):
    """Base exception for client-side misuse and unrecoverable setup failures."""


class ConfigResolutionError(JobRelayError):
    """Raised when the service descriptor cannot be fetched or parsed.

    Attributes:
        base_url: The base URL the client tried to resolve
        upstream_status: HTTP status returned by the service (if any)
    """
    def __init__(
        self,
        message: str,
        base_url: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        self.base_url = base_url
        self.upstream_status = upstream_status
        super().__init__(message)


class EndpointNotFoundError(JobRelayError):
    def __init__(self, endpoint):
        self.endpoint = endpoint
        super().__init__(
            "There is no endpoint matching that name of fn_index matching that number."
        )


class ContinuousJobError(JobRelayError):
    def __init__(self, endpoint):
        self.endpoint = endpoint
        super().__init__(
            "Cannot call predict on this function as it may run forever. Use submit instead"
        )


class UnsupportedProtocolError(JobRelayError):
    def __init__(self, protocol: str):
        self.protocol = protocol
        super().__init__(f"Unsupported service protocol: {protocol!r}")


class DiffApplicationError(JobRelayError):
    """Raised when a structural diff cannot be applied to the stored snapshot."""


class JobFailedError(JobRelayError):
    """Raised by ``predict`` when the job ends with an ``error`` status.

    Attributes:
        status: The terminal error status as fired to listeners
    """
    def __init__(self, status: Status):
        self.status = status
        super().__init__(status.message or "Job failed")


class UploadError(JobRelayError):
    """Raised when embedded blobs cannot be uploaded before submission."""


class ComponentServerError(JobRelayError):
    """Raised when a component server call is rejected or unreachable.

    Attributes:
        component_id: Component the call was addressed to
        upstream_status: HTTP status returned by the service (if any)
    """
    def __init__(self, component_id: int, upstream_status: Optional[int], reason: str):
        self.component_id = component_id
        self.upstream_status = upstream_status
        super().__init__(f"Could not connect to component server: {reason}")
