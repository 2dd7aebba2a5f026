"""Configuration models for core engine components.

Consolidates client behaviour settings into one immutable object so the
composition root can inject them and tests can build custom instances.
"""

from typing import Literal
from pydantic import BaseModel, Field

UnknownMessagePolicy = Literal["ignore", "log", "error"]


class ClientConfig(BaseModel):
    """Configuration for ClientSession and the job sessions it creates.

    Attributes:
        unknown_message_policy: Handling of wire messages with an unrecognized kind
        config_fetch_attempts: Attempts for the (idempotent) service descriptor fetch
        config_fetch_base_wait: Base wait for exponential backoff between descriptor fetches
        config_fetch_max_wait: Maximum wait between descriptor fetches
        upload_chunk_size: Number of files sent per multipart upload request
    """

    unknown_message_policy: UnknownMessagePolicy = Field(
        default="ignore",
        description=(
            "'ignore' drops unknown message kinds, 'log' drops them with a warning, "
            "'error' fails the job"
        ),
    )

    config_fetch_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts when fetching the service descriptor",
    )

    config_fetch_base_wait: float = Field(
        default=0.2,
        gt=0,
        description="Base wait time in seconds for exponential backoff between descriptor fetches",
    )

    config_fetch_max_wait: float = Field(
        default=2.0,
        gt=0,
        description="Maximum wait time in seconds between descriptor fetch attempts",
    )

    upload_chunk_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of files per upload request",
    )

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }

    @classmethod
    def from_app_settings(cls, settings) -> "ClientConfig":
        """Factory method to construct config from a JobRelaySettings instance."""
        return cls(
            unknown_message_policy=settings.JOBRELAY_UNKNOWN_MESSAGE_POLICY,
            config_fetch_attempts=settings.JOBRELAY_CONFIG_FETCH_ATTEMPTS,
        )
