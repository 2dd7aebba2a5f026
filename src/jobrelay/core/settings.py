# Logging adapter for library-wide logging
from jobrelay.adapters.logging_adapter import LoggingAdapter

from pydantic import SecretStr
from pydantic_settings import BaseSettings
from rich import print

from jobrelay.core.interfaces.logging import LoggingPort

# using pydantic_settings to manage environment variables
# and do automatic type casting in a central place
class JobRelaySettings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore"
    }
    JOBRELAY_LOG_LEVEL: str = "INFO"
    JOBRELAY_TOKEN: SecretStr | None = None
    # Per-request HTTP timeouts (seconds)
    JOBRELAY_HTTP_TIMEOUT: float = 10.0
    JOBRELAY_HTTP_CONNECT_TIMEOUT: float = 5.0
    JOBRELAY_CONFIG_FETCH_ATTEMPTS: int = 3
    # What to do with wire messages of an unknown kind: ignore | log | error
    JOBRELAY_UNKNOWN_MESSAGE_POLICY: str = "ignore"

    def print_settings(self, logger: LoggingPort):
        """Prints the settings for debugging purposes"""
        logger.info("jobrelay settings:")
        print(self)


app_settings = JobRelaySettings()

logger = LoggingAdapter("jobrelay", app_settings.JOBRELAY_LOG_LEVEL)
