from pydantic import BaseModel
from typing import Optional


class AdditionalInfo(BaseModel):
    session_hash: Optional[str] = None


class ServiceErrorResponse(BaseModel):
    type: str = "about:blank"
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    additional: Optional[AdditionalInfo] = None

    def with_session_hash(self, session_hash: str) -> "ServiceErrorResponse":
        """Return copy that includes the given session correlation id."""
        info = self.additional.model_copy() if self.additional else AdditionalInfo()
        info.session_hash = session_hash
        return self.model_copy(update={"additional": info})
