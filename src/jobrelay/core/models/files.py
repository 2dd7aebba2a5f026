from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BlobFile(BaseModel):
    """A named binary payload embedded in job input data."""

    content: bytes
    name: Optional[str] = None
    mime_type: Optional[str] = None


class FileData(BaseModel):
    """Remote handle substituted for an uploaded blob in the outgoing payload."""

    path: str
    orig_name: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=lambda: {"_type": "gradio.FileData"})


class UploadResponse(BaseModel):
    files: List[str] = Field(default_factory=list)
    error: Optional[str] = None
