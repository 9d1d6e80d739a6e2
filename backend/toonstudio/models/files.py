"""File record models stored in the Firestore `files` collection."""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredFile(BaseModel):
    """A file attached to a cut and a process (pipeline stage).

    Regenerated images start as temporary files (`is_temp=True`) and become
    permanent when the user saves them.
    """

    id: str
    cut_id: str
    process_id: str
    file_name: str
    file_path: str  # public URL
    storage_path: str
    file_size: int = 0
    file_type: str = "image"
    mime_type: str = "image/png"
    description: Optional[str] = None
    prompt: Optional[str] = None
    created_by: Optional[str] = None
    source_file_id: Optional[str] = None
    is_temp: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class ImageAsset(BaseModel):
    """Downloaded image bytes with their MIME type."""

    data: bytes
    mime_type: str = "image/png"


class HistoryPage(BaseModel):
    """One page of AI generated files plus the total matching the filters."""

    history: list[StoredFile] = Field(default_factory=list)
    total: int = 0
