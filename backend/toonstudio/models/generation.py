"""Client-side regeneration data models (requests, slots, persistence results)."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Provider(str, Enum):
    """Image generation backends."""

    gemini = "gemini"
    seedream = "seedream"


class ProviderMode(str, Enum):
    """Provider selector of a request. `auto` alternates providers by unit index."""

    auto = "auto"
    gemini = "gemini"
    seedream = "seedream"


class SlotState(str, Enum):
    """Lifecycle of one generation unit: pending -> completed | failed."""

    pending = "pending"
    completed = "completed"
    failed = "failed"


class SlotError(BaseModel):
    """Terminal error attached to a failed slot."""

    code: str
    message: str


class SlotResult(BaseModel):
    """Generated artifact of a completed slot.

    `file_id` is set when the server stored the image as a temporary file;
    otherwise `image_data` holds the raw bytes returned inline.
    """

    file_id: Optional[str] = None
    file_url: Optional[str] = None
    image_data: Optional[bytes] = None
    mime_type: str = "image/png"


class GenerationRequest(BaseModel):
    """One user "regenerate" action. Immutable once dispatched."""

    model_config = ConfigDict(frozen=True)

    prompt: str = Field(..., min_length=1)
    count: int = Field(..., ge=1)
    provider: ProviderMode = ProviderMode.auto
    source_file_id: Optional[str] = None
    source_image: Optional[bytes] = None
    source_mime_type: str = "image/png"
    reference_image_ids: list[str] = Field(default_factory=list)
    character_sheet_ids: list[str] = Field(default_factory=list)
    style_id: Optional[str] = None
    chain_from_latest: bool = False
    requested_by: Optional[str] = None


class GenerationSlot(BaseModel):
    """Placeholder for one requested output, mutated in place on reconciliation."""

    id: str
    index: int
    batch_index: int
    state: SlotState = SlotState.pending
    result: Optional[SlotResult] = None
    error: Optional[SlotError] = None
    used_prompt: str
    provider: Provider

    @property
    def is_terminal(self) -> bool:
        return self.state is not SlotState.pending


class PersistResult(BaseModel):
    """Aggregate outcome of persisting the current selection."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, SlotError] = Field(default_factory=dict)
