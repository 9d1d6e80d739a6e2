"""Wire models for the batch regeneration and save endpoints.

Field names are camelCase on the wire and snake_case in Python.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from toonstudio.models.files import StoredFile
from toonstudio.models.generation import Provider, SlotError


class WireModel(BaseModel):
    """Base for JSON payloads exchanged with the frontend/coordinator."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BatchUnitRequest(WireModel):
    """One unit of a batch: its prompt, global index and provider."""

    style_prompt: str = Field(..., min_length=1)
    index: int = Field(..., ge=0)
    api_provider: Optional[Provider] = None
    style_id: Optional[str] = None


class BatchRegenerationRequest(WireModel):
    """Request body of POST /api/regenerate-image-batch."""

    file_id: Optional[str] = None
    source_image_data: Optional[str] = None  # base64, used when no file id
    source_mime_type: str = "image/png"
    requests: list[BatchUnitRequest]
    reference_file_ids: list[str] = Field(default_factory=list)
    character_sheet_ids: list[str] = Field(default_factory=list)
    created_by: Optional[str] = None


class BatchUnitResult(WireModel):
    """Result for one unit. Exactly one of (file/image data, error) is meaningful."""

    index: int
    api_provider: Provider
    style_prompt: str
    style_id: Optional[str] = None
    file_id: Optional[str] = None
    file_path: Optional[str] = None
    file_url: Optional[str] = None
    mime_type: Optional[str] = None
    image_data: Optional[str] = None  # base64 fallback when the temp file was not stored
    error: Optional[SlotError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.file_id or self.image_data)


class BatchRegenerationResponse(WireModel):
    """Response body of POST /api/regenerate-image-batch."""

    images: list[BatchUnitResult]


class SaveImageRequest(WireModel):
    """Request body of POST /api/regenerate-image-save.

    Either `file_id` (promote a temporary file) or `image_data` (upload raw
    base64 bytes) must be given.
    """

    file_id: Optional[str] = None
    image_data: Optional[str] = None
    mime_type: str = "image/png"
    process_id: str = Field(..., min_length=1)
    cut_id: Optional[str] = None
    file_name: Optional[str] = None
    description: Optional[str] = None
    prompt: Optional[str] = None
    source_file_id: Optional[str] = None
    created_by: Optional[str] = None


class SaveImageResponse(WireModel):
    """Response body of POST /api/regenerate-image-save."""

    file: StoredFile
