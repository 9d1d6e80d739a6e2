"""HTTP transport used by the regeneration coordinator."""
import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from toonstudio.core.errors import BatchTransportError, PersistenceError
from toonstudio.models.batch import (
    BatchRegenerationRequest,
    BatchRegenerationResponse,
    SaveImageRequest,
    SaveImageResponse,
)

logger = logging.getLogger(__name__)

BATCH_PATH = "/api/regenerate-image-batch"
SAVE_PATH = "/api/regenerate-image-save"

# Batch calls wait for several provider round trips (each up to 120s + retries).
DEFAULT_BATCH_TIMEOUT_SECONDS = 600.0
DEFAULT_SAVE_TIMEOUT_SECONDS = 60.0


class RegenerationTransport(Protocol):
    """Collaborator interface of the coordinator."""

    async def regenerate_batch(self, request: BatchRegenerationRequest) -> BatchRegenerationResponse:
        ...

    async def save_image(self, request: SaveImageRequest) -> SaveImageResponse:
        ...


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if detail:
            return str(detail)
    return str(body)[:200]


class HttpRegenerationTransport:
    """Calls the batch and save endpoints of the backend with httpx.

    Response bodies are decoded into the wire models here, so callers only
    ever see typed results or one of BatchTransportError / PersistenceError.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        batch_timeout_seconds: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
        save_timeout_seconds: float = DEFAULT_SAVE_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client if client is not None else httpx.AsyncClient()
        self.batch_timeout_seconds = batch_timeout_seconds
        self.save_timeout_seconds = save_timeout_seconds

    async def aclose(self) -> None:
        await self._client.aclose()

    async def regenerate_batch(self, request: BatchRegenerationRequest) -> BatchRegenerationResponse:
        try:
            response = await self._client.post(
                f"{self.base_url}{BATCH_PATH}",
                json=request.model_dump(mode="json", by_alias=True, exclude_none=True),
                timeout=self.batch_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise BatchTransportError(f"Batch request failed: {exc}") from exc

        if response.is_error:
            raise BatchTransportError(
                f"Batch request failed ({response.status_code}): {_error_detail(response)}",
                status=response.status_code,
            )
        try:
            return BatchRegenerationResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise BatchTransportError(f"Malformed batch response: {exc}", status=response.status_code) from exc

    async def save_image(self, request: SaveImageRequest) -> SaveImageResponse:
        try:
            response = await self._client.post(
                f"{self.base_url}{SAVE_PATH}",
                json=request.model_dump(mode="json", by_alias=True, exclude_none=True),
                timeout=self.save_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Save request failed: {exc}") from exc

        if response.is_error:
            raise PersistenceError(
                f"Save request failed ({response.status_code}): {_error_detail(response)}",
                status=response.status_code,
            )
        try:
            return SaveImageResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise PersistenceError(f"Malformed save response: {exc}", status=response.status_code) from exc
