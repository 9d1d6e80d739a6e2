"""Image regeneration API router (batch, save, history)."""
import base64
import binascii
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from toonstudio.core.errors import MissingSourceError, PersistenceError
from toonstudio.models.batch import (
    BatchRegenerationRequest,
    BatchRegenerationResponse,
    SaveImageRequest,
    SaveImageResponse,
)
from toonstudio.models.files import HistoryPage, StoredFile
from toonstudio.services.batch import BatchRegenerationService
from toonstudio.services.storage import FileStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["regeneration"])


def get_batch_service(request: Request) -> BatchRegenerationService:
    """FastAPI dependency: retrieve BatchRegenerationService from app.state.

    Returns HTTP 503 if the service was not initialized at startup.
    """
    svc: BatchRegenerationService | None = getattr(request.app.state, "batch_service", None)
    if svc is None:
        raise HTTPException(
            status_code=503,
            detail="Image generation unavailable. Service not initialized.",
        )
    return svc


def get_file_store(request: Request) -> FileStore:
    """FastAPI dependency: retrieve FileStore from app.state (503 if missing)."""
    store: FileStore | None = getattr(request.app.state, "file_store", None)
    if store is None:
        raise HTTPException(
            status_code=503,
            detail="File storage unavailable. Service not initialized.",
        )
    return store


@router.post("/regenerate-image-batch", response_model=BatchRegenerationResponse, response_model_by_alias=True)
async def regenerate_image_batch(
    body: BatchRegenerationRequest,
    service: BatchRegenerationService = Depends(get_batch_service),
) -> BatchRegenerationResponse:
    """Generate every unit of one batch.

    Per-unit provider failures are reported inside the response, never as an
    HTTP error.

    Raises:
        HTTPException 400: No units, no source, or the source is not an image.
        HTTPException 404: Source file not found.
        HTTPException 500: Unexpected failure.
    """
    if not body.requests:
        raise HTTPException(status_code=400, detail="At least one generation request is required")

    try:
        return await service.process_batch(body)
    except MissingSourceError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Source file not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "regenerate_image_batch failed",
            exc_info=True,
            extra={"service": "RegenerationRouter", "error_type": type(exc).__name__},
        )
        raise HTTPException(status_code=500, detail="Batch regeneration failed") from exc


@router.post("/regenerate-image-save", response_model=SaveImageResponse, response_model_by_alias=True)
async def regenerate_image_save(
    body: SaveImageRequest,
    store: FileStore = Depends(get_file_store),
) -> SaveImageResponse:
    """Save a regenerated image to a process.

    With `fileId` the temporary file is promoted in place; otherwise the
    base64 `imageData` is stored as a new permanent file.

    Raises:
        HTTPException 400: Nothing to save, bad image data, unknown cut, or the
            file is already permanent.
        HTTPException 404: Temporary file not found.
        HTTPException 500: Storage failure.
    """
    try:
        if body.file_id:
            saved = store.promote_temp_file(
                body.file_id,
                process_id=body.process_id,
                file_name=body.file_name,
                description=body.description,
            )
        elif body.image_data:
            saved = _save_upload(store, body)
        else:
            raise HTTPException(status_code=400, detail="Either fileId or imageData is required")
    except HTTPException:
        raise
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "regenerate_image_save failed",
            exc_info=True,
            extra={"service": "RegenerationRouter", "error_type": type(exc).__name__},
        )
        detail = exc.message if isinstance(exc, PersistenceError) else "Failed to save image"
        raise HTTPException(status_code=500, detail=detail) from exc

    return SaveImageResponse(file=saved)


def _save_upload(store: FileStore, body: SaveImageRequest) -> StoredFile:
    try:
        data = base64.b64decode(body.image_data or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="imageData is not valid base64") from exc
    if not data:
        raise HTTPException(status_code=400, detail="imageData is empty")

    cut_id = body.cut_id
    if not cut_id and body.source_file_id:
        cut_id = store.get_file(body.source_file_id).cut_id
    if not cut_id:
        raise HTTPException(status_code=400, detail="cutId or sourceFileId is required for uploads")

    return store.save_uploaded_image(
        data,
        body.mime_type,
        cut_id=cut_id,
        process_id=body.process_id,
        file_name=body.file_name,
        description=body.description,
        prompt=body.prompt,
        source_file_id=body.source_file_id,
        created_by=body.created_by,
    )


@router.get("/regenerate-image-history", response_model=HistoryPage)
async def regenerate_image_history(
    source_file_id: Optional[str] = Query(None, alias="sourceFileId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    before: Optional[datetime] = Query(None),
    store: FileStore = Depends(get_file_store),
) -> HistoryPage:
    """List AI generated files, newest first.

    Args:
        source_file_id: Only results regenerated from this file.
        user_id: Only results created by this user.
        limit: Maximum number of files to return (default 50).
        offset: Number of files to skip.
        before: Only files created before this ISO 8601 time.
    """
    try:
        return store.list_history(
            source_file_id=source_file_id,
            user_id=user_id,
            limit=limit,
            offset=offset,
            before=before,
        )
    except Exception as exc:
        logger.error(
            "regenerate_image_history failed",
            exc_info=True,
            extra={"service": "RegenerationRouter", "error_type": type(exc).__name__},
        )
        raise HTTPException(status_code=500, detail="Failed to load history") from exc
