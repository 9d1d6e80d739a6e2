"""BatchRegenerationService: server side of one regeneration batch."""
import asyncio
import base64
import mimetypes
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

import httpx

from toonstudio.core.errors import MissingSourceError
from toonstudio.core.logging import setup_logging
from toonstudio.models.batch import (
    BatchRegenerationRequest,
    BatchRegenerationResponse,
    BatchUnitRequest,
    BatchUnitResult,
)
from toonstudio.models.files import ImageAsset, StoredFile
from toonstudio.models.generation import Provider
from toonstudio.services.image_utils import (
    ResizeCache,
    calculate_seedream_size,
    closest_aspect_ratio,
    image_dimensions,
    resize_if_needed,
)
from toonstudio.services.providers import GeneratedImage, categorize_error

if TYPE_CHECKING:
    from toonstudio.services.providers import GeminiImageProvider, SeedreamImageProvider
    from toonstudio.services.storage import FileStore

logger = setup_logging("batch")

DEFAULT_PROVIDER = Provider.seedream


def _data_url(asset: ImageAsset) -> str:
    return f"data:{asset.mime_type};base64,{base64.b64encode(asset.data).decode('ascii')}"


class _BatchContext:
    """Inputs shared by every unit of one batch."""

    def __init__(
        self,
        source: ImageAsset,
        source_file: Optional[StoredFile],
        references: list[ImageAsset],
        character_sheets: list[ImageAsset],
        created_by: Optional[str],
        width: int,
        height: int,
    ) -> None:
        self.source = source
        self.source_file = source_file
        self.references = references
        self.character_sheets = character_sheets
        self.created_by = created_by
        self.width = width
        self.height = height


class BatchRegenerationService:
    """Generates every unit of a batch request and stores the results.

    Responsibilities:
    1. Resolve the source image (file record or inline bytes), references and
       character sheets
    2. Group units by provider and run both groups concurrently
    3. Cap in-flight calls per provider at `concurrency`
    4. Store each generated image as a temporary file
    5. Return exactly one result per unit, keyed by the unit's index

    Provider failures never escape: they become per-unit error results.
    """

    def __init__(
        self,
        store: "FileStore",
        gemini: "GeminiImageProvider",
        seedream: "SeedreamImageProvider",
        resize_cache: Optional[ResizeCache] = None,
        concurrency: int = 2,
        download_timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.gemini = gemini
        self.seedream = seedream
        self.resize_cache = resize_cache if resize_cache is not None else ResizeCache()
        self.concurrency = max(1, concurrency)
        self.download_timeout_seconds = download_timeout_seconds
        self._http = http_client

    async def process_batch(self, request: BatchRegenerationRequest) -> BatchRegenerationResponse:
        """Run one batch.

        Raises:
            ValueError: No units requested, or the source is not an image.
            MissingSourceError: Neither a file id nor inline image data given.
            FileNotFoundError: The source file does not exist.
        """
        if not request.requests:
            raise ValueError("At least one generation request is required")

        started = time.monotonic()
        units = [
            unit if unit.api_provider is not None else unit.model_copy(update={"api_provider": DEFAULT_PROVIDER})
            for unit in request.requests
        ]
        logger.info(
            "Batch started: %d units, %d references, %d sheets",
            len(units),
            len(request.reference_file_ids),
            len(request.character_sheet_ids),
            extra={"file_id": request.file_id},
        )

        context = await self._load_context(request)

        gemini_units = [u for u in units if u.api_provider is Provider.gemini]
        seedream_units = [u for u in units if u.api_provider is Provider.seedream]

        gemini_results, seedream_results = await asyncio.gather(
            self._run_group(Provider.gemini, gemini_units, context, self._prepare_gemini),
            self._run_group(Provider.seedream, seedream_units, context, self._prepare_seedream),
        )
        results = gemini_results + seedream_results

        failed = sum(1 for r in results if r.error is not None)
        logger.info(
            "Batch finished in %.1fs: %d succeeded, %d failed (gemini=%d, seedream=%d)",
            time.monotonic() - started,
            len(results) - failed,
            failed,
            len(gemini_units),
            len(seedream_units),
            extra={"file_id": request.file_id},
        )
        return BatchRegenerationResponse(images=results)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def _load_context(self, request: BatchRegenerationRequest) -> _BatchContext:
        source_file: Optional[StoredFile] = None
        if request.file_id:
            source_file = self.store.load_source_file(request.file_id)
            source = await self.download(source_file.file_path)
        elif request.source_image_data:
            source = ImageAsset(
                data=base64.b64decode(request.source_image_data),
                mime_type=request.source_mime_type,
            )
        else:
            raise MissingSourceError("A source file id or image data is required")

        references = await self._download_all(self.store.load_reference_files(request.reference_file_ids))
        sheets = await self._download_all(self.store.load_character_sheets(request.character_sheet_ids))
        width, height = await asyncio.to_thread(image_dimensions, source.data)
        return _BatchContext(source, source_file, references, sheets, request.created_by, width, height)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.download_timeout_seconds)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    async def download(self, file_path: str) -> ImageAsset:
        """Fetch image bytes from local storage or over HTTP."""
        local = self.store.local_path(file_path)
        if local is not None:
            mime_type = mimetypes.guess_type(local.name)[0] or "image/png"
            return ImageAsset(data=local.read_bytes(), mime_type=mime_type)

        response = await self._client().get(file_path, timeout=self.download_timeout_seconds)
        response.raise_for_status()
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return ImageAsset(data=response.content, mime_type=mime_type)

    async def _download_all(self, paths: list[str]) -> list[ImageAsset]:
        assets: list[ImageAsset] = []
        for path in paths:
            try:
                assets.append(await self.download(path))
            except (httpx.HTTPError, OSError) as exc:
                logger.warning("Skipping image %s: %s", path, exc)
        return assets

    # ------------------------------------------------------------------
    # Provider groups
    # ------------------------------------------------------------------

    async def _prepare_gemini(self, context: _BatchContext) -> Callable[[BatchUnitRequest], Awaitable[GeneratedImage]]:
        aspect_ratio = closest_aspect_ratio(context.width, context.height, Provider.gemini)

        async def generate(unit: BatchUnitRequest) -> GeneratedImage:
            contents = self.gemini.build_contents(
                unit.style_prompt,
                context.source,
                context.references,
                context.character_sheets,
            )
            return await self.gemini.generate(contents, aspect_ratio=aspect_ratio)

        return generate

    async def _prepare_seedream(self, context: _BatchContext) -> Callable[[BatchUnitRequest], Awaitable[GeneratedImage]]:
        """Resize the source and reference images once for the whole group.

        Pillow work runs in worker threads so the Gemini group and other
        requests keep running meanwhile.
        """
        resized = await asyncio.to_thread(resize_if_needed, context.source.data)
        source = ImageAsset(
            data=resized.data,
            mime_type=resized.mime_type if resized.resized else context.source.mime_type,
        )
        images = [_data_url(source)]
        for prefix, assets in (("reference", context.references), ("sheet", context.character_sheets)):
            for asset in assets:
                result = await asyncio.to_thread(self.resize_cache.get_or_resize, asset.data, prefix)
                images.append(
                    _data_url(asset if not result.resized else ImageAsset(data=result.data, mime_type=result.mime_type))
                )
        size = calculate_seedream_size(context.width, context.height)

        async def generate(unit: BatchUnitRequest) -> GeneratedImage:
            return await self.seedream.generate(unit.style_prompt, images, size=size)

        return generate

    async def _run_group(
        self,
        provider: Provider,
        units: list[BatchUnitRequest],
        context: _BatchContext,
        prepare: Callable[[_BatchContext], Awaitable[Callable[[BatchUnitRequest], Awaitable[GeneratedImage]]]],
    ) -> list[BatchUnitResult]:
        if not units:
            return []

        try:
            generate = await prepare(context)
        except Exception as exc:
            logger.error(
                "%s group preparation failed",
                provider.value,
                exc_info=True,
                extra={"provider": provider.value},
            )
            return [self._error_result(unit, provider, exc) for unit in units]

        results: list[BatchUnitResult] = []
        for start in range(0, len(units), self.concurrency):
            chunk = units[start : start + self.concurrency]
            outcomes = await asyncio.gather(*(generate(unit) for unit in chunk), return_exceptions=True)
            for unit, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    results.append(self._error_result(unit, provider, outcome))
                else:
                    results.append(self._store_result(unit, provider, outcome, context))
        return results

    def _error_result(self, unit: BatchUnitRequest, provider: Provider, error: BaseException) -> BatchUnitResult:
        slot_error = categorize_error(error, provider)
        logger.error(
            "Unit failed: %s: %s",
            type(error).__name__,
            error,
            extra={
                "index": unit.index,
                "provider": provider.value,
                "error_code": slot_error.code,
                "error_type": type(error).__name__,
            },
        )
        return BatchUnitResult(
            index=unit.index,
            api_provider=provider,
            style_prompt=unit.style_prompt,
            style_id=unit.style_id,
            error=slot_error,
        )

    def _store_result(
        self,
        unit: BatchUnitRequest,
        provider: Provider,
        image: GeneratedImage,
        context: _BatchContext,
    ) -> BatchUnitResult:
        """Store the image as a temporary file, falling back to inline base64."""
        inline = BatchUnitResult(
            index=unit.index,
            api_provider=provider,
            style_prompt=unit.style_prompt,
            style_id=unit.style_id,
            mime_type=image.mime_type,
            image_data=base64.b64encode(image.data).decode("ascii"),
        )
        if context.source_file is None:
            return inline

        try:
            saved = self.store.save_temp_file(
                image.data,
                image.mime_type,
                context.source_file,
                prompt=unit.style_prompt,
                created_by=context.created_by,
                style_id=unit.style_id,
            )
        except Exception:
            logger.warning(
                "Temporary file save failed; returning inline image data",
                exc_info=True,
                extra={"index": unit.index, "provider": provider.value},
            )
            return inline

        return BatchUnitResult(
            index=unit.index,
            api_provider=provider,
            style_prompt=unit.style_prompt,
            style_id=unit.style_id,
            file_id=saved.id,
            file_path=saved.storage_path,
            file_url=saved.file_path,
            mime_type=image.mime_type,
        )
