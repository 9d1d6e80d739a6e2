"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Iterable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from toonstudio.core.config import get_settings
from toonstudio.core.logging import setup_logging

logger = setup_logging("main")


async def close_services(services: Iterable[Any]) -> None:
    """Close every service in order; a failing `aclose` does not stop the rest."""
    for service in services:
        try:
            await service.aclose()
        except Exception as exc:
            logger.warning(
                "Failed to close %s",
                type(service).__name__,
                exc_info=True,
                extra={"service": "main", "error_type": type(exc).__name__},
            )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialize services at startup, close HTTP clients at shutdown."""
    settings = get_settings()
    closables = []
    try:
        from toonstudio.services.batch import BatchRegenerationService
        from toonstudio.services.image_utils import ResizeCache
        from toonstudio.services.providers import GeminiImageProvider, SeedreamImageProvider
        from toonstudio.services.storage import FileStore

        file_store = FileStore(
            images_dir=Path(settings.images_dir),
            public_prefix="/images",
            project_id=settings.gcp_project_id,
        )
        gemini = GeminiImageProvider(
            api_key=settings.gemini_api_key,
            timeout_seconds=settings.gemini_timeout_seconds,
            retries=settings.provider_retries,
        )
        seedream = SeedreamImageProvider(
            api_key=settings.seedream_api_key,
            base_url=settings.seedream_api_base_url,
            timeout_seconds=settings.seedream_timeout_seconds,
            retries=settings.provider_retries,
        )
        if not settings.gemini_api_key:
            logger.warning("GEMINI_API_KEY not set; Gemini units will fail")
        if not settings.seedream_api_key:
            logger.warning("SEEDREAM_API_KEY not set; Seedream units will fail")

        batch_service = BatchRegenerationService(
            store=file_store,
            gemini=gemini,
            seedream=seedream,
            resize_cache=ResizeCache(settings.resize_cache_capacity),
            concurrency=settings.provider_concurrency,
            download_timeout_seconds=settings.image_download_timeout_seconds,
        )
        closables = [batch_service, seedream, gemini]
        app.state.file_store = file_store
        app.state.batch_service = batch_service
        logger.info("Services initialized successfully")
    except Exception as exc:
        logger.error(
            "Service initialization failed; running in degraded mode",
            exc_info=True,
            extra={"service": "main", "error_type": type(exc).__name__},
        )
        # Continue without services; endpoints return 503 until fixed

    yield

    await close_services(closables)


app = FastAPI(
    title="Toonstudio Image Regeneration",
    description="Batched webtoon image regeneration with Gemini and Seedream",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://localhost:{settings.frontend_port}"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
from toonstudio.api.regeneration import router as regeneration_router  # noqa: E402

app.include_router(regeneration_router)

# Serve stored images from images_dir at /images
_images_dir = Path(settings.images_dir)
_images_dir.mkdir(parents=True, exist_ok=True)
app.mount("/images", StaticFiles(directory=str(_images_dir)), name="images")


@app.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    Always returns HTTP 200; check `services` for the actual status.
    """
    batch_ok = getattr(request.app.state, "batch_service", None) is not None
    store_ok = getattr(request.app.state, "file_store", None) is not None

    logger.info("Health check requested")
    return {
        "status": "ok",
        "version": app.version,
        "services": {
            "batch_regeneration": "ok" if batch_ok else "unavailable",
            "file_store": "ok" if store_ok else "unavailable",
            "gemini": "configured" if settings.gemini_api_key else "not_configured",
            "seedream": "configured" if settings.seedream_api_key else "not_configured",
        },
    }
