"""Image provider clients (Gemini, Seedream) with timeout and retry handling."""
import asyncio
import base64
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from pydantic import BaseModel

from toonstudio.core.errors import ProviderCallError
from toonstudio.core.logging import setup_logging
from toonstudio.models.files import ImageAsset
from toonstudio.models.generation import Provider, SlotError

logger = setup_logging("providers")

T = TypeVar("T")

GEMINI_MODEL = "gemini-3-pro-image-preview"
SEEDREAM_MODEL = "seedream-4-5-251128"

MAX_RETRY_DELAY_SECONDS = 10.0

_PROVIDER_LABELS: dict[Provider, str] = {
    Provider.gemini: "Gemini",
    Provider.seedream: "Seedream",
}


class GeneratedImage(BaseModel):
    """Image returned by a provider."""

    data: bytes
    mime_type: str
    provider: Provider
    model: str
    elapsed_seconds: float


# ---------------------------------------------------------------------------
# Retry helpers
# ---------------------------------------------------------------------------


def retry_delay(attempt: int, base: float = 1.0) -> float:
    """Exponential backoff: base * 2**attempt, capped at 10 seconds."""
    return min(base * (2**attempt), MAX_RETRY_DELAY_SECONDS)


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return "timeout" in str(error).lower()


def is_retryable_error(error: BaseException) -> bool:
    """Timeouts, dropped connections and 5xx answers are worth another attempt."""
    if is_timeout_error(error):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    if "ECONNRESET" in str(error):
        return True
    status = getattr(error, "status", None)
    return isinstance(status, int) and status >= 500


def is_retryable_gemini_error(error: BaseException) -> bool:
    return is_retryable_error(error) or "INTERNAL" in str(error)


def is_retryable_seedream_error(error: BaseException) -> bool:
    return is_retryable_error(error) or getattr(error, "status", None) == 429


async def retry_async(
    task: Callable[[int], Awaitable[T]],
    retries: int,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `task(attempt)` up to `retries + 1` times.

    Non-retryable errors and the error of the last attempt propagate.
    """
    attempt = 0
    while True:
        try:
            return await task(attempt)
        except Exception as exc:
            if attempt >= retries or not is_retryable(exc):
                raise
            delay = retry_delay(attempt, base_delay)
            logger.warning(
                "Retrying after %s (attempt %d/%d, wait %.1fs)",
                type(exc).__name__,
                attempt + 1,
                retries,
                delay,
            )
            await sleep(delay)
            attempt += 1


def categorize_error(error: BaseException, provider: Provider) -> SlotError:
    """Map a provider failure to a stable error code and user-facing message."""
    prefix = provider.value.upper()
    label = _PROVIDER_LABELS[provider]

    if is_timeout_error(error):
        return SlotError(
            code=f"{prefix}_TIMEOUT",
            message=f"{label} API request timed out. Please try again shortly.",
        )

    status = getattr(error, "status", None)
    if status == 503:
        if "overload" in str(error).lower():
            return SlotError(
                code=f"{prefix}_OVERLOAD",
                message=f"{label} is currently overloaded. Please try again shortly.",
            )
        return SlotError(
            code=f"{prefix}_SERVICE_UNAVAILABLE",
            message=f"{label} is unavailable. Please try again shortly.",
        )
    if status == 429:
        return SlotError(
            code=f"{prefix}_RATE_LIMIT",
            message="Too many requests. Please try again shortly.",
        )

    return SlotError(
        code=f"{prefix}_ERROR",
        message="An error occurred while generating the image. Please try again shortly.",
    )


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiImageProvider:
    """Gemini 3 Pro Image through the google-genai SDK."""

    provider = Provider.gemini

    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_MODEL,
        timeout_seconds: float = 120.0,
        retries: int = 3,
        client: Optional[Any] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise ProviderCallError("GEMINI_API_KEY is not configured")
            from google import genai

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aio.aclose()

    @staticmethod
    def build_contents(
        prompt: str,
        source: ImageAsset,
        references: list[ImageAsset],
        character_sheets: list[ImageAsset],
    ) -> list[Any]:
        """Prompt first, then the source image, then sheets (or references).

        Character sheets take precedence: when present, reference images are
        not sent.
        """
        from google.genai import types

        extras = character_sheets if character_sheets else references
        parts = [types.Part(text=prompt), types.Part.from_bytes(data=source.data, mime_type=source.mime_type)]
        for asset in extras:
            parts.append(types.Part.from_bytes(data=asset.data, mime_type=asset.mime_type))
        return [types.Content(role="user", parts=parts)]

    @staticmethod
    def build_config(aspect_ratio: Optional[str]) -> Any:
        from google.genai import types

        image_config = types.ImageConfig(image_size="1K", aspect_ratio=aspect_ratio)
        return types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            image_config=image_config,
            temperature=1.0,
            top_p=0.95,
            top_k=40,
            max_output_tokens=32768,
        )

    async def generate(self, contents: list[Any], aspect_ratio: Optional[str] = None) -> GeneratedImage:
        """Generate one image, retrying transient failures.

        Raises:
            ProviderCallError: On a missing key, an API error or no image in
                the response.
        """
        started = time.monotonic()
        client = self._get_client()
        config = self.build_config(aspect_ratio)

        async def attempt(n: int) -> tuple[bytes, str]:
            if n > 0:
                logger.info("gemini retry %d/%d", n, self.retries, extra={"provider": "gemini"})
            try:
                response = await asyncio.wait_for(
                    client.aio.models.generate_content(
                        model=self.model,
                        contents=contents,
                        config=config,
                    ),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise ProviderCallError(
                    f"Gemini API timeout after {self.timeout_seconds}s"
                ) from exc
            except ProviderCallError:
                raise
            except Exception as exc:
                status = getattr(exc, "code", None)
                raise ProviderCallError(
                    f"Gemini API error: {exc}",
                    status=status if isinstance(status, int) else None,
                ) from exc
            return self._extract_image(response)

        data, mime_type = await retry_async(attempt, self.retries, is_retryable_gemini_error)
        elapsed = time.monotonic() - started
        logger.info(
            "gemini success: %d bytes in %.1fs",
            len(data),
            elapsed,
            extra={"provider": "gemini"},
        )
        return GeneratedImage(
            data=data,
            mime_type=mime_type,
            provider=Provider.gemini,
            model=self.model,
            elapsed_seconds=elapsed,
        )

    @staticmethod
    def _extract_image(response: Any) -> tuple[bytes, str]:
        candidates = getattr(response, "candidates", None) or []
        if not candidates or candidates[0].content is None:
            raise ProviderCallError("No candidates returned by Gemini Image API")

        for part in candidates[0].content.parts or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return bytes(inline.data), inline.mime_type or "image/png"

        raise ProviderCallError("No image data returned by Gemini Image API")


# ---------------------------------------------------------------------------
# Seedream
# ---------------------------------------------------------------------------


class SeedreamImageProvider:
    """Seedream 4.5 through the BytePlus Ark images/generations endpoint."""

    provider = Provider.seedream

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str = SEEDREAM_MODEL,
        timeout_seconds: float = 60.0,
        retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = f"{base_url.rstrip('/')}/images/generations"
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self._http = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    async def generate(self, prompt: str, images: list[str], size: str = "2K") -> GeneratedImage:
        """Generate one image from a prompt and data-URL input images.

        Raises:
            ProviderCallError: On a missing key, a non-2xx answer or an empty
                response.
        """
        if not self.api_key:
            raise ProviderCallError("SEEDREAM_API_KEY is not configured")

        started = time.monotonic()
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "response_format": "url",
            "size": size,
            "stream": False,
            "watermark": True,
        }
        if images:
            body["image"] = images

        async def attempt(n: int) -> tuple[bytes, str]:
            if n > 0:
                logger.info("seedream retry %d/%d", n, self.retries, extra={"provider": "seedream"})
            response = await self._client().post(
                self.endpoint,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
            if response.status_code >= 400:
                raise ProviderCallError(
                    f"Seedream API error: {response.status_code} {response.text[:500]}",
                    status=response.status_code,
                )
            try:
                payload = response.json()
            except ValueError:
                payload = None
            items = (payload or {}).get("data") or []
            if not items:
                raise ProviderCallError("Seedream response contained no image data")
            item = items[0]
            if item.get("url"):
                return await self._download(item["url"])
            if item.get("b64_json"):
                return base64.b64decode(item["b64_json"]), "image/png"
            raise ProviderCallError("Seedream response contained no image data")

        data, mime_type = await retry_async(attempt, self.retries, is_retryable_seedream_error)
        elapsed = time.monotonic() - started
        logger.info(
            "seedream success: %d bytes in %.1fs",
            len(data),
            elapsed,
            extra={"provider": "seedream"},
        )
        return GeneratedImage(
            data=data,
            mime_type=mime_type,
            provider=Provider.seedream,
            model=self.model,
            elapsed_seconds=elapsed,
        )

    async def _download(self, url: str) -> tuple[bytes, str]:
        response = await self._client().get(url, timeout=self.timeout_seconds)
        if response.status_code >= 400:
            raise ProviderCallError(
                f"Seedream image download failed: {response.status_code}",
                status=response.status_code,
            )
        mime_type = response.headers.get("content-type", "image/png").split(";")[0]
        return response.content, mime_type
