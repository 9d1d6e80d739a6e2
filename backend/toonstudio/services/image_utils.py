"""Image sizing helpers for provider requests (Pillow)."""
import hashlib
import io
import logging
import math
import threading
from collections import OrderedDict
from typing import Optional

from PIL import Image
from pydantic import BaseModel

from toonstudio.models.generation import Provider

logger = logging.getLogger(__name__)

SEEDREAM_MAX_IMAGE_BYTES = 10 * 1024 * 1024
SEEDREAM_MAX_PIXELS = 36_000_000
SEEDREAM_MIN_PIXELS = 3_686_400

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080

GEMINI_ASPECT_RATIOS = (
    "21:9", "16:9", "4:3", "3:2",
    "1:1",
    "9:16", "3:4", "2:3",
    "5:4", "4:5",
)

SEEDREAM_ASPECT_RATIOS = (
    "21:9", "16:9", "4:3", "3:2",
    "1:1",
    "9:16", "3:4", "2:3",
)

MIME_EXTENSIONS: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class ResizeResult(BaseModel):
    """Outcome of `resize_if_needed`."""

    data: bytes
    mime_type: str
    resized: bool


def extension_for_mime(mime_type: str) -> str:
    """Map a MIME type to a file extension, defaulting to .png."""
    return MIME_EXTENSIONS.get(mime_type, ".png")


def probe_dimensions(data: bytes) -> Optional[tuple[int, int]]:
    """Return (width, height), or None when Pillow cannot read the data."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.width, img.height
    except Exception as exc:
        logger.warning("Failed to read image dimensions: %s", exc)
        return None


def image_dimensions(data: bytes) -> tuple[int, int]:
    """Return (width, height); falls back to 1920x1080 for unreadable data."""
    return probe_dimensions(data) or (DEFAULT_WIDTH, DEFAULT_HEIGHT)


def closest_aspect_ratio(width: int, height: int, provider: Provider) -> str:
    """Pick the provider-supported ratio closest to width/height."""
    supported = GEMINI_ASPECT_RATIOS if provider is Provider.gemini else SEEDREAM_ASPECT_RATIOS
    original = width / height
    closest = "1:1"
    best = math.inf
    for ratio in supported:
        w, h = (int(part) for part in ratio.split(":"))
        difference = abs(original - w / h)
        if difference < best:
            best = difference
            closest = ratio
    return closest


def calculate_seedream_size(width: int, height: int) -> str:
    """Compute the Seedream `size` parameter ("WxH") for a source image.

    The long edge is 2048, clamped to 1280x720 .. 4096x4096, both sides are
    multiples of 8, and the area is at least 3,686,400 pixels.
    """
    ratio = width / height
    base = 2048
    min_width, min_height = 1280, 720
    max_width = max_height = 4096

    if ratio >= 1:
        target_w = base
        target_h = round(base / ratio)
    else:
        target_h = base
        target_w = round(base * ratio)

    if target_w < min_width:
        target_w = min_width
        target_h = round(min_width / ratio)
    if target_h < min_height:
        target_h = min_height
        target_w = round(min_height * ratio)
    if target_w > max_width:
        target_w = max_width
        target_h = round(max_width / ratio)
    if target_h > max_height:
        target_h = max_height
        target_w = round(max_height * ratio)

    target_w = round(target_w / 8) * 8
    target_h = round(target_h / 8) * 8

    area = target_w * target_h
    if area < SEEDREAM_MIN_PIXELS:
        scale = math.sqrt(SEEDREAM_MIN_PIXELS / area)
        target_w = min(math.ceil(target_w * scale / 8) * 8, max_width)
        target_h = min(math.ceil(target_h * scale / 8) * 8, max_height)

    return f"{target_w}x{target_h}"


def _encode_jpeg(img: Image.Image, size: tuple[int, int], quality: int) -> bytes:
    copy = img.convert("RGB")
    copy.thumbnail(size, Image.Resampling.LANCZOS)
    output = io.BytesIO()
    copy.save(output, format="JPEG", quality=quality)
    return output.getvalue()


def resize_if_needed(
    data: bytes,
    max_bytes: int = SEEDREAM_MAX_IMAGE_BYTES,
    max_pixels: int = SEEDREAM_MAX_PIXELS,
) -> ResizeResult:
    """Shrink an image until it fits the Seedream upload limits.

    Images already within both limits are returned untouched. Otherwise the
    image is scaled under `max_pixels` and re-encoded as JPEG, stepping down
    quality (85 -> 50) and then size (0.8 -> 0.4) until it fits; a final
    2048px box at quality 60 is the last resort.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        width, height = img.width, img.height
        pixels = width * height
        if len(data) <= max_bytes and pixels <= max_pixels:
            mime_type = "image/jpeg" if img.format == "JPEG" else "image/png"
            return ResizeResult(data=data, mime_type=mime_type, resized=False)

        target_w, target_h = width, height
        if pixels > max_pixels:
            scale = math.sqrt(max_pixels / pixels) * 0.95
            target_w = round(width * scale)
            target_h = round(height * scale)

        for quality in (85, 80, 70, 60, 50):
            encoded = _encode_jpeg(img, (target_w, target_h), quality)
            if len(encoded) <= max_bytes:
                return ResizeResult(data=encoded, mime_type="image/jpeg", resized=True)

        for step in range(8, 3, -1):
            scale = step / 10
            size = (round(target_w * scale), round(target_h * scale))
            encoded = _encode_jpeg(img, size, 70)
            if len(encoded) <= max_bytes:
                return ResizeResult(data=encoded, mime_type="image/jpeg", resized=True)

        encoded = _encode_jpeg(img, (2048, 2048), 60)
        return ResizeResult(data=encoded, mime_type="image/jpeg", resized=True)


class ResizeCache:
    """Bounded FIFO cache of resize results keyed by prefix + content hash.

    Owned by the batch service; the oldest entry is evicted once `capacity`
    is reached. Safe to call from worker threads.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: "OrderedDict[str, ResizeResult]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @staticmethod
    def make_key(data: bytes, prefix: str) -> str:
        return f"{prefix}:{hashlib.sha256(data).hexdigest()}"

    def get(self, key: str) -> Optional[ResizeResult]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, result: ResizeResult) -> None:
        with self._lock:
            if key in self._entries:
                self._entries[key] = result
                return
            if len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Resize cache evicted %s", evicted)
            self._entries[key] = result

    def get_or_resize(self, data: bytes, prefix: str) -> ResizeResult:
        """Return the cached resize of `data`, computing it on a miss."""
        key = self.make_key(data, prefix)
        cached = self.get(key)
        if cached is not None:
            return cached
        result = resize_if_needed(data)
        self.put(key, result)
        return result
