"""Shared test fixtures and configuration."""
import io
from unittest.mock import patch

import pytest
from PIL import Image


@pytest.fixture(autouse=True)
def set_required_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for all tests."""
    monkeypatch.setenv("GCP_PROJECT_ID", "test-project")
    monkeypatch.setenv("GEMINI_API_KEY", "test-gemini-key")
    monkeypatch.setenv("SEEDREAM_API_KEY", "test-seedream-key")


@pytest.fixture
def offline_firestore():
    """Make FileStore construction fail so the app starts in degraded mode."""
    with patch(
        "toonstudio.services.storage.firestore.Client",
        side_effect=RuntimeError("firestore disabled in tests"),
    ) as mocked:
        yield mocked


def make_png(width: int = 64, height: int = 32, color: str = "red") -> bytes:
    """Encode a solid-color PNG of the given size."""
    output = io.BytesIO()
    Image.new("RGB", (width, height), color).save(output, format="PNG")
    return output.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()
