import os
import sys

# Ensure the backend package is importable when running from the repo root
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, BACKEND_DIR)

import pytest
from fastapi.testclient import TestClient

from renalscan.models.schemas import ImageReference

# Header of a PNG file; the pipeline never decodes pixels
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + bytes(range(64))


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def image():
    return ImageReference.from_bytes(PNG_BYTES, "image/png")


@pytest.fixture
def client():
    """
    Test client for the FastAPI app. Startup events do not run, so tests
    install their own orchestrator through dependency overrides.
    """
    from renalscan.main import app

    yield TestClient(app)
    app.dependency_overrides.clear()
