from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fakes import TEST_SECRET  # noqa: E402

# Must be set before importing modules that read settings at import time.
os.environ["STREAM_SHARED_SECRET"] = TEST_SECRET
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["BOOKING_LINK_URL"] = "https://book.example.com"


@pytest.fixture(scope="session")
def app():
    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def settings():
    from config.settings import get_settings

    return get_settings()


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
