"""
tests/conftest.py

Pytest configuration and shared fixtures for the imgd test suite.

Every test gets its own storage root under tmp_path and a Settings object
built from keyword arguments; the process environment is scrubbed of imgd
variables so a developer's shell cannot leak into a test.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from imgd.config import Settings, reset_settings
from imgd.main import create_app
from tests.helpers import PUBLIC_BASE_URL

IMGD_ENV_VARS = (
    "HOST",
    "PORT",
    "UPLOAD_TOKEN",
    "TOKENS_FILE",
    "PUBLIC_BASE_URL",
    "DATA_DIR",
    "MAX_UPLOAD_BYTES",
    "MAX_CONCURRENT_UPLOADS",
    "RATE_LIMIT_PER_MINUTE",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in IMGD_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def upload_token() -> str:
    return "test-upload-token-0123456789abcdef"


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "images"


@pytest.fixture
def make_settings(data_dir: Path, upload_token: str) -> Callable[..., Settings]:
    """Settings factory; keyword overrides use the environment variable names."""

    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "PUBLIC_BASE_URL": PUBLIC_BASE_URL + "/",
            "DATA_DIR": data_dir,
            "UPLOAD_TOKEN": upload_token,
        }
        values.update(overrides)
        return Settings(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
