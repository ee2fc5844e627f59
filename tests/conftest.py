"""
Pytest configuration for unit tests.

Every test gets its own app built from isolated settings: temporary upload
and log directories, metrics disabled, and a fixed upstream model/key.
"""
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from chatproxy.config import (
    LoggingSettings,
    MonitoringSettings,
    Settings,
    UploadSettings,
    UpstreamSettings,
)
from chatproxy.main import create_app
from chatproxy.services.image_inliner import ImageInliner
from chatproxy.services.upload_store import UploadStore


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        upstream=UpstreamSettings(
            api_key=SecretStr("sk-test"),
            base_url="https://api.example.com/v1",
            model="test-model",
        ),
        upload=UploadSettings(directory=str(tmp_path / "uploads")),
        logging=LoggingSettings(log_dir=str(tmp_path / "logs"), json_format=False),
        monitoring=MonitoringSettings(metrics_enabled=False),
    )


@pytest.fixture
def upload_store(test_settings: Settings) -> UploadStore:
    return UploadStore(test_settings.upload.directory)


@pytest.fixture
def inliner(upload_store: UploadStore) -> ImageInliner:
    return ImageInliner(upload_store)


@pytest.fixture
def app(test_settings: Settings):
    return create_app(test_settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
