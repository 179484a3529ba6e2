"""
Shared fixtures: settings and storage areas under a temporary directory.
"""

import pytest

from hornet_lite.case_store import CaseStore
from hornet_lite.config import Settings
from hornet_lite.storage import LocalStorage


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and .env"""
    return Settings(
        _env_file=None,
        gemini_api_key=None,
        storage_path=str(tmp_path / "storage"),
    )


@pytest.fixture
def storage(settings):
    area = LocalStorage(settings.storage_path, settings=settings)
    yield area
    area.close()


@pytest.fixture
def store(storage):
    case_store = CaseStore(storage)
    yield case_store
    case_store.close()
