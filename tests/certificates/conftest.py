"""
Fixtures for certificate pipeline tests.
"""

import pytest

from app.certificates.services.storage_publisher import StoragePublisher
from tests.utils.fakes import FakeDriveStorage, RecordingReporter


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def fake_storage():
    return FakeDriveStorage()


@pytest.fixture
def publisher(settings, fake_storage):
    return StoragePublisher(settings, storage=fake_storage)
