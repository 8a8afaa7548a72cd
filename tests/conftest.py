"""
Pytest configuration and shared fixtures.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from resumable_upload.config import Config
from resumable_upload.file import ChunkStorage
from resumable_upload.server import UploadServer
from resumable_upload.storage import init_database


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    path = Path(tempfile.mkdtemp(prefix="resumable_upload_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def config(temp_dir):
    """Config pointing at a scratch data directory, small default chunks."""
    return Config(data_dir=temp_dir / "data", chunk_size=1024)


@pytest.fixture
def chunk_storage(temp_dir):
    return ChunkStorage(temp_dir / "data")


@pytest_asyncio.fixture
async def database(temp_dir):
    db = await init_database(temp_dir / "data")
    yield db
    await db.close()


@pytest_asyncio.fixture
async def server(config):
    """A started UploadServer."""
    upload_server = UploadServer(config)
    await upload_server.start()
    yield upload_server
    await upload_server.stop()


@pytest.fixture
def engine(server):
    return server.engine


@pytest.fixture
def make_file(temp_dir):
    """Write ``size`` random bytes to a file and return (path, data)."""

    def _make(size: int, name: str = "upload.bin"):
        data = os.urandom(size)
        path = temp_dir / name
        path.write_bytes(data)
        return path, data

    return _make
