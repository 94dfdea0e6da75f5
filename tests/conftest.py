"""Shared pytest fixtures for all tests."""

import pytest

from chunkstore.chunk_storage import ChunkStore, MemoryChunkStore
from downloader.config import DownloaderConfig, MaterializeOptions
from rman_builder import RmanBuilder


@pytest.fixture
def builder():
    """Empty manifest builder."""
    return RmanBuilder()


@pytest.fixture
def memory_store():
    return MemoryChunkStore()


@pytest.fixture
def disk_store(tmp_path):
    """
    Create a directory-backed chunk store.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        ChunkStore rooted in a temporary directory
    """
    store = ChunkStore(tmp_path / 'chunks')
    store.ensure_directory()
    return store


@pytest.fixture
def destination(tmp_path):
    path = tmp_path / 'install'
    path.mkdir()
    return path


@pytest.fixture
def fast_options():
    """Options without backoff delays."""
    return MaterializeOptions(retry_backoff_base=0, concurrency=4)


@pytest.fixture
def temp_config(tmp_path):
    """
    Create temporary config instance.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        DownloaderConfig instance with temp config file
    """
    config_dir = tmp_path / '.rman-sync'
    config_dir.mkdir()
    return DownloaderConfig(config_dir / 'config.json')
