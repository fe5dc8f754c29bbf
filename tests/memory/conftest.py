"""Shared fixtures for pattern memory tests."""

import tempfile
from pathlib import Path

import pytest

from nanojournal.config.schema import MemoryConfig
from nanojournal.memory.store import PatternStore

from fakes import FakeEmbedder


@pytest.fixture
def memory_config():
    return MemoryConfig(enabled=True, db_path="memory/test.db")


@pytest.fixture
def temp_store(memory_config):
    """Create a temporary pattern store for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = PatternStore(memory_config, Path(tmpdir))
        yield store
        store.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()
