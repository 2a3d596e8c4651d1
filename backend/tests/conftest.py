# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from uuid import UUID, uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read at import time; keep tests independent of the shell env.
os.environ["STORAGE_URL"] = "http://storage.test"
os.environ["STORAGE_API_KEY"] = "test-storage-key"
os.environ["CORS_ORIGINS"] = ""

from fakes import FakeBlobStore, InMemoryRepository  # noqa: E402


@pytest.fixture
def workspace_id() -> UUID:
    return uuid4()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def blobs() -> FakeBlobStore:
    return FakeBlobStore()
