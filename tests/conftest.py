"""
Shared pytest fixtures.

Every test gets its own temporary data + uploads directories and fresh
component instances, so no state (files, locks, rate buckets) leaks between
tests or into the real data/ directory.
"""
from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from file_lock import FileLockManager          # noqa: E402
from product_store import ProductStore         # noqa: E402

FIXED_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """Redirect DATA_DIR to a fresh tmp directory for every test."""
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))
    yield data


@pytest.fixture
def uploads_dir(tmp_path) -> Path:
    d = tmp_path / "uploads"
    d.mkdir()
    return d


@pytest.fixture
def locks() -> FileLockManager:
    return FileLockManager()


@pytest.fixture
def products_file(tmp_data_dir) -> Path:
    return tmp_data_dir / "products.json"


@pytest.fixture
def store(products_file, locks) -> ProductStore:
    return ProductStore(products_file, locks, lock_timeout=1.0, clock=lambda: FIXED_NOW)


@pytest.fixture
def make_image(uploads_dir):
    """Write a small fake photo into uploads/ and return its web path."""
    def _make(name: str = "photo.jpg", data: bytes = b"\xff\xd8\xff\xe0fakejpeg") -> str:
        (uploads_dir / name).write_bytes(data)
        return f"/uploads/{name}"
    return _make
