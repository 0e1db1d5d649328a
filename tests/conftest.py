"""Shared pytest fixtures for cba tests."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Dict

import pytest

import cba


@pytest.fixture
def compressible() -> bytes:
    """Page bytes that deflate shrinks a lot."""
    return b"GIF89a" + b"\x00\x01\x02\x03" * 8000


@pytest.fixture
def incompressible() -> Callable[[int], bytes]:
    """Factory for random page bytes that never shrink."""
    return os.urandom


@pytest.fixture
def make_book(tmp_path: Path) -> Callable[..., Path]:
    """Create a directory of pages: make_book({"a1.gif": b"..."}, name="book")."""

    def _make(pages: Dict[str, bytes], name: str = "book") -> Path:
        book = tmp_path / name
        book.mkdir()
        for fname, data in pages.items():
            (book / fname).write_bytes(data)
        return book

    return _make


@pytest.fixture
def options() -> cba.ArchiveOptions:
    """Quiet, single-worker options."""
    return cba.ArchiveOptions(jobs=1, quiet=True)
