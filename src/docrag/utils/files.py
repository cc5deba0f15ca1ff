"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Iterator

SUFFIX_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".text": "text/plain",
}


def guess_mime_type(path: Path) -> str | None:
    """Map a file suffix onto one of the supported mime types."""
    return SUFFIX_MIME_TYPES.get(path.suffix.lower())


def iter_document_paths(inputs: Iterable[Path]) -> Iterator[Path]:
    """Yield supported document paths from input paths, descending into directories."""
    for item in inputs:
        if item.is_dir():
            yield from iter_document_paths(
                sorted(child for child in item.rglob("*") if child.is_file())
            )
        elif item.is_file() and guess_mime_type(item) is not None:
            yield item


def compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash for a byte payload."""
    return hashlib.sha256(data).hexdigest()
