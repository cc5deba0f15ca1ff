"""Text helpers including boundary-aware chunking."""

from __future__ import annotations

from typing import Iterable, List

BOUNDARY_RATIO = 0.5


def chunk_text(text: str, *, max_chars: int = 1000, overlap: int = 200) -> List[str]:
    """Split text into overlapping chunks that prefer sentence/line boundaries.

    Each interior window ends at its last ``.`` or newline when that boundary
    falls past the middle of the window; otherwise the full window is kept.
    The next window starts ``overlap`` characters before the previous cut.
    Callers must reject ``overlap >= max_chars``.
    """
    if len(text) <= max_chars:
        return [text]

    chunks: List[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + max_chars, length)
        window = text[start:end]

        if end < length:
            boundary = max(window.rfind("."), window.rfind("\n"))
            if boundary > max_chars * BOUNDARY_RATIO:
                window = window[: boundary + 1]
                next_start = start + boundary + 1 - overlap
            else:
                next_start = end - overlap
            # Degenerate overlap must never stall the window.
            if next_start <= start:
                next_start = end
        else:
            next_start = end

        chunks.append(window.strip())
        start = next_start

    return [chunk for chunk in chunks if chunk]


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def normalize_query(query: str) -> str:
    """Strip a query and collapse inner whitespace runs to single spaces."""
    return " ".join(query.split())


def truncate(text: str, limit: int = 200, suffix: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + suffix
