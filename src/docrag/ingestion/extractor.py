"""Text extraction for the supported document formats.

PDFs are read with PyMuPDF (fitz), Markdown is rendered to HTML with
python-markdown and flattened with BeautifulSoup, plain text is decoded as
UTF-8.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterator

import fitz  # PyMuPDF
import markdown
from bs4 import BeautifulSoup

from docrag.errors import ExtractionError, FileTooLargeError, UnsupportedFileTypeError
from docrag.utils.text import normalize_whitespace

LOGGER = logging.getLogger(__name__)

PDF = "application/pdf"
MARKDOWN = "text/markdown"
PLAIN_TEXT = "text/plain"


def iter_pdf_pages(data: bytes) -> Iterator[str]:
    """Yield normalized text content from a PDF payload page by page."""
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        for index in range(len(doc)):
            text = doc[index].get_text() or ""
            normalized = normalize_whitespace(text.splitlines())
            if normalized:
                yield normalized
            else:
                LOGGER.debug("PDF page %s has no extractable text", index)
    finally:
        doc.close()


def extract_pdf(data: bytes) -> str:
    return "\n".join(iter_pdf_pages(data))


def extract_markdown(data: bytes) -> str:
    html = markdown.markdown(data.decode("utf-8"))
    text = BeautifulSoup(html, "html.parser").get_text()
    return normalize_whitespace(text.splitlines())


def extract_plain_text(data: bytes) -> str:
    return data.decode("utf-8")


class TextExtractor:
    """Turns raw file bytes into text for an allowlisted set of mime types."""

    def __init__(self, *, max_bytes: int | None = None) -> None:
        self.max_bytes = max_bytes
        self._handlers: Dict[str, Callable[[bytes], str]] = {
            PDF: extract_pdf,
            MARKDOWN: extract_markdown,
            PLAIN_TEXT: extract_plain_text,
        }

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._handlers)

    def supports(self, mime_type: str) -> bool:
        return mime_type in self._handlers

    def extract(self, data: bytes, mime_type: str) -> str:
        handler = self._handlers.get(mime_type)
        if handler is None:
            raise UnsupportedFileTypeError(mime_type, self.supported_types)
        if self.max_bytes is not None and len(data) > self.max_bytes:
            raise FileTooLargeError(len(data), self.max_bytes)

        LOGGER.debug("Extracting %s bytes of %s", len(data), mime_type)
        try:
            return handler(data)
        except UnicodeDecodeError as exc:
            raise ExtractionError(
                "File is not valid UTF-8 text", context={"mime_type": mime_type}, cause=exc
            ) from exc
        except (RuntimeError, ValueError) as exc:
            # fitz raises RuntimeError subclasses (FileDataError) on broken PDFs.
            LOGGER.error("Failed to extract %s: %s", mime_type, exc)
            raise ExtractionError(
                f"Failed to parse {mime_type} file", context={"mime_type": mime_type}, cause=exc
            ) from exc
