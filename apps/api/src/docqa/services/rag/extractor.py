from __future__ import annotations

import logging
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from docqa.services.rag.types import ExtractedPage

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".markdown"}
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | {".pdf"}


class ExtractionError(RuntimeError):
    pass


def is_supported(file_name: str) -> bool:
    return Path(file_name).suffix.lower() in SUPPORTED_EXTENSIONS


def _extract_pdf(path: Path) -> list[ExtractedPage]:
    try:
        reader = PdfReader(path)
        pages = [
            ExtractedPage(text=page.extract_text() or "", page=number)
            for number, page in enumerate(reader.pages, start=1)
        ]
    except (PyPdfError, ValueError, KeyError, OSError) as exc:
        raise ExtractionError(f"Failed to parse PDF {path.name}: {exc}") from exc

    logger.info("Extracted %d page(s) from %s", len(pages), path.name)
    return pages


def _extract_text(path: Path) -> list[ExtractedPage]:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except (UnicodeDecodeError, OSError) as exc:
        raise ExtractionError(f"Failed to decode {path.name} as UTF-8: {exc}") from exc
    return [ExtractedPage(text=text)]


def extract_pages(path: Path) -> list[ExtractedPage]:
    """Return the plain text of *path*, one entry per page for PDFs.

    Pages whose text is empty are kept so page numbers stay aligned; callers
    decide what an empty document means.
    """
    suffix = path.suffix.lower()
    if suffix == ".pdf":
        return _extract_pdf(path)
    if suffix in TEXT_EXTENSIONS:
        return _extract_text(path)
    raise ExtractionError(
        f"Unsupported document type {suffix or '<none>'!r} (supported: {sorted(SUPPORTED_EXTENSIONS)})"
    )


def has_text(pages: list[ExtractedPage]) -> bool:
    return any(page.text.strip() for page in pages)
