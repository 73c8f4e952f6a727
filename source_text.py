"""Turn uploaded study material into word-bounded chunks for board prompts."""

import logging
import re

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

logger = logging.getLogger(__name__)

MIN_LINE_LENGTH = 25
TARGET_WORDS = 1200
MIN_WORDS = 1000
MAX_WORDS = 1500


class SourceTextError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def clean_text(raw_text: str) -> str:
    # Short lines are mostly headers, footers and page numbers.
    lines = re.split(r"\r?\n", raw_text or "")
    kept = []
    for line in lines:
        collapsed = re.sub(r"\s+", " ", line.strip())
        if len(collapsed) >= MIN_LINE_LENGTH:
            kept.append(collapsed)
    return re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()


def chunk_text(text: str) -> list[str]:
    words = (text or "").split()
    chunks: list[str] = []

    index = 0
    while index < len(words):
        remaining = len(words) - index
        if remaining < MIN_WORDS and chunks:
            chunks[-1] = f"{chunks[-1]} {' '.join(words[index:])}".strip()
            break

        size = min(TARGET_WORDS, remaining, MAX_WORDS)
        chunks.append(" ".join(words[index : index + size]))
        index += size

    return chunks


def extract_pdf_text(file_obj) -> dict:
    """Read a PDF upload and return ``{"chunks": [...], "meta": {...}}``."""
    try:
        reader = PdfReader(file_obj)
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as exc:
        logger.warning("PDF extraction failed: %s", exc)
        raise SourceTextError("Could not read that PDF file.", 400) from exc

    raw_text = "\n".join(pages)
    if not raw_text.strip():
        raise SourceTextError(
            "PDF extraction returned empty text. The PDF may be image-based or corrupted.",
            422,
        )

    chunks = chunk_text(clean_text(raw_text))
    if not chunks:
        raise SourceTextError("No usable text was found in that PDF.", 422)

    logger.info("Extracted %s chunks from a %s-page PDF.", len(chunks), len(pages))
    return {
        "chunks": chunks,
        "meta": {"pages": len(pages), "chunkCount": len(chunks)},
    }


def chunks_from_text(raw_text: str) -> list[str]:
    chunks = chunk_text(clean_text(raw_text))
    if not chunks:
        raise SourceTextError("Source text is empty after cleaning.", 400)
    return chunks
