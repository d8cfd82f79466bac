"""PDF upload validation and text extraction."""

from __future__ import annotations

import asyncio
import hashlib
import re
from collections import Counter
from pathlib import Path

import fitz

from storekb.core.errors import EmptyContentError, ParseError, ValidationError
from storekb.core.logging import get_logger
from storekb.ingest.types import FetchedDocument
from storekb.models.jobs import PdfJobConfig
from storekb.utils.text import normalize_block

logger = get_logger(__name__)

PDF_MAGIC = b"%PDF-"

_PAGE_NUMBER_RE = re.compile(r"^(page\s*)?\d{1,4}(\s*(/|of)\s*\d{1,4})?$", re.IGNORECASE)


def pdf_digest(data: bytes) -> str:
    """Content hash naming both the stored upload and the ``pdf://`` source."""
    return hashlib.sha256(data).hexdigest()


def validate_pdf_upload(data: bytes, max_bytes: int) -> None:
    """Reject empty, oversized, or non-PDF uploads before a job is created."""
    if not data:
        raise ValidationError("uploaded file is empty", user_message="The uploaded file is empty.")
    if len(data) > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise ValidationError(
            f"upload of {len(data)} bytes exceeds limit of {max_bytes}",
            user_message=f"File size exceeds the maximum allowed size of {limit_mb:g} MB.",
        )
    if not data.startswith(PDF_MAGIC):
        raise ValidationError("upload is not a PDF", user_message="Only PDF files are allowed.")


def extract_pdf_pages(data: bytes) -> list[str]:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise ParseError(f"malformed PDF: {exc}") from exc
    with doc:
        if doc.needs_pass:
            raise ParseError(
                "PDF is password protected",
                user_message="This PDF is password protected. Please upload an unprotected copy.",
            )
        try:
            return [page.get_text("text", sort=True) for page in doc]
        except (RuntimeError, ValueError) as exc:
            raise ParseError(f"failed to read PDF pages: {exc}") from exc


def clean_pdf_text(pages: list[str]) -> str:
    """Join page texts, dropping page-number lines and running headers/footers."""
    page_lines = [[line.strip() for line in normalize_block(page).split("\n")] for page in pages]
    repeated: set[str] = set()
    if len(pages) >= 3:
        counts = Counter(line for lines in page_lines for line in set(lines) if line)
        repeated = {line for line, count in counts.items() if count >= max(3, len(pages) // 2 + 1)}

    cleaned_pages = []
    for lines in page_lines:
        kept = [
            line
            for line in lines
            if not _PAGE_NUMBER_RE.match(line) and line not in repeated
        ]
        page_text = normalize_block("\n".join(kept))
        if page_text:
            cleaned_pages.append(page_text)
    return "\n\n".join(cleaned_pages)


class PdfFetcher:
    async def fetch(self, config: PdfJobConfig) -> list[FetchedDocument]:
        path = Path(config.path)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise ParseError(
                f"stored upload {path} is missing",
                user_message="The uploaded file is no longer available. Please upload it again.",
            ) from exc
        if not data.startswith(PDF_MAGIC):
            raise ParseError(f"{path} is not a PDF")

        pages = await asyncio.to_thread(extract_pdf_pages, data)
        text = clean_pdf_text(pages)
        if not text:
            raise EmptyContentError(
                f"no extractable text in {config.filename}",
                user_message="No text could be extracted from this PDF. Scanned documents are not supported.",
            )
        logger.info("Extracted %s characters from %s (%s pages)", len(text), config.filename, len(pages))
        return [
            FetchedDocument(
                source_ref=config.source_ref,
                text=text,
                metadata={"filename": config.filename, "pages": len(pages)},
            )
        ]


__all__ = ["PDF_MAGIC", "pdf_digest", "validate_pdf_upload", "extract_pdf_pages", "clean_pdf_text", "PdfFetcher"]
