"""
ingestion.py — Document text extraction and image payloads.

Tender documents reach us as PDF, DOCX or saved HTML pages, plus the odd
plain-text export. Everything is turned into one plain string here; the
extraction prompt does the rest. HTML is kept as markup on purpose: the
auction-page protocol in the prompt walks the table structure, and
flattening it to text loses the row/column boundaries.

Images are not OCR'd. The generative model reads them directly, so all we
do is check that the bytes really are an image (Pillow) and base64 them.

Any failure raises DocumentError so callers can tell "bad file" apart from
pipeline errors.
"""

from __future__ import annotations

import base64
import io
import logging
from pathlib import Path
from typing import List, Optional, Union

import pdfplumber
from PIL import Image, UnidentifiedImageError

from tender_hunter.config import config
from tender_hunter.errors import DocumentError
from tender_hunter.schemas import ImagePart

logger = logging.getLogger(__name__)

_PIL_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def extract_text(file_path: Union[str, Path]) -> str:
    """
    Return the plain text of a tender document on disk.

    Raises:
        DocumentError: missing file, too large, unsupported format, or the
            parser choked on it.
    """
    path = Path(file_path)
    _validate_file(path)
    return extract_text_from_bytes(path.read_bytes(), path.name)


def extract_text_from_bytes(data: bytes, file_name: str) -> str:
    """Same as extract_text() for content we already hold in memory
    (API uploads, files fetched while scraping)."""
    suffix = Path(file_name).suffix.lower()
    if suffix not in config.supported_formats:
        raise DocumentError(
            f"Unsupported format '{suffix}'. "
            f"Supported: {', '.join(config.supported_formats)}"
        )
    _check_size(len(data), file_name)

    try:
        if suffix == ".pdf":
            text = _pdf_text(data)
        elif suffix == ".docx":
            text = _docx_text(data)
        else:
            text = _decode(data)
    except DocumentError:
        raise
    except Exception as exc:
        raise DocumentError(f"Could not read {file_name}: {exc}") from exc

    logger.info("Ingested %s: %d chars", file_name, len(text))
    return text


def _pdf_text(data: bytes) -> str:
    pages: List[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            pages.append(page.extract_text() or "")
    if not any(p.strip() for p in pages):
        # Scanned PDFs come back empty. Not an error: the user can attach
        # the pages as images instead.
        logger.warning("PDF has no extractable text (%d pages), probably scanned", len(pages))
    return "\n".join(pages)


def _docx_text(data: bytes) -> str:
    """
    Paragraphs first, then table rows joined with " | ".

    Tender specs live in tables far more often than in paragraphs, so
    skipping tables would lose most of the product list.
    """
    from docx import Document

    doc = Document(io.BytesIO(data))
    parts: List[str] = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


def _decode(data: bytes) -> str:
    # Portal exports are UTF-8; old 1C exports are cp1251.
    for encoding in ("utf-8", "cp1251"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


def image_to_part(file_path: Union[str, Path]) -> ImagePart:
    """Load an image file as an inline model part."""
    path = Path(file_path)
    if not path.exists():
        raise DocumentError(f"File not found: {path}")
    if path.suffix.lower() not in config.image_formats:
        raise DocumentError(
            f"Unsupported image format '{path.suffix}'. "
            f"Supported: {', '.join(config.image_formats)}"
        )
    return image_bytes_to_part(path.read_bytes(), path.name)


def image_bytes_to_part(data: bytes, name: str = "image") -> ImagePart:
    """
    Verify the bytes decode as an image and wrap them as base64.

    The MIME type comes from what Pillow detects, not from the file name
    or a server header; portals mislabel images often enough.
    """
    _check_size(len(data), name)
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise DocumentError(f"{name} is not a valid image: {exc}") from exc

    mime = _PIL_MIME.get(fmt or "")
    if mime is None:
        raise DocumentError(f"{name}: unsupported image type {fmt}")
    return ImagePart(mime_type=mime, data=base64.b64encode(data).decode("ascii"))


def try_image_part(data: bytes, name: str = "image") -> Optional[ImagePart]:
    """image_bytes_to_part() that returns None instead of raising."""
    try:
        return image_bytes_to_part(data, name)
    except DocumentError as exc:
        logger.debug("Skipping image %s: %s", name, exc)
        return None


def _check_size(size: int, name: str) -> None:
    size_mb = size / (1024 * 1024)
    if size_mb > config.max_file_size_mb:
        raise DocumentError(
            f"{name} too large ({size_mb:.1f} MB). Max: {config.max_file_size_mb} MB"
        )


def _validate_file(path: Path) -> None:
    if not path.exists():
        raise DocumentError(f"File not found: {path}")
    if path.suffix.lower() not in config.supported_formats:
        raise DocumentError(
            f"Unsupported format '{path.suffix}'. "
            f"Supported: {', '.join(config.supported_formats)}"
        )
    _check_size(path.stat().st_size, path.name)
