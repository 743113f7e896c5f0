"""Export slide decks as PDF (PyMuPDF), CSV and Anki flashcards."""

from __future__ import annotations

import csv
import io
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from PIL import Image

from ..services.naming import slugify
from .frames import storage_path_from_url
from .slides import slide_image_urls


LOGGER = logging.getLogger(__name__)

Slide = Dict[str, Any]

EXPORT_FORMATS = ("pdf", "csv", "anki")

# A4 portrait in points; positions mirror a 20 mm margin.
PAGE_WIDTH = 595
PAGE_HEIGHT = 842
MARGIN = 57
CONTENT_WIDTH = PAGE_WIDTH - 2 * MARGIN
IMAGE_HEIGHT = 227


class ExportError(RuntimeError):
    """Raised when a deck cannot be exported."""


def export_file_name(title: Optional[str], export_format: str) -> str:
    extension = "pdf" if export_format == "pdf" else "csv"
    suffix = "-anki" if export_format == "anki" else ""
    return f"{slugify(title or 'presentation')}{suffix}.{extension}"


def _csv_text(header: str, rows: Sequence[Sequence[Any]]) -> str:
    buffer = io.StringIO()
    buffer.write(header + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue()


def export_csv(slides: Sequence[Slide]) -> str:
    """Return ``Slide Number,Title,Content`` rows with every text field quoted."""

    rows = [
        (index, str(slide.get("title") or ""), str(slide.get("content") or ""))
        for index, slide in enumerate(slides, start=1)
    ]
    return _csv_text("Slide Number,Title,Content", rows)


def export_anki(slides: Sequence[Slide]) -> str:
    """Return ``Front,Back`` cards (title on the front, content on the back)."""

    rows = [
        (str(slide.get("title") or ""), str(slide.get("content") or "")) for slide in slides
    ]
    return _csv_text("Front,Back", rows)


def _resolve_image(url: str, storage_root: Optional[Path]) -> Optional[Path]:
    if storage_root is None:
        return None
    relative = storage_path_from_url(url)
    if not relative:
        return None
    candidate = (storage_root / relative).resolve()
    try:
        candidate.relative_to(storage_root.resolve())
    except ValueError:
        LOGGER.warning("Ignoring image outside storage root: %s", url)
        return None
    return candidate if candidate.is_file() else None


def _jpeg_bytes(path: Path) -> bytes:
    with Image.open(path) as image:
        converted = image.convert("RGB")
        buffer = io.BytesIO()
        converted.save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


def export_pdf(
    title: Optional[str],
    slides: Sequence[Slide],
    target: Path,
    *,
    storage_root: Optional[Path] = None,
) -> Path:
    """Render one page per slide into *target*.

    The deck title heads the first page. Slides whose first image resolves to
    a file under *storage_root* get it embedded above the content.
    """

    try:
        import fitz  # type: ignore
    except ImportError as exc:  # pragma: no cover - runtime check
        raise ExportError("PyMuPDF (fitz) is not installed") from exc

    deck_title = title or "Presentation"
    target.parent.mkdir(parents=True, exist_ok=True)
    document = fitz.open()
    try:
        page = document.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        page.insert_text((MARGIN, MARGIN), deck_title, fontsize=20)
        y = MARGIN + 57.0
        total = len(slides)

        for index, slide in enumerate(slides):
            if index > 0:
                page = document.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
                y = float(MARGIN)
            page.insert_text((MARGIN, y), f"Slide {index + 1}/{total}", fontsize=10)
            y += 28
            page.insert_text((MARGIN, y), str(slide.get("title") or ""), fontsize=16)
            y += 42

            urls = slide_image_urls(slide)
            image_path = _resolve_image(urls[0], storage_root) if urls else None
            if image_path is not None:
                try:
                    rect = fitz.Rect(MARGIN, y, MARGIN + CONTENT_WIDTH, y + IMAGE_HEIGHT)
                    page.insert_image(rect, stream=_jpeg_bytes(image_path), keep_proportion=True)
                    y += IMAGE_HEIGHT + 28
                except (OSError, ValueError, RuntimeError) as error:
                    LOGGER.warning("Skipping image %s on slide %d: %s", image_path, index + 1, error)

            content = str(slide.get("content") or "")
            if content:
                box = fitz.Rect(MARGIN, y, MARGIN + CONTENT_WIDTH, PAGE_HEIGHT - MARGIN)
                page.insert_textbox(box, content, fontsize=12)

        document.save(str(target))
    finally:
        document.close()
    LOGGER.debug("Exported %d slides to %s", len(slides), target)
    return target


__all__ = [
    "EXPORT_FORMATS",
    "ExportError",
    "export_anki",
    "export_csv",
    "export_file_name",
    "export_pdf",
]
