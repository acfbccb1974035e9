"""Downstream processing of uploaded PDFs with PyMuPDF."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import pymupdf

from .page_selection import clamp, parse
from .utils import ensure_directory

logger = logging.getLogger(__name__)


@dataclass
class PageImage:
    position: int
    path: Path


@dataclass
class ProcessingResult:
    page_count: int
    pages: List[int]
    dropped_pages: List[int] = field(default_factory=list)
    text: Optional[str] = None
    images: List[PageImage] = field(default_factory=list)


def resolve_pages(selected_pages: str, page_count: int) -> tuple[List[int], List[int]]:
    """
    Turn a stored range string into the pages to process.

    An empty selection means the whole document. Pages outside
    ``[1, page_count]`` are returned separately so the caller can report them.

    Returns:
        Tuple of (pages_to_process, dropped_pages), both ascending
    """
    requested = parse(selected_pages)
    if not requested:
        return list(range(1, page_count + 1)), []

    in_bounds = clamp(requested, page_count)
    return sorted(in_bounds), sorted(requested - in_bounds)


def open_pdf(path: Path):
    try:
        doc = pymupdf.open(str(path), filetype="pdf")
    except Exception as exc:
        raise ValueError(f"Invalid or corrupted PDF file: {path.name}") from exc

    if doc.page_count == 0:
        doc.close()
        raise ValueError(f"PDF file has no pages: {path.name}")
    return doc


def extract_text(doc, pages: List[int]) -> str:
    """Concatenate the text layer of ``pages`` (1-indexed), separated by blank lines."""
    chunks = []
    for page_num in pages:
        text = doc[page_num - 1].get_text("text").strip()
        if text:
            chunks.append(text)
    return "\n\n".join(chunks)


def render_pages(doc, pages: List[int], output_dir: Path, dpi: int) -> List[PageImage]:
    """Render ``pages`` to PNG files named ``page-0001.png`` in ``output_dir``."""
    ensure_directory(output_dir)
    images = []
    for page_num in pages:
        pixmap = doc[page_num - 1].get_pixmap(dpi=dpi)
        path = output_dir / f"page-{page_num:04d}.png"
        pixmap.save(str(path))
        images.append(PageImage(position=page_num, path=path))
    return images


def process_pdf(
    path: Path,
    selected_pages: str,
    image_dir: Path,
    extract: bool = True,
    render: bool = True,
    dpi: int = 150,
) -> ProcessingResult:
    """
    Run text extraction and page rendering over the selected pages of a PDF.

    Raises:
        ValueError: If the file cannot be opened as a PDF
    """
    doc = open_pdf(path)
    try:
        page_count = len(doc)
        pages, dropped = resolve_pages(selected_pages, page_count)
        logger.info(f"Processing {path.name}: {len(pages)} of {page_count} pages")

        result = ProcessingResult(page_count=page_count, pages=pages, dropped_pages=dropped)
        if extract:
            result.text = extract_text(doc, pages)
        if render:
            result.images = render_pages(doc, pages, image_dir, dpi)
        return result
    finally:
        doc.close()
