"""
Utility functions for file system operations and form field parsing.

This module provides helper functions for:
- Sanitizing uploaded filenames for safe filesystem and S3 key usage
- Ensuring directory creation with proper error handling
- Mapping document types to their accepted file extensions
- Splitting the comma-separated form fields sent by the upload page
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .models import DocumentType
from .page_selection import parse_page_number

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")

_EXTENSIONS: Dict[DocumentType, List[str]] = {
    DocumentType.PDF: [".pdf"],
    DocumentType.DOCX: [".docx"],
}


def sanitize_filename(filename: str, fallback: str = "document") -> str:
    """
    Generate a filesystem-safe filename from an uploaded file's name.

    The stem is reduced to alphanumerics, underscores and hyphens; the
    extension is kept lowercased so the document type can still be inferred.

    Args:
        filename: The original filename as sent by the client (may include a path)
        fallback: Stem to use if sanitization leaves nothing

    Returns:
        A filesystem-safe filename

    Example:
        >>> sanitize_filename("My Lecture Notes (v2).PDF")
        "My-Lecture-Notes-v2.pdf"
        >>> sanitize_filename("@#$.pdf")
        "document.pdf"
    """
    path = Path(filename.replace("\\", "/"))
    stem = SANITIZE_PATTERN.sub("-", path.stem.strip())
    stem = stem.strip("-_") or fallback
    return f"{stem}{path.suffix.lower()}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def allowed_extensions(document_type: DocumentType) -> Iterable[str]:
    """Get the file extensions accepted for a document type."""
    return _EXTENSIONS[document_type]


def is_allowed_file(filename: str, document_type: DocumentType) -> bool:
    return Path(filename).suffix.lower() in allowed_extensions(document_type)


def split_tags(tags: Optional[str]) -> List[str]:
    """
    Split a comma-separated tag field into a list of tags.

    Example:
        >>> split_tags("math, grade 5,,")
        ["math", "grade 5"]
    """
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


def split_page_numbers(value: Optional[str]) -> List[int]:
    """
    Split the ``selectedPages`` form field into page numbers.

    Each item is read with the same integer rules as the range string parser;
    items that do not start with a digit are dropped.

    Example:
        >>> split_page_numbers("4, 9,x,12")
        [4, 9, 12]
    """
    if not value:
        return []

    pages = (parse_page_number(item) for item in value.split(","))
    return [page for page in pages if page is not None]
