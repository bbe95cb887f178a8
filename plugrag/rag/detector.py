"""Document format detection by extension, then by content sniffing."""
import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Optional

import structlog

from plugrag import config

logger = structlog.get_logger()


class Kind(str, Enum):
    """Closed set of document kinds the pipeline understands."""

    PDF = "pdf"
    DOCX = "docx"
    TXT = "txt"
    CSV = "csv"
    HTML = "html"
    UNKNOWN = "unknown"


EXTENSION_KINDS = {
    "pdf": Kind.PDF,
    "docx": Kind.DOCX,
    "doc": Kind.DOCX,
    "txt": Kind.TXT,
    "text": Kind.TXT,
    "md": Kind.TXT,
    "markdown": Kind.TXT,
    "csv": Kind.CSV,
    "tsv": Kind.CSV,
    "html": Kind.HTML,
    "htm": Kind.HTML,
}

SUPPORTED_FILE_TYPES = {
    Kind.PDF: {
        "extensions": [".pdf"],
        "mime_types": ["application/pdf"],
        "description": "Portable Document Format",
    },
    Kind.DOCX: {
        "extensions": [".docx", ".doc"],
        "mime_types": [
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/msword",
        ],
        "description": "Microsoft Word Document",
    },
    Kind.TXT: {
        "extensions": [".txt", ".text", ".md", ".markdown"],
        "mime_types": ["text/plain", "text/markdown"],
        "description": "Plain Text File",
    },
    Kind.CSV: {
        "extensions": [".csv", ".tsv"],
        "mime_types": ["text/csv", "application/csv", "text/tab-separated-values"],
        "description": "Comma-Separated Values",
    },
    Kind.HTML: {
        "extensions": [".html", ".htm"],
        "mime_types": ["text/html"],
        "description": "HyperText Markup Language",
    },
}

SNIFF_BYTES = 1000
HTML_MARKERS = ("<!doctype html", "<html", "<head>", "<body>")
OOXML_MARKERS = (b"word/", b"xl/", b"ppt/", b"[Content_Types].xml")
CSV_DELIMITERS = (",", ";", "\t")


def extension_of(filename: Optional[str]) -> str:
    """Lower-cased extension without the dot ('' if none)."""
    if not filename:
        return ""
    return PurePosixPath(filename).suffix.lstrip(".").lower()


def detect(filename: Optional[str], buffer: bytes) -> Kind:
    """Detect the document kind.

    The extension wins when it is known. Otherwise the first kilobyte of
    the buffer is sniffed. Never raises; anything unrecognised is text.

    Args:
        filename: Original file name (may be None)
        buffer: Raw file bytes

    Returns:
        Detected Kind (never Kind.UNKNOWN)
    """
    kind = EXTENSION_KINDS.get(extension_of(filename))
    if kind is not None:
        return kind

    kind = sniff(buffer)
    logger.debug("format_sniffed", filename=filename, kind=kind.value)
    return kind


def sniff(buffer: bytes) -> Kind:
    """Guess the kind from content alone."""
    if not buffer or len(buffer) < 4:
        return Kind.TXT

    head = buffer[:SNIFF_BYTES]

    if head.startswith(b"%PDF"):
        return Kind.PDF

    if head.startswith(b"PK") and any(marker in head for marker in OOXML_MARKERS):
        return Kind.DOCX

    text = head.decode("utf-8", errors="ignore")
    lowered = text.lower()
    if any(marker in lowered for marker in HTML_MARKERS):
        return Kind.HTML

    if _looks_like_csv(text):
        return Kind.CSV

    return Kind.TXT


def _looks_like_csv(text: str) -> bool:
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return False

    # The final line of a full sniff window may be cut short
    if len(lines) > 1 and len(text) >= SNIFF_BYTES - 4:
        lines = lines[:-1]
    sample = lines[:5]

    first = sample[0]
    for delimiter in CSV_DELIMITERS:
        count = first.count(delimiter)
        if count <= 2:
            continue
        if all(line.count(delimiter) == count for line in sample[1:]):
            return True
    return False


def supported_file_types() -> Dict[str, Dict[str, Any]]:
    """Catalogue of supported kinds with extensions and MIME types."""
    return {kind.value: dict(info) for kind, info in SUPPORTED_FILE_TYPES.items()}


def validate_file(
    buffer: bytes,
    filename: str,
    max_file_size: int = None,
    allowed_kinds: Optional[Iterable[Kind]] = None,
) -> Dict[str, Any]:
    """Validate an upload before it is enqueued.

    Args:
        buffer: Raw file bytes
        filename: Original file name
        max_file_size: Size ceiling in bytes (default from config)
        allowed_kinds: Kinds accepted (default: every supported kind)

    Returns:
        Dict with is_valid, errors, warnings and detected_kind
    """
    max_file_size = max_file_size or config.MAX_FILE_SIZE
    allowed = set(allowed_kinds or SUPPORTED_FILE_TYPES)
    errors = []
    warnings = []

    size = len(buffer or b"")
    if size > max_file_size:
        errors.append(
            f"File size ({size / 1024 / 1024:.1f}MB) exceeds maximum allowed size "
            f"({max_file_size / 1024 / 1024:.1f}MB)"
        )
    if size < config.MIN_FILE_SIZE:
        errors.append("File is too small or empty")

    kind = detect(filename, buffer or b"")
    if kind not in allowed:
        errors.append(f"File type '{kind.value}' is not allowed")

    if size > config.LARGE_FILE_WARNING_SIZE:
        warnings.append("Large file may take longer to process")

    if filename and re.search(r"[<>:\"|?*\x00-\x1f]", filename):
        warnings.append("Filename contains special characters")

    return {
        "is_valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "detected_kind": kind.value,
    }
