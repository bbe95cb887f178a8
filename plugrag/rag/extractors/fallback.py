"""Last-resort extractor: salvage whatever text a buffer holds."""
import re
from typing import Any, Dict, Optional

import structlog

from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult, Extractor, normalize_whitespace

logger = structlog.get_logger()

MIN_READABLE_CHARS = 20

PLACEHOLDER = (
    'File "{filename}" was processed but readable text could not be extracted. '
    "This may be a binary file, image, or encrypted document."
)


class FallbackExtractor(Extractor):
    """Decodes bytes as UTF-8, then Latin-1, then printable ASCII.

    Never raises and never returns empty text: if too little readable text
    survives, a placeholder naming the file is returned instead.
    """

    kind = Kind.UNKNOWN

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        options = options or {}
        filename = options.get("filename") or "unknown"
        buffer = buffer or b""

        text, encoding = self._decode(buffer)
        text = _strip_control_characters(text)
        text = normalize_whitespace(text)

        used_placeholder = len(text) < MIN_READABLE_CHARS
        if used_placeholder:
            text = PLACEHOLDER.format(filename=filename)

        logger.info(
            "fallback_extraction_completed",
            filename=filename,
            encoding=encoding,
            text_length=len(text),
            placeholder=used_placeholder,
        )

        return self._result(
            text,
            metadata={
                "extraction_method": "fallback",
                "encoding": encoding,
                "placeholder": used_placeholder,
                "original_error": options.get("original_error"),
            },
        )

    def _decode(self, buffer: bytes):
        try:
            text = buffer.decode("utf-8")
            if _printable_ratio(text) > 0.85:
                return text, "utf-8"
        except UnicodeDecodeError:
            pass

        text = buffer.decode("latin-1")
        if _printable_ratio(text) > 0.85:
            return text, "latin-1"

        # Keep printable ASCII only
        return re.sub(r"[^\x20-\x7e\n\t]+", " ", buffer.decode("ascii", errors="ignore")), "ascii"


def _printable_ratio(text: str) -> float:
    if not text:
        return 0.0
    printable = sum(1 for ch in text if ch.isprintable() or ch in "\n\r\t")
    return printable / len(text)


def _strip_control_characters(text: str) -> str:
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ufffd]", " ", text)
