"""Document extractors, one per kind, plus the mandatory fallback.

``extract_document`` is the single entry point: it detects the kind, runs
the matching extractor and falls back to raw-text salvage if that fails.
"""
from typing import Any, Dict, Optional

import structlog

from plugrag.rag.detector import Kind, detect
from plugrag.rag.extractors.base import ExtractionResult, Extractor
from plugrag.rag.extractors.fallback import FallbackExtractor
from plugrag.rag.extractors.markup import HtmlExtractor
from plugrag.rag.extractors.pdf import PdfExtractor
from plugrag.rag.extractors.tabular import CsvExtractor
from plugrag.rag.extractors.txt import TextExtractor
from plugrag.rag.extractors.word import DocxExtractor

logger = structlog.get_logger()

EXTRACTORS: Dict[Kind, Extractor] = {
    Kind.PDF: PdfExtractor(),
    Kind.DOCX: DocxExtractor(),
    Kind.TXT: TextExtractor(),
    Kind.CSV: CsvExtractor(),
    Kind.HTML: HtmlExtractor(),
}

FALLBACK = FallbackExtractor()


def extract_document(
    buffer: bytes,
    filename: Optional[str],
    options: Optional[Dict[str, Any]] = None,
) -> ExtractionResult:
    """Extract text from a document of any supported kind.

    Structured extraction failing is never fatal: any exception, or an
    empty text result, hands the buffer to the fallback extractor.

    Args:
        buffer: Raw file bytes
        filename: Original file name (used for detection and placeholders)
        options: Extractor options (max_pages, max_rows, ...)

    Returns:
        ExtractionResult with non-empty text
    """
    options = dict(options or {})
    kind = detect(filename, buffer)
    extractor = EXTRACTORS.get(kind)

    result = None
    if extractor is not None:
        try:
            result = extractor.extract(buffer, options)
            if not result.text.strip():
                logger.warning("extraction_empty_using_fallback", filename=filename, kind=kind.value)
                options["original_error"] = "empty text"
                result = None
        except Exception as e:
            logger.warning(
                "extraction_failed_using_fallback",
                filename=filename,
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            options["original_error"] = str(e) or type(e).__name__

    if result is None:
        options["filename"] = filename
        result = FALLBACK.extract(buffer, options)

    result.metadata.setdefault("extraction_method", kind.value)
    result.metadata["original_filename"] = filename
    result.metadata["detected_file_type"] = kind.value

    logger.info(
        "document_extracted",
        filename=filename,
        kind=result.kind,
        method=result.metadata["extraction_method"],
        character_count=result.character_count,
        word_count=result.word_count,
    )
    return result


__all__ = [
    "EXTRACTORS",
    "ExtractionResult",
    "Extractor",
    "extract_document",
]
