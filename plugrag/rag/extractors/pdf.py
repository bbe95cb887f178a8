"""PDF text extraction with pypdf."""
import io
import re
from typing import Any, Dict, Optional

import structlog
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from plugrag.exceptions import ExtractionError
from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult, Extractor
from plugrag.rag.extractors.txt import PAGE_SEPARATOR

logger = structlog.get_logger()

INFO_FIELDS = {
    "/Title": "title",
    "/Author": "author",
    "/Subject": "subject",
    "/Creator": "creator",
    "/Producer": "producer",
    "/CreationDate": "creation_date",
    "/ModDate": "modification_date",
}


class PdfExtractor(Extractor):
    """Extracts page text and document info from PDF files.

    Pages are joined with the page separator so the chunker can keep
    fragments within a page and attribute page numbers.
    """

    kind = Kind.PDF

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        options = options or {}
        max_pages = options.get("max_pages", 100)

        try:
            reader = PdfReader(io.BytesIO(buffer))
            if reader.is_encrypted:
                reader.decrypt("")
            total_pages = len(reader.pages)
            pages = []
            for number, page in enumerate(reader.pages[:max_pages], 1):
                content = clean_pdf_text(page.extract_text() or "")
                if content:
                    pages.append({
                        "page_number": number,
                        "content": content,
                        "word_count": len(content.split()),
                    })
        except (PdfReadError, ValueError, KeyError, TypeError) as e:
            raise ExtractionError(f"Failed to read PDF: {e}") from e

        if not pages:
            raise ExtractionError("PDF contains no extractable text")

        text = PAGE_SEPARATOR.join(page["content"] for page in pages)
        metadata = {"extraction_method": "pdf", "total_pages": total_pages}
        metadata.update(_document_info(reader))

        logger.info(
            "pdf_extracted",
            total_pages=total_pages,
            pages_with_text=len(pages),
            text_length=len(text),
        )

        structure = {
            "pages": [
                {"page_number": page["page_number"], "word_count": page["word_count"]}
                for page in pages
            ],
            "page_count": len(pages),
        }
        return self._result(text, structure=structure, metadata=metadata)


def clean_pdf_text(text: str) -> str:
    """Remove page furniture and layout artifacts from one page of text."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"Page \d+( of \d+)?", "", text, flags=re.IGNORECASE)
    text = re.sub(r"^\s*\d+\s*$", "", text, flags=re.MULTILINE)  # page numbers
    text = re.sub(r"(\w)-\n(\w)", r"\1\2", text)  # hyphenation
    text = re.sub(r"\[\s*_*\s*\]", "", text)  # form checkboxes
    text = re.sub(r"_{3,}", "", text)
    text = re.sub(r"[ \t]+([.!?])", r"\1", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _document_info(reader: PdfReader) -> Dict[str, str]:
    try:
        info = reader.metadata or {}
    except (PdfReadError, ValueError) as e:
        logger.warning("pdf_metadata_unreadable", error=str(e))
        return {}
    return {
        name: str(info[key])
        for key, name in INFO_FIELDS.items()
        if info.get(key)
    }
