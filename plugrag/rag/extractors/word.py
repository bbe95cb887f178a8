"""DOCX extraction with python-docx."""
import io
import re
import zipfile
from typing import Any, Dict, List, Optional

import structlog
from docx import Document
from docx.table import Table
from docx.text.paragraph import Paragraph

from plugrag.exceptions import ExtractionError
from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult, Extractor

logger = structlog.get_logger()

HEADING_STYLE = re.compile(r"^Heading\s*(\d)$", re.IGNORECASE)
BULLET_CHARS = re.compile(r"^[•·▪▫◦‣⁃]\s*")


class DocxExtractor(Extractor):
    """Walks a Word document body in order: paragraphs and tables."""

    kind = Kind.DOCX

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        try:
            document = Document(io.BytesIO(buffer))
        except (zipfile.BadZipFile, KeyError, ValueError) as e:
            raise ExtractionError(f"Failed to open DOCX: {e}") from e

        structure: Dict[str, List[Dict[str, Any]]] = {
            "headings": [],
            "paragraphs": [],
            "lists": [],
            "tables": [],
        }
        lines: List[str] = []

        for block in document.iter_inner_content():
            if isinstance(block, Paragraph):
                self._add_paragraph(block, lines, structure)
            elif isinstance(block, Table):
                self._add_table(block, lines, structure)

        text = "\n".join(lines).strip()

        core = document.core_properties
        metadata = {
            "extraction_method": "docx",
            "title": core.title or "",
            "author": core.author or "",
            "subject": core.subject or "",
        }

        logger.info(
            "docx_extracted",
            text_length=len(text),
            heading_count=len(structure["headings"]),
            table_count=len(structure["tables"]),
        )
        return self._result(text, structure=structure, metadata=metadata)

    def _add_paragraph(self, paragraph: Paragraph, lines: List[str], structure: Dict) -> None:
        text = re.sub(r"[ \t]{2,}", " ", paragraph.text).strip()
        if not text:
            return

        style = paragraph.style.name if paragraph.style is not None else ""
        level = heading_level(style)

        if level:
            structure["headings"].append({"text": text, "level": level, "index": len(structure["headings"])})
            lines.append("")
            lines.append(text)
            return

        if "List" in style or BULLET_CHARS.match(text):
            item = BULLET_CHARS.sub("", text)
            lists = structure["lists"]
            if lists and lists[-1]["end_line"] == len(lines) - 1:
                lists[-1]["items"].append(item)
                lists[-1]["end_line"] = len(lines)
            else:
                lists.append({"type": style or "bullet", "items": [item], "end_line": len(lines)})
            lines.append(f"• {item}")
            return

        if len(text) > 10:
            structure["paragraphs"].append({"text": text, "index": len(structure["paragraphs"])})
        lines.append(text)

    def _add_table(self, table: Table, lines: List[str], structure: Dict) -> None:
        rows = []
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            if any(cells):
                rows.append(cells)
        if not rows:
            return
        structure["tables"].append({"rows": rows, "index": len(structure["tables"])})
        lines.append("")
        lines.extend(" | ".join(cell for cell in cells if cell) for cells in rows)
        lines.append("")


def heading_level(style_name: str) -> int:
    """Heading level of a paragraph style, or 0 for body text."""
    if style_name == "Title":
        return 1
    match = HEADING_STYLE.match(style_name or "")
    return int(match.group(1)) if match else 0
