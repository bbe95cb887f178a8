"""Shared types and helpers for document extractors."""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from plugrag.rag.detector import Kind


@dataclass
class ExtractionResult:
    """Text plus whatever structure an extractor could recover."""

    text: str
    structure: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    word_count: int = 0
    character_count: int = 0
    # Parsed rows, only for tabular documents
    data: Optional[list] = None

    @property
    def kind(self) -> str:
        return self.metadata.get("file_type", Kind.TXT.value)


class Extractor:
    """Turns raw bytes of one document kind into an ExtractionResult.

    Subclasses raise on input they cannot handle; dispatch catches the
    error and hands the buffer to the fallback extractor.
    """

    kind: Kind = Kind.UNKNOWN

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        raise NotImplementedError

    def _result(
        self,
        text: str,
        structure: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        data: Optional[list] = None,
    ) -> ExtractionResult:
        meta = {
            "file_type": self.kind.value,
            "extracted_at": datetime.now(timezone.utc).isoformat(),
        }
        meta.update(metadata or {})
        return ExtractionResult(
            text=text,
            structure=structure or {},
            metadata=meta,
            word_count=count_words(text),
            character_count=len(text),
            data=data,
        )


def count_words(text: str) -> int:
    return len(text.split())


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces and blank lines, trim every line."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\u00a0]+", " ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
