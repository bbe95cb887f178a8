"""Structure-aware chunking under a token budget.

Every document kind goes through the same cut order:
- structural units first (pages, sections, headings, paragraphs, CSV groups)
- sentences when a unit alone is over budget
- raw character windows when a sentence alone is over budget

Consecutive fragments are then stitched with a few overlapping words and
validated against the hard token ceiling. Token counts here are estimates
(characters / 4); the embedding step recounts with a real tokenizer.
"""
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

import structlog

from plugrag import config
from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult
from plugrag.rag.extractors.tabular import describe_row
from plugrag.rag.extractors.txt import PAGE_BREAK
from plugrag.rag.tokens import CHARS_PER_TOKEN, estimate_tokens

logger = structlog.get_logger()

PARAGRAPH_BOUNDARY = re.compile(r"\n\s*\n")
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")

# Fragments that describe a whole document; never stitched with overlap
METADATA_TYPES = {"column_metadata"}

MAX_ROWS_PER_CATEGORY = 50
HTML_SECTION_FILL = 0.8


@dataclass
class Chunk:
    """A retrieval-ready text fragment."""

    content: str
    tokens: int
    type: str
    chunk_index: float = 0
    has_overlap: bool = False
    heading: Optional[str] = None
    page_number: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Chunker:
    """Splits extracted documents into fragments within a token budget."""

    def __init__(
        self,
        max_chunk_size: int = None,
        overlap: int = None,
        max_tokens: int = None,
    ):
        """Initialize the chunker.

        Args:
            max_chunk_size: Target fragment size in estimated tokens (default from config)
            overlap: Overlap budget in estimated tokens (default from config)
            max_tokens: Hard per-fragment token ceiling (default from config)
        """
        self.max_chunk_size = max_chunk_size or config.CHUNK_SIZE
        self.overlap = config.CHUNK_OVERLAP if overlap is None else overlap
        self.max_tokens = max_tokens or config.MAX_CHUNK_TOKENS

        if self.max_chunk_size <= 0 or self.max_tokens <= 0:
            raise ValueError("Chunk size and token ceiling must be positive")
        if self.overlap < 0:
            raise ValueError(f"Overlap ({self.overlap}) must not be negative")

        logger.debug(
            "chunker_initialized",
            max_chunk_size=self.max_chunk_size,
            overlap=self.overlap,
            max_tokens=self.max_tokens,
        )

    def chunk(
        self,
        text: str,
        structure: Optional[Dict[str, Any]] = None,
        kind: str = Kind.TXT.value,
        data: Optional[list] = None,
    ) -> List[Chunk]:
        """Split text into ordered fragments.

        Args:
            text: Extracted document text
            structure: Structure recovered by the extractor
            kind: Document kind the text came from
            data: Parsed rows for tabular documents

        Returns:
            Fragments with strictly increasing chunk_index
        """
        if not text or not text.strip():
            return []

        structure = structure or {}
        try:
            kind = Kind(kind)
        except ValueError:
            kind = Kind.TXT

        if kind == Kind.CSV and structure.get("columns") and data:
            chunks = self._chunk_table(structure, data)
        elif PAGE_BREAK in text:
            chunks = self._chunk_pages(text, structure)
        elif kind == Kind.TXT and structure.get("sections"):
            chunks = self._chunk_sections(text, structure)
        elif kind in (Kind.DOCX, Kind.HTML) and structure.get("headings"):
            chunks = self._chunk_headings(text, structure, kind)
        else:
            chunks = self.split_paragraphs(text)

        if kind == Kind.PDF and chunks and chunks[-1].type == "paragraph_boundary":
            chunks[-1].type = "final_chunk"

        chunks = self._add_overlap(chunks)
        for index, chunk in enumerate(chunks):
            chunk.chunk_index = index
        chunks = self._enforce_ceiling(chunks)

        logger.info(
            "text_chunked",
            kind=kind.value,
            text_length=len(text),
            chunk_count=len(chunks),
            avg_chunk_tokens=sum(c.tokens for c in chunks) // len(chunks) if chunks else 0,
        )
        return chunks

    # Splitting primitives

    def _pack(
        self,
        units: List[str],
        joiner: str,
        unit_type: str,
        limit: int,
        split_oversized: Callable[[str, int], List[Chunk]],
    ) -> List[Chunk]:
        """Greedily join units while the running estimate stays within limit.

        A unit whose estimate is exactly ``limit`` still fits; oversized
        units are handed to ``split_oversized`` on their own.
        """
        chunks: List[Chunk] = []
        current = ""

        for unit in units:
            unit = unit.strip()
            if not unit:
                continue

            if estimate_tokens(unit) > limit:
                if current:
                    chunks.append(_make_chunk(current, unit_type))
                    current = ""
                chunks.extend(split_oversized(unit, limit))
                continue

            candidate = f"{current}{joiner}{unit}" if current else unit
            if estimate_tokens(candidate) > limit:
                chunks.append(_make_chunk(current, unit_type))
                current = unit
            else:
                current = candidate

        if current:
            chunks.append(_make_chunk(current, unit_type))
        return chunks

    def split_paragraphs(self, text: str, limit: int = None) -> List[Chunk]:
        """Paragraph accumulation, falling back to sentences."""
        return self._pack(
            PARAGRAPH_BOUNDARY.split(text),
            "\n\n",
            "paragraph_boundary",
            limit or self.max_chunk_size,
            self.split_sentences,
        )

    def split_sentences(self, text: str, limit: int = None) -> List[Chunk]:
        """Sentence accumulation, falling back to character windows."""
        return self._pack(
            SENTENCE_BOUNDARY.split(text),
            " ",
            "sentence_boundary",
            limit or self.max_chunk_size,
            self.split_characters,
        )

    def split_characters(self, text: str, limit: int = None) -> List[Chunk]:
        """Fixed windows of ``limit`` tokens worth of characters.

        Consecutive windows share min(100, 10% of the window) characters.
        """
        window = (limit or self.max_chunk_size) * CHARS_PER_TOKEN
        overlap = min(100, int(window * 0.1))
        step = max(1, window - overlap)

        chunks = []
        for start in range(0, len(text), step):
            piece = text[start:start + window]
            if piece.strip():
                chunks.append(_make_chunk(piece, "character_window"))
            if start + window >= len(text):
                break
        return chunks

    # Per-kind strategies

    def _chunk_pages(self, text: str, structure: Dict[str, Any]) -> List[Chunk]:
        page_numbers = [page["page_number"] for page in structure.get("pages", [])]
        chunks = []
        for position, page in enumerate(text.split(PAGE_BREAK)):
            if not page.strip():
                continue
            number = page_numbers[position] if position < len(page_numbers) else position + 1
            for chunk in self.split_paragraphs(page):
                chunk.page_number = number
                chunks.append(chunk)
        return chunks

    def _chunk_sections(self, text: str, structure: Dict[str, Any]) -> List[Chunk]:
        lines = text.split("\n")
        sections = structure["sections"]
        chunks = []

        preamble = "\n".join(lines[:sections[0]["start_line"]]).strip()
        if preamble:
            chunks.extend(self.split_paragraphs(preamble))

        for section in sections:
            body = "\n".join(lines[section["start_line"]:section["end_line"] + 1]).strip()
            if not body:
                continue
            metadata = {"heading_path": section.get("heading_path", section["heading"])}

            tokens = estimate_tokens(body)
            if tokens <= self.max_chunk_size:
                chunks.append(Chunk(
                    content=body,
                    tokens=tokens,
                    type="section",
                    heading=section["heading"],
                    metadata=metadata,
                ))
                continue

            for part in self.split_paragraphs(body):
                if part.type == "paragraph_boundary":
                    part.type = "section_part"
                part.heading = section["heading"]
                part.metadata.update(metadata)
                chunks.append(part)

        return chunks

    def _chunk_headings(self, text: str, structure: Dict[str, Any], kind: Kind) -> List[Chunk]:
        """Line accumulation that starts a new fragment at headings.

        HTML only cuts at a heading no deeper than the current one, or once
        the running fragment is mostly full.
        """
        levels: Dict[str, int] = {}
        for heading in structure["headings"]:
            levels.setdefault(heading["text"].strip(), heading["level"])

        chunks: List[Chunk] = []
        current: List[str] = []
        current_heading: Optional[str] = None
        current_level = 0

        def flush() -> None:
            if current:
                chunks.append(_make_chunk("\n".join(current), "structured_section", heading=current_heading))
                current.clear()

        for raw in text.split("\n"):
            line = raw.strip()
            if not line:
                continue

            level = levels.get(line)
            if level is not None:
                running = estimate_tokens("\n".join(current))
                if current and (
                    kind != Kind.HTML
                    or current_level == 0
                    or level <= current_level
                    or running > self.max_chunk_size * HTML_SECTION_FILL
                ):
                    flush()
                if not current:
                    current_heading, current_level = line, level

            if estimate_tokens(line) > self.max_chunk_size:
                flush()
                for part in self.split_sentences(line):
                    part.heading = current_heading
                    chunks.append(part)
                continue

            if current and estimate_tokens("\n".join(current + [line])) > self.max_chunk_size:
                flush()
            current.append(line)

        flush()
        return chunks

    def _chunk_table(self, structure: Dict[str, Any], data: List[Dict[str, Any]]) -> List[Chunk]:
        columns = structure["columns"]
        names = [column["name"] for column in columns]
        chunks: List[Chunk] = []

        column_lines = [
            f"{c['name']} ({c['type']}): {c['unique_values']} unique values, "
            f"{round(c['fill_rate'] * 100)}% filled"
            for c in columns
        ]
        chunks.extend(self._pack(
            ["Dataset Structure:"] + column_lines,
            "\n",
            "column_metadata",
            self.max_chunk_size,
            self.split_characters,
        ))

        categories = structure.get("categories") or {}
        if categories:
            for column_name, values in categories.items():
                for value in values:
                    rows = [
                        describe_row(row, names, number)
                        for number, row in enumerate(data, 1)
                        if row.get(column_name) == value
                    ][:MAX_ROWS_PER_CATEGORY]
                    rows = [row for row in rows if row]
                    if rows:
                        chunks.extend(self._category_chunks(column_name, value, rows))
            return chunks

        batch_size = max(1, self.max_chunk_size // 50)
        for start in range(0, len(data), batch_size):
            batch = data[start:start + batch_size]
            lines = [describe_row(row, names, start + offset + 1) for offset, row in enumerate(batch)]
            for part in self._pack(lines, "\n", "row_batch", self.max_chunk_size, self.split_sentences):
                part.metadata.update({"start_row": start, "end_row": start + len(batch) - 1})
                chunks.append(part)
        return chunks

    def _category_chunks(self, column_name: str, value: str, rows: List[str]) -> List[Chunk]:
        header = f'Category "{value}" in {column_name}:'
        metadata = {"category": value, "column_name": column_name}
        content = header + "\n" + "\n".join(rows)

        if estimate_tokens(content) <= self.max_chunk_size:
            return [_make_chunk(content, "category_group", metadata=metadata)]

        limit = max(1, self.max_chunk_size - estimate_tokens(header + "\n"))
        parts = self._pack(rows, "\n", "category_group_part", limit, self.split_sentences)
        for part in parts:
            part.content = f"{header}\n{part.content}"
            part.tokens = estimate_tokens(part.content)
            part.type = "category_group_part"
            part.metadata.update(metadata)
        return parts

    # Post-processing

    def _add_overlap(self, chunks: List[Chunk]) -> List[Chunk]:
        """Prefix each fragment with the trailing words of the previous one."""
        if len(chunks) <= 1 or self.overlap <= 0:
            return chunks

        stitched = [chunks[0]]
        for previous, current in zip(chunks, chunks[1:]):
            if previous.type in METADATA_TYPES or current.type in METADATA_TYPES:
                stitched.append(current)
                continue

            words = previous.content.split()
            count = min(self.overlap // 4, len(words) // 2)
            content = current.content
            prefix = ""
            while count > 0:
                prefix = " ".join(words[-count:]) + " "
                content = prefix + current.content
                if estimate_tokens(content) <= self.max_tokens:
                    break
                count -= 1

            if count > 0:
                current = replace(
                    current,
                    content=content,
                    tokens=estimate_tokens(content),
                    has_overlap=True,
                    # Characters of borrowed words at the start of the content
                    metadata={**current.metadata, "overlap_chars": len(prefix)},
                )
            stitched.append(current)

        return stitched

    def _enforce_ceiling(self, chunks: List[Chunk]) -> List[Chunk]:
        """Re-split any fragment over the hard token ceiling.

        Sub-fragments keep their parent's ordinal plus sub_index / 100, so
        ordering is preserved without renumbering.
        """
        validated: List[Chunk] = []

        for chunk in chunks:
            chunk.tokens = estimate_tokens(chunk.content)
            if chunk.tokens <= self.max_tokens:
                validated.append(chunk)
                continue

            logger.warning(
                "chunk_exceeds_token_ceiling_splitting",
                chunk_index=chunk.chunk_index,
                tokens=chunk.tokens,
                max_tokens=self.max_tokens,
            )
            parts = self.split_sentences(chunk.content, self.max_tokens)
            divisor = 100 if len(parts) < 100 else 10 ** len(str(len(parts)))

            for sub_index, part in enumerate(parts):
                if part.tokens > self.max_tokens:
                    logger.error(
                        "chunk_still_exceeds_token_ceiling",
                        chunk_index=chunk.chunk_index,
                        tokens=part.tokens,
                    )
                parent_metadata = {k: v for k, v in chunk.metadata.items() if k != "overlap_chars"}
                validated.append(replace(
                    chunk,
                    content=part.content,
                    tokens=part.tokens,
                    chunk_index=chunk.chunk_index + sub_index / divisor,
                    has_overlap=chunk.has_overlap and sub_index == 0,
                    metadata={
                        **parent_metadata,
                        "is_split": True,
                        "is_force_split": part.type == "character_window",
                        "split_index": sub_index,
                    },
                ))

        return validated

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_tokens": 0,
                "avg_chunk_tokens": 0,
                "min_chunk_tokens": 0,
                "max_chunk_tokens": 0,
            }

        sizes = [c.tokens for c in chunks]
        types: Dict[str, int] = {}
        for c in chunks:
            types[c.type] = types.get(c.type, 0) + 1

        return {
            "chunk_count": len(chunks),
            "total_tokens": sum(sizes),
            "avg_chunk_tokens": sum(sizes) // len(chunks),
            "min_chunk_tokens": min(sizes),
            "max_chunk_tokens": max(sizes),
            "types": types,
        }


def _make_chunk(content: str, chunk_type: str, **kwargs: Any) -> Chunk:
    content = content.strip()
    return Chunk(content=content, tokens=estimate_tokens(content), type=chunk_type, **kwargs)


# Singleton instance for convenience
_chunker_instance: Optional[Chunker] = None


def get_chunker() -> Chunker:
    """Get a singleton chunker instance with default config."""
    global _chunker_instance
    if _chunker_instance is None:
        _chunker_instance = Chunker()
    return _chunker_instance


def chunk_document(extraction: ExtractionResult, chunker: Optional[Chunker] = None) -> List[Chunk]:
    """Chunk an extraction result with the strategy for its kind.

    Args:
        extraction: Output of extract_document
        chunker: Chunker to use (default singleton)

    Returns:
        List of Chunk objects
    """
    chunker = chunker or get_chunker()
    return chunker.chunk(
        extraction.text,
        extraction.structure,
        extraction.kind,
        extraction.data,
    )
