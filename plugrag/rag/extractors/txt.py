"""Plain text and markdown extraction.

Handles:
- Encoding detection (BOM, garbled-text retry with alternative encodings)
- YAML frontmatter on markdown files
- Cleaning for embedding quality
- Structure detection: headings, sections, lists, code blocks, pipe tables
- Page breaks (form feeds) preserved as page separators
"""
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
import yaml

from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult, Extractor

logger = structlog.get_logger()

PAGE_BREAK = "\f"
# Pages are joined with a form feed on its own line
PAGE_SEPARATOR = "\n\f\n"

FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)
MARKDOWN_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*$")
NUMBERED_HEADING = re.compile(r"^(\d+(?:\.\d+)*)\.?\s+[A-Z]")
UNDERLINE = re.compile(r"^(=+|-+)$")
BULLET_ITEM = re.compile(r"^[•\-*+]\s+")
NUMBERED_ITEM = re.compile(r"^\d+[.)]\s+")
LETTERED_ITEM = re.compile(r"^[a-zA-Z][.)]\s+")

GARBLED_PATTERNS = [
    re.compile("Ã¡|Ã©|Ã­|Ã³|Ãº"),  # UTF-8 read as Latin-1
    re.compile("â€™|â€œ|â€"),  # smart quotes
    re.compile("Â[^\\s]"),  # non-breaking space artifacts
    re.compile("\ufffd"),  # replacement character
]

ALTERNATIVE_ENCODINGS = ("utf-8", "cp1252", "latin-1", "utf-16")


class TextExtractor(Extractor):
    """Extractor for .txt and .md files."""

    kind = Kind.TXT

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        options = options or {}
        detected_encoding = detect_encoding(buffer)
        text = decode_text(buffer, detected_encoding)

        frontmatter, text = parse_frontmatter(text)

        if not options.get("preserve_formatting", False):
            text = clean_text(text)

        structure = detect_structure(text) if options.get("detect_structure", True) else {}
        page_count = text.count(PAGE_BREAK) + 1 if text else 0
        structure["page_count"] = page_count

        logger.info(
            "txt_extracted",
            encoding=detected_encoding,
            text_length=len(text),
            heading_count=len(structure.get("headings", [])),
            page_count=page_count,
        )

        metadata = {
            "extraction_method": "txt",
            "encoding": detected_encoding,
            "line_count": text.count("\n") + 1 if text else 0,
        }
        if frontmatter:
            metadata["frontmatter"] = frontmatter
            if frontmatter.get("title"):
                metadata["title"] = str(frontmatter["title"])

        return self._result(text, structure=structure, metadata=metadata)


def detect_encoding(buffer: bytes) -> str:
    """Best-guess encoding from byte order marks and high-bit bytes."""
    if buffer.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    if buffer.startswith(b"\xff\xfe") or buffer.startswith(b"\xfe\xff"):
        return "utf-16"
    if any(byte > 127 for byte in buffer[:1000]):
        return "utf-8"
    return "ascii"


def is_garbled(text: str) -> bool:
    return any(pattern.search(text) for pattern in GARBLED_PATTERNS)


def decode_text(buffer: bytes, encoding: str) -> str:
    """Decode bytes, retrying other encodings if the result looks garbled."""
    text = buffer.decode(encoding if encoding != "ascii" else "utf-8", errors="replace")
    if not is_garbled(text):
        return text

    for candidate in ALTERNATIVE_ENCODINGS:
        try:
            decoded = buffer.decode(candidate)
        except UnicodeDecodeError:
            continue
        if not is_garbled(decoded):
            logger.info("txt_alternative_encoding_used", encoding=candidate)
            return decoded

    logger.warning("txt_encoding_undetected_using_replacements")
    return text


def parse_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """Split YAML frontmatter from the body of a markdown document.

    Returns:
        Tuple of (frontmatter_dict, text_without_frontmatter)
    """
    match = FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text

    try:
        frontmatter = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.warning("frontmatter_parse_error", error=str(e))
        return {}, text

    if not isinstance(frontmatter, dict):
        return {}, text
    return frontmatter, text[match.end():]


def clean_text(text: str) -> str:
    """Normalise plain text for embedding.

    Line structure is kept (headings and paragraphs depend on it); only
    horizontal whitespace, separators, bullets and quote markers change.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Control characters other than tab, newline and form feed
    text = re.sub(r"[\x00-\x08\x0b\x0e-\x1f\x7f]", "", text)
    text = re.sub(r"[ \t\u00a0]{2,}", " ", text)
    text = re.sub(r"={3,}", "===", text)
    text = re.sub(r"-{3,}", "---", text)
    text = re.sub(r"\*{3,}", "***", text)
    text = re.sub(r"[ \t]+([.!?,:;])", r"\1", text)
    text = re.sub(r"^>+[ \t]*", "", text, flags=re.MULTILINE)  # email quotes
    text = re.sub(r"^[ \t]*On .* wrote:[ \t]*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"^[ \t]*[-*+][ \t]+", "• ", text, flags=re.MULTILINE)
    text = re.sub(r"^[ \t]*(\d+)[.)][ \t]+", r"\1. ", text, flags=re.MULTILINE)

    pages = []
    for page in text.split(PAGE_BREAK):
        page = "\n".join(line.strip() for line in page.split("\n"))
        page = re.sub(r"\n{3,}", "\n\n", page).strip()
        pages.append(page)
    return PAGE_SEPARATOR.join(page for page in pages if page)


def is_heading(line: str, next_line: str) -> bool:
    if MARKDOWN_HEADING.match(line):
        return True
    if next_line and UNDERLINE.match(next_line) and not UNDERLINE.match(line):
        return True
    if BULLET_ITEM.match(line) or line.startswith("|"):
        return False
    if len(line) < 60 and line == line.upper() and re.search(r"[A-Z]", line):
        return True
    if NUMBERED_HEADING.match(line) and len(line) < 80 and not line.endswith((".", ",", ";")):
        return True
    return False


def heading_level(line: str, next_line: str) -> int:
    match = MARKDOWN_HEADING.match(line)
    if match:
        return len(match.group(1))
    if next_line and next_line.startswith("="):
        return 1
    if next_line and next_line.startswith("-"):
        return 2
    match = NUMBERED_HEADING.match(line)
    if match:
        return min(match.group(1).count(".") + 1, 6)
    return 1


def clean_heading(line: str) -> str:
    line = re.sub(r"^#{1,6}\s+", "", line)
    line = re.sub(r"\s+#{1,6}$", "", line)
    line = re.sub(r"^\d+(\.\d+)*\.?\s+", "", line)
    return line.strip()


def detect_structure(text: str) -> Dict[str, Any]:
    """Find headings, sections, lists, code blocks and tables by line.

    Sections run from their heading line to the line before the next
    heading; ``heading_path`` is the breadcrumb of enclosing headings.
    """
    lines = text.split("\n")
    structure: Dict[str, Any] = {
        "headings": [],
        "sections": [],
        "lists": [],
        "code_blocks": [],
        "tables": [],
    }

    stack: List[Dict[str, Any]] = []
    current_section = None
    code_start = -1
    skip_next = False

    for i, raw in enumerate(lines):
        line = raw.strip()
        next_line = lines[i + 1].strip() if i + 1 < len(lines) else ""

        if skip_next:
            skip_next = False
            continue
        if not line or PAGE_BREAK in line:
            continue

        if line.startswith("```") or line.startswith("~~~"):
            if code_start >= 0:
                structure["code_blocks"].append({
                    "start_line": code_start,
                    "end_line": i,
                    "language": lines[code_start].strip()[3:].strip(),
                })
                code_start = -1
            else:
                code_start = i
            continue
        if code_start >= 0:
            continue

        if is_heading(line, next_line):
            level = heading_level(line, next_line)
            heading = {"text": clean_heading(line), "level": level, "line_number": i}
            structure["headings"].append(heading)

            while stack and stack[-1]["level"] >= level:
                stack.pop()
            stack.append(heading)

            if current_section:
                current_section["end_line"] = i - 1
            current_section = {
                "heading": heading["text"],
                "level": level,
                "heading_path": " > ".join(h["text"] for h in stack),
                "start_line": i,
                "end_line": len(lines) - 1,
            }
            structure["sections"].append(current_section)
            skip_next = bool(next_line and UNDERLINE.match(next_line))
            continue

        if BULLET_ITEM.match(line) or NUMBERED_ITEM.match(line) or LETTERED_ITEM.match(line):
            item = re.sub(r"^([•\-*+]|\d+[.)]|[a-zA-Z][.)])\s+", "", line)
            lists = structure["lists"]
            if lists and lists[-1]["end_line"] == i - 1:
                lists[-1]["end_line"] = i
                lists[-1]["items"].append(item)
            else:
                lists.append({
                    "start_line": i,
                    "end_line": i,
                    "type": "bullet" if BULLET_ITEM.match(line) else "numbered",
                    "items": [item],
                })
            continue

        if line.count("|") >= 2:
            cells = [cell.strip() for cell in line.strip("|").split("|")]
            if all(re.fullmatch(r":?-{3,}:?", cell) for cell in cells if cell):
                continue  # header separator row
            tables = structure["tables"]
            if tables and tables[-1]["end_line"] >= i - 2:
                tables[-1]["end_line"] = i
                tables[-1]["rows"].append(cells)
            else:
                tables.append({"start_line": i, "end_line": i, "rows": [cells]})

    return structure
