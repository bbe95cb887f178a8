"""HTML extraction with BeautifulSoup."""
import re
from typing import Any, Dict, List, Optional

import structlog
from bs4 import BeautifulSoup

from plugrag.exceptions import ExtractionError
from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult, Extractor

logger = structlog.get_logger()

NOISE_SELECTORS = (
    "script, style, noscript, nav, footer, aside, iframe, embed, object, "
    ".ads, .advertisement, .popup, .modal, .social-share, .comments, "
    '[class*="ad-"], [id*="ad-"], [class*="advertisement"]'
)

MAIN_CONTENT_SELECTORS = (
    "main",
    "article",
    '[role="main"]',
    ".main-content",
    ".content",
    ".post-content",
    ".article-content",
    ".entry-content",
    "#content",
    "#main",
)

BLOCK_TAGS = [
    "p", "div", "section", "article", "header", "main", "blockquote", "pre",
    "h1", "h2", "h3", "h4", "h5", "h6", "li", "ul", "ol", "tr", "table", "br",
]

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]


class HtmlExtractor(Extractor):
    """Extracts main content, metadata and structure from HTML pages."""

    kind = Kind.HTML

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        options = options or {}
        max_length = options.get("max_content_length", 1_000_000)

        html = buffer.decode("utf-8", errors="replace")
        truncated = len(html) > max_length
        if truncated:
            html = html[:max_length]

        soup = BeautifulSoup(html, "html.parser")
        if soup.find() is None:
            raise ExtractionError("No HTML elements found")

        for element in soup.select(NOISE_SELECTORS):
            element.decompose()

        metadata = extract_metadata(soup)
        structure = extract_structure(soup)
        main_text = main_content_text(soup)

        text = "\n\n".join(
            part for part in (metadata.get("title", ""), metadata.get("description", ""), main_text)
            if part.strip()
        )

        metadata["extraction_method"] = "html"
        if truncated:
            metadata["truncated"] = True

        logger.info(
            "html_extracted",
            text_length=len(text),
            heading_count=len(structure["headings"]),
            truncated=truncated,
        )
        return self._result(text, structure=structure, metadata=metadata)


def _meta(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    return (tag.get("content") or "").strip() if tag else ""


def extract_metadata(soup: BeautifulSoup) -> Dict[str, Any]:
    """Title, description and Open Graph / article metadata."""
    html_tag = soup.find("html")
    published = _meta(soup, property="article:published_time")
    if not published:
        time_tag = soup.find("time", attrs={"datetime": True})
        published = time_tag["datetime"] if time_tag else ""

    metadata = {
        "title": soup.title.get_text(strip=True) if soup.title else "",
        "description": _meta(soup, name="description") or _meta(soup, property="og:description"),
        "keywords": _meta(soup, name="keywords"),
        "author": _meta(soup, name="author"),
        "language": (html_tag.get("lang") if html_tag else None) or "en",
        "og_title": _meta(soup, property="og:title"),
        "og_type": _meta(soup, property="og:type"),
        "og_url": _meta(soup, property="og:url"),
        "og_image": _meta(soup, property="og:image"),
        "published_time": published,
        "modified_time": _meta(soup, property="article:modified_time"),
        "tags": [
            tag.get("content") for tag in soup.find_all("meta", property="article:tag")
            if tag.get("content")
        ],
    }
    return {key: value for key, value in metadata.items() if value}


def main_content_text(soup: BeautifulSoup) -> str:
    """Text of the main content region, one block element per line."""
    root = None
    for selector in MAIN_CONTENT_SELECTORS:
        candidate = soup.select_one(selector)
        if candidate is not None and len(candidate.get_text(strip=True)) > 100:
            root = candidate
            break
    if root is None:
        root = soup.body or soup

    for block in root.find_all(BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    lines = [re.sub(r"\s+", " ", line).strip() for line in root.get_text().split("\n")]
    return "\n".join(line for line in lines if line)


def extract_structure(soup: BeautifulSoup) -> Dict[str, List[Dict[str, Any]]]:
    structure: Dict[str, List[Dict[str, Any]]] = {
        "headings": [],
        "paragraphs": [],
        "lists": [],
        "tables": [],
        "images": [],
    }

    for element in soup.find_all(HEADING_TAGS):
        text = element.get_text(" ", strip=True)
        if text:
            structure["headings"].append({
                "level": int(element.name[1]),
                "text": text,
                "id": element.get("id", ""),
            })

    for element in soup.find_all("p"):
        text = element.get_text(" ", strip=True)
        if len(text) > 20:
            structure["paragraphs"].append({"text": text})

    for element in soup.find_all(["ul", "ol"]):
        items = [li.get_text(" ", strip=True) for li in element.find_all("li")]
        items = [item for item in items if item]
        if items:
            structure["lists"].append({"type": element.name, "items": items})

    for element in soup.find_all("table"):
        rows = []
        for tr in element.find_all("tr"):
            cells = [cell.get_text(" ", strip=True) for cell in tr.find_all(["td", "th"])]
            if any(cells):
                rows.append(cells)
        if rows:
            structure["tables"].append({"rows": rows})

    for element in soup.find_all("img"):
        alt = (element.get("alt") or "").strip()
        if alt:
            structure["images"].append({"src": element.get("src", ""), "alt": alt})

    return structure
