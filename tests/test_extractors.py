"""Tests for extraction dispatch, the fallback and per-kind extractors."""
import io

import docx

from plugrag.rag.extractors import extract_document
from plugrag.rag.extractors.fallback import PLACEHOLDER, FallbackExtractor
from plugrag.rag.extractors.tabular import CsvExtractor, describe_row
from plugrag.rag.extractors.txt import PAGE_SEPARATOR, TextExtractor


def test_corrupted_pdf_falls_back_to_text():
    buffer = b"%PDF-1.4\nthis is not really a pdf, but it has readable words in it\n%%EOF"

    result = extract_document(buffer, "broken.pdf")

    assert result.text.strip()
    assert result.metadata["extraction_method"] == "fallback"
    assert result.metadata["detected_file_type"] == "pdf"
    assert result.metadata["original_filename"] == "broken.pdf"
    assert result.metadata["original_error"]
    assert "readable words" in result.text


def test_corrupted_docx_falls_back_to_placeholder():
    result = extract_document(b"PK\x03\x04\x00\x00garbage", "report.docx")

    assert result.text == PLACEHOLDER.format(filename="report.docx")
    assert result.metadata["placeholder"] is True
    assert result.kind == "unknown"


def test_binary_text_file_gets_placeholder():
    result = extract_document(bytes(range(0, 9)) * 20, "blob.txt")

    assert result.text == PLACEHOLDER.format(filename="blob.txt")
    assert result.metadata["detected_file_type"] == "txt"


def test_fallback_decodes_latin1():
    text = "Café crème brûlée recipes for everyone"
    result = FallbackExtractor().extract(text.encode("latin-1"), {"filename": "menu"})

    assert result.metadata["encoding"] == "latin-1"
    assert "recipes for everyone" in result.text
    assert result.metadata["placeholder"] is False


def test_fallback_never_returns_empty():
    result = FallbackExtractor().extract(b"", {})

    assert result.text == PLACEHOLDER.format(filename="unknown")


def test_markdown_structure():
    source = (
        "---\ntitle: Handbook\n---\n"
        "# Handbook\n\nWelcome aboard.\n\n"
        "## Holidays\n\nYou get 25 days.\n\n"
        "- first item\n- second item\n\n"
        "## Expenses\n\nKeep receipts.\n"
    )

    result = TextExtractor().extract(source.encode())

    assert result.metadata["title"] == "Handbook"
    headings = [h["text"] for h in result.structure["headings"]]
    assert headings == ["Handbook", "Holidays", "Expenses"]
    sections = result.structure["sections"]
    assert sections[1]["heading_path"] == "Handbook > Holidays"
    assert result.structure["lists"][0]["items"] == ["first item", "second item"]
    assert result.structure["page_count"] == 1


def test_text_pages_are_kept_apart():
    result = TextExtractor().extract(b"page one text\fpage two text\f\fpage three")

    assert result.text.split(PAGE_SEPARATOR) == ["page one text", "page two text", "page three"]
    assert result.structure["page_count"] == 3


def test_csv_records_and_structure():
    data = (
        "name,department,salary\n"
        "Ada,Engineering,120\n"
        "Bob,Engineering,100\n"
        "Cy,Sales,90\n"
    ).encode()

    result = CsvExtractor().extract(data)

    assert "Dataset Columns:" in result.text
    assert "Record 1: name: Ada, department: Engineering, salary: 120." in result.text
    assert len(result.data) == 3
    assert result.data[2]["name"] == "Cy"
    types = {c["name"]: c["type"] for c in result.structure["columns"]}
    assert types["salary"] == "numeric"
    assert result.metadata["total_rows"] == 3


def test_csv_semicolon_delimiter():
    result = CsvExtractor().extract(b"city;country\nParis;France\nLima;Peru\n")

    assert result.metadata["delimiter"] == ";"
    assert "Record 2: city: Lima, country: Peru." in result.text


def test_describe_row_skips_empty_values():
    row = {"a": "1", "b": "", "c": "x"}

    assert describe_row(row, ["a", "b", "c"], 4) == "Record 4: a: 1, c: x."
    assert describe_row({"a": ""}, ["a"], 1) == ""


def test_html_drops_noise_and_keeps_structure():
    page = b"""<html lang="fr"><head><title>Guide</title>
    <meta name="description" content="How the office works"></head>
    <body><nav>Home | About</nav>
    <h1>Intro</h1><p>The office opens at nine and closes at six every weekday.</p>
    <script>track()</script><footer>Copyright</footer></body></html>"""

    result = extract_document(page, "guide.html")

    assert result.kind == "html"
    assert "Guide" in result.text
    assert "opens at nine" in result.text
    assert "track()" not in result.text
    assert "Home | About" not in result.text
    assert result.metadata["language"] == "fr"
    assert result.structure["headings"][0] == {"level": 1, "text": "Intro", "id": ""}


def test_docx_headings_and_tables():
    document = docx.Document()
    document.add_heading("Policies", level=1)
    document.add_paragraph("Staff must badge in at the front desk.")
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Room"
    table.cell(0, 1).text = "Floor"
    table.cell(1, 0).text = "Atlas"
    table.cell(1, 1).text = "3"
    buffer = io.BytesIO()
    document.save(buffer)

    result = extract_document(buffer.getvalue(), "policies.docx")

    assert result.kind == "docx"
    assert "badge in" in result.text
    assert "Atlas" in result.text
    assert result.structure["headings"][0]["text"] == "Policies"
    assert len(result.structure["tables"]) == 1
