"""CSV extraction into natural-language records plus column analysis."""
import io
from typing import Any, Dict, List, Optional

import pandas as pd
import structlog

from plugrag.rag.detector import Kind
from plugrag.rag.extractors.base import ExtractionResult, Extractor
from plugrag.exceptions import ExtractionError

logger = structlog.get_logger()

DELIMITERS = (",", ";", "\t", "|")
MAX_DESCRIBED_ROWS = 500


class CsvExtractor(Extractor):
    """Extractor for delimited tabular files."""

    kind = Kind.CSV

    def extract(self, buffer: bytes, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        options = options or {}
        max_rows = options.get("max_rows", 10000)
        has_header = options.get("has_header", True)

        raw = buffer.decode("utf-8-sig", errors="replace")
        delimiter = options.get("delimiter") or sniff_delimiter(raw)

        try:
            frame = pd.read_csv(
                io.StringIO(raw),
                sep=delimiter,
                header=0 if has_header else None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                nrows=max_rows,
                engine="python",
                on_bad_lines="warn",
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeError) as e:
            raise ExtractionError(f"Failed to parse CSV: {e}") from e

        if not has_header:
            frame.columns = [f"Column_{i + 1}" for i in range(len(frame.columns))]
        frame.columns = [str(column).strip() for column in frame.columns]
        frame = frame.fillna("").apply(lambda column: column.str.strip())

        headers = list(frame.columns)
        rows = frame.to_dict(orient="records")
        if not rows:
            raise ExtractionError("CSV contains no data rows")

        columns = analyze_columns(frame)
        structure = analyze_structure(frame, columns)
        text = build_text(rows, headers, columns)

        logger.info(
            "csv_extracted",
            delimiter=delimiter,
            total_rows=len(rows),
            total_columns=len(headers),
            category_columns=list(structure["categories"]),
        )

        return self._result(
            text,
            structure=structure,
            metadata={
                "extraction_method": "csv",
                "delimiter": delimiter,
                "has_header": has_header,
                "total_rows": len(rows),
                "total_columns": len(headers),
            },
            data=rows,
        )


def sniff_delimiter(raw: str) -> str:
    """Pick the delimiter that appears most on the first non-empty line."""
    first_line = next((line for line in raw.splitlines() if line.strip()), "")
    counts = {delimiter: first_line.count(delimiter) for delimiter in DELIMITERS}
    best = max(counts, key=counts.get)
    return best if counts[best] > 0 else ","


def describe_row(row: Dict[str, Any], headers: List[str], number: int) -> str:
    """One record as 'Record N: col: value, col: value.'"""
    parts = [
        f"{header}: {row[header]}"
        for header in headers
        if row.get(header) not in (None, "")
    ]
    if not parts:
        return ""
    return f"Record {number}: {', '.join(parts)}."


def analyze_columns(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Type, cardinality and fill rate per column."""
    total = len(frame)
    columns = []
    for name in frame.columns:
        values = frame[name][frame[name] != ""]
        column_type = "text"
        if len(values):
            numeric_ratio = pd.to_numeric(values, errors="coerce").notna().mean()
            if numeric_ratio > 0.8:
                column_type = "numeric"
            elif pd.to_datetime(values, errors="coerce", format="mixed").notna().mean() > 0.5:
                column_type = "date"

        columns.append({
            "name": name,
            "type": column_type,
            "unique_values": int(values.nunique()),
            "total_values": int(len(values)),
            "fill_rate": len(values) / total if total else 0.0,
            "avg_length": round(values.str.len().mean()) if len(values) else 0,
        })
    return columns


def analyze_structure(frame: pd.DataFrame, columns: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Find categorical columns (few distinct values) and grouping columns."""
    total = len(frame)
    categories: Dict[str, List[str]] = {}
    for column in columns:
        if column["type"] == "text" and 0 < column["unique_values"] < total * 0.1:
            values = frame[column["name"]]
            categories[column["name"]] = [v for v in values[values != ""].unique().tolist()]

    patterns: Dict[str, Any] = {}
    grouping = [
        column["name"]
        for column in columns
        if column["type"] == "text" and 1 < column["unique_values"] < total * 0.5
    ]
    if grouping:
        patterns["grouping_columns"] = grouping

    return {"columns": columns, "categories": categories, "patterns": patterns}


def build_text(
    rows: List[Dict[str, Any]], headers: List[str], columns: List[Dict[str, Any]]
) -> str:
    sections = []

    names = [header for header in headers if header]
    if names:
        sections.append("Dataset Columns:\n" + "\n".join(f"Column: {name}" for name in names))

    records = [describe_row(row, headers, i + 1) for i, row in enumerate(rows[:MAX_DESCRIBED_ROWS])]
    records = [record for record in records if record]
    if records:
        sections.append("Dataset Records:\n" + "\n\n".join(records))

    sections.append("Dataset Summary:\n" + summarize(rows, columns))
    return "\n\n".join(sections)


def summarize(rows: List[Dict[str, Any]], columns: List[Dict[str, Any]]) -> str:
    parts = [f"This dataset contains {len(rows)} records with {len(columns)} columns."]

    by_type = {"text": [], "numeric": [], "date": []}
    for column in columns:
        if column["type"] != "text" or column["unique_values"] > 1:
            by_type[column["type"]].append(column["name"])
    for label, names in (("Text", by_type["text"]), ("Numeric", by_type["numeric"]), ("Date", by_type["date"])):
        if names:
            parts.append(f"{label} columns include: {', '.join(names)}.")

    keys = [
        column["name"]
        for column in columns
        if column["unique_values"] == len(rows)
        or "id" in column["name"].lower()
        or "key" in column["name"].lower()
    ]
    if keys:
        parts.append(f"Key identifier columns: {', '.join(keys)}.")

    return " ".join(parts)
