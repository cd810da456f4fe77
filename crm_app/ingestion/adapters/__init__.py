"""Input adapters for ingestion payloads."""

from __future__ import annotations

from .csv_rows import CANDIDATE_DELIMITERS, CSVRow, ParsedCSV, detect_delimiter, parse_csv

__all__ = ["CANDIDATE_DELIMITERS", "CSVRow", "ParsedCSV", "detect_delimiter", "parse_csv"]
