"""CSV adapter for ingestion uploads.

Uploads arrive as raw text stored on the job. The adapter sniffs the
delimiter, validates the header row and yields numbered rows keyed by the
original headers; mapping onto canonical fields happens later in the
processors.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import Iterator, Sequence

from ..errors import CSVParseError

CANDIDATE_DELIMITERS: tuple[str, ...] = (",", "\t", "|", ";")
_SNIFF_LINES = 10


@dataclass(frozen=True)
class CSVRow:
    """A data row; ``number`` is 1-based and ignores blank lines."""

    number: int
    values: dict[str, str | None]

    def get(self, header: str) -> str | None:
        return self.values.get(header)


@dataclass(frozen=True)
class ParsedCSV:
    headers: tuple[str, ...]
    rows: tuple[CSVRow, ...]
    delimiter: str = ","

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[CSVRow]:
        return iter(self.rows)


def _strip_bom(text: str) -> str:
    return text.lstrip("\ufeff")


def detect_delimiter(sample: str) -> str:
    """
    Guess the delimiter of ``sample`` among comma, tab, pipe and semicolon.

    ``csv.Sniffer`` decides when its answer appears in the header line;
    otherwise the candidate occurring most often in the header wins, and a
    comma is assumed when none occurs at all.
    """
    lines = [line for line in _strip_bom(sample).splitlines() if line.strip()][:_SNIFF_LINES]
    if not lines:
        return ","
    header = lines[0]
    try:
        dialect = csv.Sniffer().sniff("\n".join(lines), delimiters="".join(CANDIDATE_DELIMITERS))
        if dialect.delimiter in header:
            return dialect.delimiter
    except csv.Error:
        pass
    counts = {candidate: header.count(candidate) for candidate in CANDIDATE_DELIMITERS}
    best = max(CANDIDATE_DELIMITERS, key=lambda candidate: counts[candidate])
    return best if counts[best] else ","


def _dedupe_headers(raw_headers: Sequence[str]) -> tuple[str, ...]:
    seen: dict[str, int] = {}
    headers: list[str] = []
    for raw in raw_headers:
        header = (raw or "").strip()
        count = seen.get(header, 0) + 1
        seen[header] = count
        headers.append(header if count == 1 else f"{header}_{count}")
    return tuple(headers)


def _is_blank(values: Sequence[str]) -> bool:
    return all(not (value or "").strip() for value in values)


def parse_csv(text: str | None) -> ParsedCSV:
    """
    Parse an uploaded CSV payload.

    Raises:
        CSVParseError: the payload is empty, has no header row, contains a row
            with more fields than the header, or is not valid CSV.
    """
    if text is None or not _strip_bom(text).strip():
        raise CSVParseError("CSV payload is empty.")
    body = _strip_bom(text)
    delimiter = detect_delimiter(body[:8192])
    reader = csv.reader(io.StringIO(body, newline=""), delimiter=delimiter)

    try:
        raw_headers = None
        for candidate in reader:
            if candidate and not _is_blank(candidate):
                raw_headers = candidate
                break
        if raw_headers is None:
            raise CSVParseError("CSV payload has no header row.")
        headers = _dedupe_headers(raw_headers)
        if not any(headers):
            raise CSVParseError("CSV header row is empty.")

        rows: list[CSVRow] = []
        for values in reader:
            if not values or _is_blank(values):
                continue
            number = len(rows) + 1
            if len(values) > len(headers):
                raise CSVParseError(
                    f"Row {number} has {len(values)} fields but the header has {len(headers)}."
                )
            padded: list[str | None] = list(values) + [None] * (len(headers) - len(values))
            rows.append(CSVRow(number=number, values=dict(zip(headers, padded))))
    except csv.Error as exc:
        raise CSVParseError(f"CSV payload could not be parsed: {exc}") from exc

    return ParsedCSV(headers=headers, rows=tuple(rows), delimiter=delimiter)


__all__ = ["CANDIDATE_DELIMITERS", "CSVRow", "ParsedCSV", "detect_delimiter", "parse_csv"]
