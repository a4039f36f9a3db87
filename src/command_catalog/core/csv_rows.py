"""CSV sheet decoding and row parsing for command uploads."""

from __future__ import annotations

import csv
import io
import logging
from typing import Iterator

from .errors import SheetError
from .tag_paths import split_tag_path
from .types import ParsedSheet, RowError, RowRecord
from .utils import clean_text

logger = logging.getLogger(__name__)

REQUIRED_COLUMN = "command"
RECOGNIZED_COLUMNS = ("command", "description", "example", "version", "tag")


def decode_sheet(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SheetError(f"File is not valid UTF-8 text (invalid byte at offset {exc.start}).") from exc


def _index_header(record: list[str]) -> dict[str, int]:
    columns: dict[str, int] = {}
    for idx, raw in enumerate(record):
        name = raw.strip().lower()
        if name in RECOGNIZED_COLUMNS and name not in columns:
            columns[name] = idx
    if REQUIRED_COLUMN not in columns:
        raise SheetError("CSV header must include a 'command' column.")
    return columns


def _cell(record: list[str], columns: dict[str, int], name: str) -> str | None:
    idx = columns.get(name)
    if idx is None or idx >= len(record):
        return None
    return clean_text(record[idx])


def _build_entry(
    line_no: int, record: list[str], columns: dict[str, int], width: int
) -> RowRecord | RowError:
    command = _cell(record, columns, "command")
    extra = [cell for cell in record[width:] if cell.strip()]
    if extra:
        return RowError(
            line_no=line_no,
            reason=f"malformed row: expected {width} fields, found {len(record)}",
            command=command,
        )
    if not command:
        return RowError(line_no=line_no, reason="missing command")
    return RowRecord(
        line_no=line_no,
        command=command,
        description=_cell(record, columns, "description"),
        example=_cell(record, columns, "example"),
        version=_cell(record, columns, "version"),
        tag_path=split_tag_path(_cell(record, columns, "tag")),
    )


def _physical_records(text: str) -> Iterator[tuple[int, str, bool]]:
    """Group physical lines into logical records, yielding ``(line_no, raw, balanced)``.

    A record spans further lines only while its quote count is odd. When no
    later line closes the quote, the opening line is yielded alone and grouping
    restarts on the line after it; it is flagged unbalanced unless it reads as a
    complete record by itself.
    """

    lines = io.StringIO(text, newline="").readlines()
    idx = 0
    while idx < len(lines):
        start = idx
        raw = lines[idx]
        idx += 1
        while raw.count('"') % 2 and idx < len(lines):
            raw += lines[idx]
            idx += 1
        if raw.count('"') % 2 or (idx - start > 1 and _count_records(raw) > 1):
            # The odd quote never closed, or sat inside an unquoted cell.
            idx = start + 1
            yield start + 1, lines[start], _parses(lines[start])
            continue
        yield start + 1, raw, True


def _count_records(raw: str) -> int:
    try:
        return sum(1 for _ in csv.reader(io.StringIO(raw, newline="")))
    except csv.Error:
        return 1


def _parses(raw: str) -> bool:
    try:
        _read_record(raw)
    except csv.Error:
        return False
    return True


def _read_record(raw: str) -> list[str]:
    records = list(csv.reader(io.StringIO(raw, newline=""), strict=True))
    return records[0] if records else []


def _recover_command(raw: str, columns: dict[str, int]) -> str | None:
    idx = columns[REQUIRED_COLUMN]
    unbalanced = raw.count('"') % 2 == 1
    head = raw.split('"', 1)[0] if unbalanced else raw
    try:
        cells = next(csv.reader(io.StringIO(head, newline="")), [])
    except csv.Error:
        return None
    # The last cell before an unterminated quote is cut short.
    usable = len(cells) - 1 if unbalanced else len(cells)
    return clean_text(cells[idx]) if idx < usable else None


def parse_sheet(data: bytes) -> ParsedSheet:
    """Decode a CSV upload into row records and per-row errors, in file order.

    The first non-blank line is the header. Problems that leave no rows to work
    with (undecodable bytes, a missing `command` column, no data) raise
    `SheetError`; anything wrong with a single row is recorded as a `RowError`
    and parsing carries on with the next line.
    """

    text = decode_sheet(data)
    if not text.strip():
        raise SheetError("CSV file is empty.")
    columns: dict[str, int] | None = None
    width = 0
    sheet = ParsedSheet()
    for line_no, raw, balanced in _physical_records(text):
        if not raw.strip():
            continue
        try:
            if not balanced:
                raise csv.Error("unterminated quoted field")
            record = _read_record(raw)
        except csv.Error as exc:
            if columns is None:
                raise SheetError(f"Line {line_no}: unreadable header ({exc}).") from exc
            logger.debug("line %s: csv error %s", line_no, exc)
            sheet.entries.append(
                RowError(
                    line_no=line_no,
                    reason=f"malformed row: {exc}",
                    command=_recover_command(raw, columns),
                )
            )
            continue
        if not any(cell.strip() for cell in record):
            continue
        if columns is None:
            columns = _index_header(record)
            width = len(record)
            continue
        sheet.entries.append(_build_entry(line_no, record, columns, width))
    if columns is None or not sheet.entries:
        raise SheetError("CSV file contains no command rows.")
    return sheet
