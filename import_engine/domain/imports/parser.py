"""
Streaming row parser for uploaded CSV and XLSX files.

Neither format is ever loaded whole. CSV is read in fixed-size byte blocks and
every row carries the byte offset where the next record starts, so a resumed
job reopens the stream at that offset (a ranged read on object storage).
XLSX is read with openpyxl in read-only mode and resumed by sheet row index.
"""
from __future__ import annotations

import csv
import io
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from openpyxl import load_workbook

from import_engine.core.config import settings
from import_engine.integrations import storage
from import_engine.domain.imports.modules import strip_quotes

logger = logging.getLogger(__name__)

CSV_FORMAT = "csv"
XLSX_FORMAT = "xlsx"
SUPPORTED_FORMATS = {".csv": CSV_FORMAT, ".xlsx": XLSX_FORMAT}

UTF8_BOM = b"\xef\xbb\xbf"


@dataclass
class ImportRow:
    """One data row of the source file and, once processed, its outcome."""

    row_number: int
    values: List[str]
    next_offset: int = 0
    record: Dict[str, Any] = field(default_factory=dict)
    dedup_key: Optional[str] = None
    outcome: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ParsedHeader:
    headers: List[str]
    data_offset: int
    delimiter: Optional[str] = None
    encoding: Optional[str] = None


def detect_format(file_name: str) -> str:
    """Map a file name to a parser format, raising ValueError for anything else."""
    extension = os.path.splitext(file_name or "")[1].lower()
    file_format = SUPPORTED_FORMATS.get(extension)
    if file_format is None:
        raise ValueError(
            f"Unsupported file type '{extension or file_name}'. Supported types: "
            + ", ".join(sorted(SUPPORTED_FORMATS))
        )
    return file_format


def _decode(raw: bytes) -> Tuple[str, str]:
    if raw.startswith(UTF8_BOM):
        raw = raw[len(UTF8_BOM):]
    try:
        return raw.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return raw.decode("latin-1"), "latin-1"


def detect_delimiter(header_line: str) -> str:
    """Semicolon when the header has more of them than commas, comma otherwise."""
    return ";" if header_line.count(";") > header_line.count(",") else ","


def _split_record(text: str, delimiter: str) -> List[str]:
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
    for values in reader:
        return [strip_quotes(value) for value in values]
    return []


def _is_blank(values: List[Any]) -> bool:
    return all(value is None or str(value).strip() == "" for value in values)


class _RecordScanner:
    """
    Follows csv quoting across physical lines the way `csv.reader` reads it:
    a quote opens a quoted section only at the start of a field, `""` inside
    one is an escaped quote, and any other quote is literal text.
    """

    def __init__(self, delimiters: bytes):
        self.delimiters = delimiters
        self.reset()

    def reset(self) -> None:
        self.in_quotes = False
        self.field_start = True

    def is_plain(self, line: bytes) -> bool:
        """True when `line` is a whole record on its own with nothing to track."""
        return not self.in_quotes and b'"' not in line and b"\r" not in line.rstrip(b"\r\n")

    def feed(self, line: bytes) -> List[int]:
        """Consume one physical line and return the end positions of the records it closes."""
        ends = []
        size = len(line)
        i = 0
        while i < size:
            char = line[i:i + 1]
            if self.in_quotes:
                if char == b'"':
                    if line[i + 1:i + 2] == b'"':
                        i += 1
                    else:
                        self.in_quotes = False
            elif char == b'"' and self.field_start:
                self.in_quotes = True
                self.field_start = False
            elif char in self.delimiters:
                self.field_start = True
            elif char == b"\n" or (char == b"\r" and line[i + 1:i + 2] != b"\n"):
                ends.append(i + 1)
                self.reset()
            elif char != b"\r":
                self.field_start = False
            i += 1
        return ends


def iter_csv_records(
    stream: BinaryIO,
    start_offset: int = 0,
    block_size: int = 1024 * 1024,
    *,
    delimiters: bytes = b",;",
) -> Iterator[Tuple[bytes, int]]:
    """
    Yield (raw_record, next_offset) pairs from a binary CSV stream.

    A record ends at a line break outside quotes, so quoted fields may span
    physical lines while a stray quote inside an unquoted field does not.
    `next_offset` is the absolute byte offset of the following record.
    `delimiters` are the field separators that may precede an opening quote;
    before the header is read both candidates are allowed.
    """
    scanner = _RecordScanner(delimiters)
    buffer = b""
    pending = b""
    offset = start_offset
    exhausted = False

    while True:
        newline_at = buffer.find(b"\n")
        if newline_at == -1:
            if exhausted:
                break
            block = stream.read(block_size)
            if not block:
                exhausted = True
            buffer += block
            continue

        line = buffer[:newline_at + 1]
        buffer = buffer[newline_at + 1:]
        if not pending and scanner.is_plain(line):
            offset += len(line)
            yield line.rstrip(b"\r\n"), offset
            continue

        start = 0
        for end in scanner.feed(line):
            pending += line[start:end]
            offset += end - start
            yield pending.rstrip(b"\r\n"), offset
            pending = b""
            start = end
        pending += line[start:]
        offset += len(line) - start

    # Last record without a trailing newline, or an unterminated quote
    start = 0
    for end in scanner.feed(buffer):
        pending += buffer[start:end]
        offset += end - start
        yield pending.rstrip(b"\r\n"), offset
        pending = b""
        start = end
    pending += buffer[start:]
    offset += len(buffer) - start
    if pending:
        yield pending.rstrip(b"\r\n"), offset


def _cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class RowParser:
    """
    Lazy, restartable reader of one stored file.

    Offsets mean different things per format: a byte offset for CSV and the
    1-based sheet row index of the next row to read for XLSX.

    An XLSX file is copied to local disk once per parser and reused by the
    header read, the count and the row stream; `close()` removes the copy.
    `keepalive` is called periodically during long reads (download, count).
    """

    KEEPALIVE_EVERY_RECORDS = 10000

    def __init__(
        self,
        file_path: str,
        file_format: str,
        *,
        block_size: Optional[int] = None,
        keepalive: Optional[Callable[[], None]] = None,
    ):
        if file_format not in (CSV_FORMAT, XLSX_FORMAT):
            raise ValueError(f"Unsupported file format: {file_format}")
        self.file_path = file_path
        self.file_format = file_format
        self.block_size = block_size or settings.storage_read_block_bytes
        self._keepalive = keepalive or (lambda: None)
        self._local_copy: Optional[str] = None

    def __enter__(self) -> "RowParser":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Remove the local copy of the file, if one was made."""
        if self._local_copy is not None:
            path, self._local_copy = self._local_copy, None
            if os.path.exists(path):
                os.remove(path)

    def read_header(self) -> ParsedHeader:
        """Return the first non-empty row and where the data starts."""
        if self.file_format == CSV_FORMAT:
            return self._read_csv_header()
        return self._read_xlsx_header()

    def rows(
        self,
        start_offset: int,
        *,
        start_row_number: int = 1,
        delimiter: Optional[str] = None,
    ) -> Iterator[ImportRow]:
        """
        Yield data rows beginning at `start_offset`.

        `start_row_number` is the ordinal given to the first yielded row so
        numbering survives a resume. Blank rows are skipped and not numbered.
        The underlying stream or workbook is closed when the generator is
        exhausted or closed early.
        """
        if self.file_format == CSV_FORMAT:
            return self._csv_rows(start_offset, start_row_number, delimiter or ",")
        return self._xlsx_rows(start_offset, start_row_number)

    def count_rows(self, data_offset: int, *, delimiter: Optional[str] = None) -> Optional[int]:
        """Advisory count of non-empty data records; None when it cannot be determined."""
        if self.file_format == CSV_FORMAT:
            return self._count_csv_rows(data_offset, delimiter or ",")
        return self._count_xlsx_rows(data_offset)

    # CSV

    def _read_csv_header(self) -> ParsedHeader:
        stream = storage.open_stream(self.file_path)
        try:
            for raw, next_offset in iter_csv_records(stream, 0, self.block_size):
                text, encoding = _decode(raw)
                if not text.strip():
                    continue
                delimiter = detect_delimiter(text)
                headers = _split_record(text, delimiter)
                if _is_blank(headers):
                    continue
                logger.debug(
                    "Header of %s: %d column(s), delimiter %r, encoding %s",
                    self.file_path, len(headers), delimiter, encoding,
                )
                return ParsedHeader(headers, next_offset, delimiter, encoding)
        finally:
            stream.close()
        return ParsedHeader([], 0, ",", None)

    def _csv_rows(self, start_offset: int, row_number: int, delimiter: str) -> Iterator[ImportRow]:
        stream = storage.open_stream(self.file_path, start_offset)
        try:
            records = iter_csv_records(
                stream, start_offset, self.block_size, delimiters=delimiter.encode("ascii")
            )
            for raw, next_offset in records:
                text, _ = _decode(raw)
                if not text.strip():
                    continue
                values = _split_record(text, delimiter)
                if _is_blank(values):
                    continue
                yield ImportRow(row_number=row_number, values=values, next_offset=next_offset)
                row_number += 1
        finally:
            stream.close()

    def _count_csv_rows(self, data_offset: int, delimiter: str) -> Optional[int]:
        stream = storage.open_stream(self.file_path, data_offset)
        count = 0
        seen = 0
        try:
            records = iter_csv_records(
                stream, data_offset, self.block_size, delimiters=delimiter.encode("ascii")
            )
            for raw, _ in records:
                seen += 1
                if seen % self.KEEPALIVE_EVERY_RECORDS == 0:
                    self._keepalive()
                if raw.strip():
                    count += 1
        finally:
            stream.close()
        return count

    # XLSX

    def _local_path(self) -> str:
        if self._local_copy is None:
            self._local_copy = storage.download_to_temp(self.file_path, suffix=".xlsx")
            logger.debug("Copied %s to %s", self.file_path, self._local_copy)
            self._keepalive()
        return self._local_copy

    def _open_workbook(self):
        return load_workbook(self._local_path(), read_only=True, data_only=True)

    def _read_xlsx_header(self) -> ParsedHeader:
        workbook = self._open_workbook()
        try:
            sheet = workbook.active
            for index, cells in enumerate(sheet.iter_rows(values_only=True), start=1):
                if _is_blank(list(cells)):
                    continue
                headers = [strip_quotes(_cell_to_text(cell)) for cell in cells]
                return ParsedHeader(headers, index + 1)
        finally:
            workbook.close()
        return ParsedHeader([], 1)

    def _xlsx_rows(self, start_offset: int, row_number: int) -> Iterator[ImportRow]:
        workbook = self._open_workbook()
        try:
            sheet = workbook.active
            for index, cells in enumerate(sheet.iter_rows(min_row=start_offset, values_only=True), start=start_offset):
                values = [strip_quotes(_cell_to_text(cell)) for cell in cells]
                if _is_blank(values):
                    continue
                yield ImportRow(row_number=row_number, values=values, next_offset=index + 1)
                row_number += 1
        finally:
            workbook.close()

    def _count_xlsx_rows(self, data_offset: int) -> Optional[int]:
        workbook = self._open_workbook()
        try:
            max_row = workbook.active.max_row
        finally:
            workbook.close()
        if max_row is None:
            return None
        return max(0, max_row - data_offset + 1)
