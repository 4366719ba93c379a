from __future__ import annotations

import csv
import datetime as dt
import io
import math
import pathlib
import re
import zipfile
from typing import Iterable, Iterator, List, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from .errors import ConfigurationError, UnreadableFileError
from .models import ColumnLayout, ParsedSeries, ParseError, ParseResult, ParseSuccess, Sample

MAX_SAMPLE_ERRORS = 5
MIN_COLUMNS = 3
SECONDS_PER_DAY = 24 * 60 * 60

Row = Tuple[int, Sequence[str]]

_DATE_SPLIT = re.compile(r"[/\-.]")
_DATETIME_SPLIT = re.compile(r"[ T]+")
_ALPHA_START = re.compile(r"^[A-Za-z]")


def parse_upload(
    data: bytes,
    file_name: str,
    layout: ColumnLayout = ColumnLayout(),
) -> ParsedSeries:
    """Parse a meter export delivered as raw bytes (CSV or XLSX)."""

    return parse_rows(read_rows(data, file_name, layout), layout)


def parse_text(text: str, layout: ColumnLayout = ColumnLayout()) -> ParsedSeries:
    return parse_rows(_csv_rows(text, layout), layout)


def read_rows(data: bytes, file_name: str, layout: ColumnLayout) -> Iterator[Row]:
    suffix = pathlib.PurePath(file_name).suffix.lower()
    if suffix in {".xlsx", ".xlsm"}:
        return _xlsx_rows(data)
    return _csv_rows(decode_text(data), layout)


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def parse_rows(rows: Iterable[Row], layout: ColumnLayout) -> ParsedSeries:
    """Turn numbered rows of cells into samples and accumulated row errors.

    A bad row never aborts the parse: it is counted, and the first
    ``MAX_SAMPLE_ERRORS`` are kept for display.
    """

    tzinfo = _zone(layout.timezone)
    samples: List[Sample] = []
    errors: List[ParseError] = []
    error_count = 0
    total_rows = 0
    header_rows = 0
    header: Sequence[str] = ()
    in_header = True

    for row_number, cells in rows:
        if not any(cell.strip() for cell in cells):
            continue
        if in_header:
            if _is_header(cells, header_rows, layout):
                header_rows += 1
                header = [cell.strip() for cell in cells]
                continue
            in_header = False

        total_rows += 1
        result = parse_row(row_number, cells, layout, tzinfo, header)
        if isinstance(result, ParseError):
            error_count += 1
            if len(errors) < MAX_SAMPLE_ERRORS:
                errors.append(result)
            continue
        samples.append(result.sample)

    return ParsedSeries(
        samples=tuple(samples),
        errors=tuple(errors),
        error_count=error_count,
        total_rows=total_rows,
        header_rows=header_rows,
        columns=tuple(header),
    )


def parse_row(
    row_number: int,
    cells: Sequence[str],
    layout: ColumnLayout,
    tzinfo: dt.tzinfo,
    header: Sequence[str] = (),
) -> ParseResult:
    cells = [cell.strip() for cell in cells]
    required = _required_columns(layout)
    if len(cells) < required:
        return ParseError(
            row_number, "too_few_columns", f"Expected at least {required} columns, got {len(cells)}"
        )

    date_raw = _cell(cells, layout.date_column)
    if layout.time_column is None:
        timestamp = _parse_combined(date_raw, tzinfo)
        if timestamp is None:
            return ParseError(row_number, "invalid_timestamp", f'Invalid date/time "{date_raw}"')
    else:
        date = parse_date(date_raw)
        if date is None:
            return ParseError(row_number, "invalid_date", f'Invalid date format "{date_raw}"')
        time_raw = _cell(cells, layout.time_column)
        offset = parse_time(time_raw)
        if offset is None:
            return ParseError(row_number, "invalid_time", f'Invalid time format "{time_raw}"')
        timestamp = _to_utc(date, offset, tzinfo)
        if timestamp is None:
            return ParseError(
                row_number, "invalid_timestamp", f'Invalid date/time "{date_raw} {time_raw}"'
            )

    value_raw = _cell(cells, layout.value_column)
    value = parse_number(value_raw, layout.decimal_separator)
    if value is None:
        return ParseError(row_number, "invalid_value", f'Invalid value "{value_raw}"')

    fields = {}
    used = {layout.date_column, layout.time_column, layout.value_column}
    for index, raw in enumerate(cells):
        if index in used or not raw:
            continue
        number = parse_number(raw, layout.decimal_separator)
        if number is not None:
            fields[_column_name(header, index)] = number

    return ParseSuccess(row_number, Sample(timestamp=timestamp, value=value, fields=fields))


def parse_date(raw: str) -> dt.date | None:
    """Parse ``YYYY-MM-DD``, ``YYYY/MM/DD`` or ``DD/MM/YYYY``.

    A first group above 31 can only be a year; anything else is day-first.
    """

    parts = _DATE_SPLIT.split(raw)
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        return None
    first, second, third = (int(part) for part in parts)
    if first > 31:
        year, month, day = first, second, third
    else:
        day, month, year = first, second, third
    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


def parse_time(raw: str) -> dt.timedelta | None:
    """Parse ``HH:MM[:SS]`` or a fractional day (``0.5`` is 12:00:00).

    Returned as an offset from midnight so ``24:00`` rolls into the next day.
    """

    if not raw:
        return None
    if ":" in raw:
        parts = raw.split(":")
        if len(parts) not in (2, 3):
            return None
        try:
            hours = int(parts[0])
            minutes = int(parts[1])
            seconds = int(float(parts[2])) if len(parts) == 3 else 0
        except ValueError:
            return None
        if raw.startswith("-") or minutes < 0 or seconds < 0:
            return None
        if minutes > 59 or seconds > 59 or hours > 24:
            return None
        if hours == 24 and (minutes or seconds):
            return None
        return dt.timedelta(hours=hours, minutes=minutes, seconds=seconds)

    try:
        fraction = float(raw.replace(",", "."))
    except ValueError:
        return None
    # 1.0 is the 24:00 of a fractional day
    if not math.isfinite(fraction) or fraction < 0 or fraction > 1:
        return None
    total_seconds = fraction * SECONDS_PER_DAY
    hours = int(total_seconds // 3600)
    minutes = int((total_seconds % 3600) // 60)
    seconds = int(total_seconds % 60)
    return dt.timedelta(hours=hours, minutes=minutes, seconds=seconds)


def parse_number(raw: str, decimal_separator: str = ",") -> float | None:
    cleaned = raw.replace(" ", "").replace("\u00a0", "")
    if not cleaned:
        return None
    if decimal_separator == ",":
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def detect_delimiter(text: str) -> str:
    for line in text.splitlines():
        if not line.strip():
            continue
        if ";" in line:
            return ";"
        if "\t" in line:
            return "\t"
        return ","
    return ","


def _parse_combined(raw: str, tzinfo: dt.tzinfo) -> dt.datetime | None:
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tzinfo)
        try:
            return parsed.astimezone(dt.timezone.utc)
        except (OverflowError, ValueError):
            return None

    parts = _DATETIME_SPLIT.split(raw, maxsplit=1)
    date = parse_date(parts[0])
    if date is None:
        return None
    offset = parse_time(parts[1]) if len(parts) == 2 else dt.timedelta()
    if offset is None:
        return None
    return _to_utc(date, offset, tzinfo)


def _to_utc(date: dt.date, offset: dt.timedelta, tzinfo: dt.tzinfo) -> dt.datetime | None:
    try:
        local = dt.datetime.combine(date, dt.time()) + offset
        return local.replace(tzinfo=tzinfo).astimezone(dt.timezone.utc)
    except (OverflowError, ValueError):
        return None


def _is_header(cells: Sequence[str], seen: int, layout: ColumnLayout) -> bool:
    if layout.header_rows is not None:
        return seen < layout.header_rows
    first = cells[0].strip() if cells else ""
    token = first.split()[0] if first else ""
    return bool(_ALPHA_START.match(token))


def _csv_rows(text: str, layout: ColumnLayout) -> Iterator[Row]:
    delimiter = layout.delimiter or detect_delimiter(text)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
    for cells in reader:
        yield reader.line_num, cells


def _xlsx_rows(data: bytes) -> Iterator[Row]:
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as exc:
        raise UnreadableFileError(f"Not a readable workbook: {exc}") from exc
    try:
        sheet = workbook.active
        for index, row in enumerate(sheet.iter_rows(values_only=True), start=1):
            yield index, [_cell_to_str(value) for value in row]
    finally:
        workbook.close()


def _cell_to_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, dt.datetime):
        if value.time() == dt.time():
            return value.strftime("%Y-%m-%d")
        return value.isoformat(sep=" ")
    if isinstance(value, dt.date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, dt.time):
        return value.strftime("%H:%M:%S")
    return str(value).strip()


def _required_columns(layout: ColumnLayout) -> int:
    configured = [layout.date_column, layout.value_column]
    if layout.time_column is not None:
        configured.append(layout.time_column)
    return max(MIN_COLUMNS if layout.time_column is not None else 2, max(configured) + 1)


def _cell(cells: Sequence[str], index: int | None) -> str:
    if index is None or index >= len(cells):
        return ""
    return cells[index]


def _column_name(header: Sequence[str], index: int) -> str:
    if index < len(header) and header[index]:
        return header[index]
    return f"column_{index + 1}"


def _zone(name: str) -> dt.tzinfo:
    if name.upper() == "UTC":
        return dt.timezone.utc
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise ConfigurationError(f"Unknown timezone: {name}") from exc
