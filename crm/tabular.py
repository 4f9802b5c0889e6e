from __future__ import annotations

import csv
import io
import zipfile
from datetime import date, datetime
from itertools import chain, islice
from typing import Any, Iterable, Iterator

from crm.errors import EmptyFileError, UnsupportedFormatError

SUPPORTED_FORMATS = ("csv", "xlsx", "xls")


def detect_format(filename: str) -> str:
    extension = filename.rsplit(".", 1)[-1].strip().lower() if "." in filename else ""
    if extension not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError("Unsupported file type. Please upload CSV or Excel file.")
    return extension


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value).replace("\xa0", " ").strip()


def _non_empty(rows: Iterable[list[str]]) -> Iterator[list[str]]:
    for row in rows:
        if any(row):
            yield row


def _csv_rows(content: bytes) -> Iterator[list[str]]:
    stream = io.TextIOWrapper(io.BytesIO(content), encoding="utf-8-sig", errors="replace", newline="")
    try:
        for record in csv.reader(stream):
            yield [cell.strip() for cell in record]
    except csv.Error as exc:
        raise UnsupportedFormatError(f"Could not read csv file: {exc}") from exc


def _xlsx_rows(content: bytes) -> Iterator[list[str]]:
    from openpyxl import load_workbook
    from openpyxl.utils.exceptions import InvalidFileException

    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError) as exc:
        raise UnsupportedFormatError(f"Could not read xlsx file: {exc}") from exc
    try:
        for worksheet in workbook.worksheets:
            rows = _non_empty([cell_text(v) for v in values] for values in worksheet.iter_rows(values_only=True))
            first = next(rows, None)
            if first is None:
                continue
            yield first
            yield from rows
            return
    finally:
        workbook.close()


def _xls_rows(content: bytes) -> Iterator[list[str]]:
    import xlrd

    try:
        book = xlrd.open_workbook(file_contents=content)
    except xlrd.XLRDError as exc:
        raise UnsupportedFormatError(f"Could not read xls file: {exc}") from exc
    for sheet in book.sheets():
        if sheet.nrows == 0:
            continue
        found = False
        for index in range(sheet.nrows):
            row = []
            for cell in sheet.row(index):
                if cell.ctype == xlrd.XL_CELL_DATE:
                    row.append(cell_text(xlrd.xldate.xldate_as_datetime(cell.value, book.datemode)))
                else:
                    row.append(cell_text(cell.value))
            if any(row):
                found = True
                yield row
        if found:
            return


def read_rows(content: bytes, file_format: str) -> Iterator[list[str]]:
    """Return a lazy iterator over the non-empty rows of an uploaded table.

    Only the first two rows are read eagerly, to reject files that have no
    data beyond a possible header.
    """
    if file_format == "csv":
        rows = _non_empty(_csv_rows(content))
    elif file_format == "xlsx":
        rows = _xlsx_rows(content)
    elif file_format == "xls":
        rows = _xls_rows(content)
    else:
        raise UnsupportedFormatError("Unsupported file type. Please upload CSV or Excel file.")

    head = list(islice(rows, 2))
    if len(head) < 2:
        raise EmptyFileError(f"{file_format.upper()} file is empty or invalid")
    return chain(head, rows)
