from datetime import date, datetime
from io import BytesIO

import pytest
from openpyxl import Workbook

from crm.errors import EmptyFileError, UnsupportedFormatError
from crm.tabular import cell_text, detect_format, read_rows


def workbook_bytes(workbook):
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_detect_format_accepts_spreadsheet_extensions():
    assert detect_format("leads.CSV") == "csv"
    assert detect_format("export.final.xlsx") == "xlsx"
    assert detect_format("old.xls") == "xls"


@pytest.mark.parametrize("filename", ["notes.txt", "README", "archive.zip"])
def test_detect_format_rejects_other_files(filename):
    with pytest.raises(UnsupportedFormatError) as exc:
        detect_format(filename)
    assert exc.value.status_code == 400


def test_cell_text_stringifies_values():
    assert cell_text(None) == ""
    assert cell_text(5551234567.0) == "5551234567"
    assert cell_text(12.5) == "12.5"
    assert cell_text(date(2026, 2, 1)) == "2026-02-01"
    assert cell_text(datetime(2026, 2, 1, 9, 30)) == "2026-02-01 09:30:00"
    assert cell_text("  Jane\xa0Doe ") == "Jane Doe"


def test_csv_rows_handle_bom_quotes_and_blank_lines():
    content = (
        '\ufeffName,Email,Notes\r\n'
        '"Doe, Jane",jane@x.com,"line one\nline two"\r\n'
        ',,\r\n'
        'Bob K , bob@x.com ,\r\n'
    ).encode("utf-8")

    rows = list(read_rows(content, "csv"))

    assert rows == [
        ["Name", "Email", "Notes"],
        ["Doe, Jane", "jane@x.com", "line one\nline two"],
        ["Bob K", "bob@x.com", ""],
    ]


def test_csv_tolerates_invalid_utf8():
    content = b"Name,Email\nJos\xe9,jose@x.com\n"

    rows = list(read_rows(content, "csv"))

    assert rows[1][0].startswith("Jos")
    assert rows[1][1] == "jose@x.com"


@pytest.mark.parametrize("content", [b"", b"\n\n", b"Name,Email,Phone\n", b",,\nName,Email\n,,\n"])
def test_csv_with_fewer_than_two_rows_is_empty(content):
    with pytest.raises(EmptyFileError) as exc:
        read_rows(content, "csv")
    assert exc.value.detail == "CSV file is empty or invalid"


def test_read_rows_is_lazy_after_the_first_two_rows():
    content = "Name\n" + "".join(f"Person {i}\n" for i in range(1000))

    rows = read_rows(content.encode("utf-8"), "csv")

    assert next(rows) == ["Name"]
    assert next(rows) == ["Person 0"]
    assert sum(1 for _ in rows) == 999


def test_xlsx_reads_first_non_empty_sheet():
    workbook = Workbook()
    workbook.active.title = "Blank"
    sheet = workbook.create_sheet("Leads")
    sheet.append(["Name", "Phone", "Joined"])
    sheet.append(["Jane Doe", 5551234567, date(2026, 1, 5)])
    sheet.append([None, None, None])
    sheet.append(["Bob K", 5552222222.0, None])

    rows = list(read_rows(workbook_bytes(workbook), "xlsx"))

    assert rows[0] == ["Name", "Phone", "Joined"]
    assert rows[1][:2] == ["Jane Doe", "5551234567"]
    assert rows[1][2].startswith("2026-01-05")
    assert rows[2] == ["Bob K", "5552222222", ""]
    assert len(rows) == 3


def test_xlsx_without_data_is_empty():
    workbook = Workbook()
    workbook.active.append(["Name", "Email"])

    with pytest.raises(EmptyFileError):
        read_rows(workbook_bytes(workbook), "xlsx")


def test_corrupt_xlsx_is_rejected():
    with pytest.raises(UnsupportedFormatError):
        read_rows(b"this is not a zip archive", "xlsx")


def test_unterminated_quote_is_rejected_as_unreadable():
    lines = ["Name,Email,Phone", "Jane Doe,jane@x.com,555-1111", '"Bob K,bob@x.com,555-2222']
    lines += [f"Lead {i},lead{i}@x.com,555-{i:04d}" for i in range(6000)]
    content = "\n".join(lines).encode("utf-8")

    rows = read_rows(content, "csv")

    with pytest.raises(UnsupportedFormatError) as exc:
        list(rows)
    assert exc.value.status_code == 400
    assert exc.value.detail.startswith("Could not read csv file")
