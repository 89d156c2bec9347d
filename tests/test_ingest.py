from io import BytesIO
import pytest
from openpyxl import Workbook
from roster.errors import MalformedInputError
from roster.ingest import read_table, sniff_format


def _xlsx_bytes(wb: Workbook) -> bytes:
    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


def test_reads_basic_csv():
    data = b"Student First,Student Last,Grade Level,Parent Email\nAda,Lovelace,7,ada.parent@example.com\n"
    t = read_table(data, "roster.csv", source_name="roster.csv")
    assert t.headers == ["Student First", "Student Last", "Grade Level", "Parent Email"]
    assert t.rows == [{
        "Student First": "Ada",
        "Student Last": "Lovelace",
        "Grade Level": "7",
        "Parent Email": "ada.parent@example.com",
    }]
    assert t.header_row == 1
    assert t.origin_rows == [2]
    assert t.format == "csv"


def test_every_row_has_every_header():
    t = read_table(b"First,Last,Grade\nAda,Lovelace\nGrace,Hopper,9\n")
    assert all(set(r) == set(t.headers) for r in t.rows)
    assert t.rows[0]["Grade"] == ""


def test_semicolon_delimiter_is_sniffed():
    t = read_table(b"First;Last;Grade\nAda;Lovelace;7\nGrace;Hopper;9\n")
    assert t.headers == ["First", "Last", "Grade"]
    assert t.rows[1]["Last"] == "Hopper"


def test_tab_delimiter_is_sniffed_without_hint():
    t = read_table(b"First\tLast\nAda\tLovelace\n")
    assert t.headers == ["First", "Last"]


def test_extension_does_not_decide_format():
    # a CSV renamed to .xlsx is still read as text
    t = read_table(b"First,Last\nAda,Lovelace\n", "roster.xlsx")
    assert t.format == "csv"
    assert t.rows[0]["First"] == "Ada"


def test_title_row_above_header_is_skipped():
    t = read_table(b"Room 12 roster\nFirst,Last,Grade\nAda,Lovelace,7\n")
    assert t.headers == ["First", "Last", "Grade"]
    assert t.header_row == 2
    assert t.origin_rows == [3]


def test_untitled_notes_column_does_not_steal_the_header():
    t = read_table(b"First,Last,Grade,\nAda,Lovelace,7,note a\nGrace,Hopper,8,note b\n")
    assert t.headers == ["First", "Last", "Grade", "col_4"]
    assert [r["First"] for r in t.rows] == ["Ada", "Grace"]
    assert t.rows[0]["col_4"] == "note a"
    assert t.header_row == 1


def test_leading_zeros_are_kept():
    t = read_table(b"Student ID,First\n00123,Ada\n")
    assert t.rows[0]["Student ID"] == "00123"


def test_cells_stay_as_typed():
    t = read_table(b'First,Last,Grade,Notes\nNan,NA,07,"likes math, chess"\n')
    assert t.headers == ["First", "Last", "Grade", "Notes"]
    assert t.rows == [{"First": "Nan", "Last": "NA", "Grade": "07", "Notes": "likes math, chess"}]


def test_blank_lines_keep_source_line_numbers():
    t = read_table(b"First,Last\n\nAda,Lovelace\n\nGrace,Hopper\n")
    assert t.origin_rows == [3, 5]


def test_blank_and_duplicate_headers():
    t = read_table(b"First,,Last\nAda,x,Lovelace\n", header_row=0)
    assert t.headers == ["First", "col_2", "Last"]

    t = read_table(b"Email,Email,First\na@x.com,b@x.com,Ada\n")
    assert t.headers == ["Email", "Email__2", "First"]


def test_blank_rows_are_dropped_and_origin_rows_kept():
    t = read_table(b"First,Last\nAda,Lovelace\n,\nGrace,Hopper\n")
    assert [r["First"] for r in t.rows] == ["Ada", "Grace"]
    assert t.origin_rows == [2, 4]
    assert t.origin_row(1) == 4
    assert t.origin_row(5) is None


def test_bom_and_cp1252():
    t = read_table("\ufeffFirst,Last\nAda,Lovelace\n".encode("utf-8"))
    assert t.headers[0] == "First"

    t = read_table("First,Last\nZo\u00eb,Smith\n".encode("cp1252"))
    assert t.rows[0]["First"] == "Zo\u00eb"


@pytest.mark.parametrize("data", [b"", b"   \n", b"First,Last\n", b"First,Last\n,\n"])
def test_empty_inputs_are_malformed(data):
    with pytest.raises(MalformedInputError):
        read_table(data)


def test_legacy_xls_is_rejected():
    data = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 64
    assert sniff_format(data) == "xls"
    with pytest.raises(MalformedInputError):
        read_table(data, "old.xls")


def test_binary_garbage_is_malformed():
    with pytest.raises(MalformedInputError):
        read_table(b"\x01\x02\x00\x00\x03garbage")


def test_xlsx_merged_cells_and_numbers():
    wb = Workbook()
    ws = wb.active
    ws.title = "Roster"
    ws.append(["Room 5 roster", None, None, None])
    ws.append(["School", "First", "Last", "Grade"])
    ws.append(["Lincoln", "Ada", "Lovelace", 7.0])
    ws.append([None, "Grace", "Hopper", 8])
    ws.merge_cells("A1:D1")
    ws.merge_cells("A3:A4")

    t = read_table(_xlsx_bytes(wb), "roster.csv")
    assert t.format == "xlsx"
    assert t.sheet_name == "Roster"
    assert t.headers == ["School", "First", "Last", "Grade"]
    # the vertical merge applies to both rows; whole floats lose ".0"
    assert [r["School"] for r in t.rows] == ["Lincoln", "Lincoln"]
    assert [r["Grade"] for r in t.rows] == ["7", "8"]
    assert t.header_row == 2


def test_xlsx_first_non_empty_sheet_or_named_sheet():
    wb = Workbook()
    wb.active.title = "Blank"
    data_ws = wb.create_sheet("Data")
    data_ws.append(["First", "Last"])
    data_ws.append(["Ada", "Lovelace"])
    other = wb.create_sheet("Other")
    other.append(["First", "Last"])
    other.append(["Grace", "Hopper"])
    data = _xlsx_bytes(wb)

    assert read_table(data).sheet_name == "Data"
    assert read_table(data, sheet="Other").rows[0]["First"] == "Grace"
    with pytest.raises(MalformedInputError):
        read_table(data, sheet="Missing")
