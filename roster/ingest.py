from __future__ import annotations
import csv
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO, StringIO
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from .errors import MalformedInputError
from .header_detect import detect_header_row, _cell_text
from .utils import load_rules

logger = logging.getLogger(__name__)

XLSX_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")
DELIMITERS = [",", ";", "\t", "|"]
ENCODINGS = ["utf-8-sig", "utf-8", "cp1252", "latin-1"]


@dataclass
class SourceTable:
    """
    A parsed upload: ordered headers plus one {header: raw string} map per data row.
    Every row carries every header; missing cells are "".
    """
    headers: List[str]
    rows: List[Dict[str, str]]
    source_name: str = ""
    sheet_name: str = ""
    format: str = "csv"
    # 1-based line/row of the header and of every data row in the source
    header_row: int = 1
    origin_rows: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def column(self, header: str) -> List[str]:
        return [r.get(header, "") for r in self.rows]

    def origin_row(self, row_index: int) -> Optional[int]:
        if 0 <= row_index < len(self.origin_rows):
            return self.origin_rows[row_index]
        return None

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.headers)


# =========================
# Format detection
# =========================
def _normalize_hint(format_hint: Optional[str]) -> str:
    if not format_hint:
        return ""
    h = str(format_hint).strip().lower()
    # "roster.xlsx", ".csv", "text/csv"
    for sep in (".", "/"):
        if sep in h:
            h = h.rsplit(sep, 1)[-1]
    return h


def sniff_format(data: bytes, format_hint: Optional[str] = None) -> str:
    # Content wins over the declared name: users rename files freely
    if data.startswith(XLSX_SIGNATURE):
        return "xlsx"
    if data.startswith(OLE_SIGNATURE):
        return "xls"
    hint = _normalize_hint(format_hint)
    if hint in ("xlsx", "xlsm", "xls"):
        logger.debug("format hint %r does not match content, reading as delimited text", format_hint)
    return "tsv" if hint in ("tsv", "tab") else "csv"


# =========================
# Excel: sheet as a matrix, vertical merged cells filled down
# =========================
def _cell_str(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "TRUE" if v else "FALSE"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    if isinstance(v, datetime):
        return v.date().isoformat() if v.time() == datetime.min.time() else v.isoformat(sep=" ")
    if isinstance(v, date):
        return v.isoformat()
    return str(v)


def _open_workbook(data: bytes):
    try:
        return load_workbook(BytesIO(data), read_only=False, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as e:
        raise MalformedInputError(f"could not open spreadsheet: {e}") from e


def _sheet_to_matrix(ws) -> List[List[str]]:
    # Only vertical merges are spread (e.g. a school name merged down a block of rows);
    # a title banner merged across the columns stays in its first cell so it does not
    # look like a full header row
    merged_map = {}
    for r in ws.merged_cells.ranges:
        min_col, min_row, max_col, max_row = r.bounds
        if min_col != max_col:
            continue
        top_val = ws.cell(min_row, min_col).value
        for rr in range(min_row, max_row + 1):
            merged_map[(rr, min_col)] = top_val

    rows = []
    for r in range(1, ws.max_row + 1):
        row_vals = []
        for c in range(1, ws.max_column + 1):
            v = ws.cell(r, c).value
            if (r, c) in merged_map and (v is None or str(v).strip() == ""):
                v = merged_map[(r, c)]
            row_vals.append(_cell_str(v))
        rows.append(row_vals)
    return rows


def sheet_names(data: bytes) -> List[str]:
    if sniff_format(data) != "xlsx":
        return []
    return list(_open_workbook(data).sheetnames)


def _read_xlsx(data: bytes, sheet: Optional[str]) -> Tuple[List[List[str]], str]:
    wb = _open_workbook(data)
    if sheet is not None:
        if sheet not in wb.sheetnames:
            raise MalformedInputError(f"sheet {sheet!r} not found (available: {', '.join(wb.sheetnames)})")
        return _sheet_to_matrix(wb[sheet]), sheet

    # first sheet that holds anything
    for name in wb.sheetnames:
        matrix = _sheet_to_matrix(wb[name])
        if any(c.strip() for row in matrix for c in row):
            return matrix, name
    return [], wb.sheetnames[0] if wb.sheetnames else ""


# =========================
# CSV: tolerant reading from bytes
# =========================
def _decode(data: bytes) -> Tuple[str, str]:
    if data.startswith(UTF16_BOMS):
        # Excel "Unicode text" export
        try:
            return data.decode("utf-16"), "utf-16"
        except UnicodeDecodeError as e:
            raise MalformedInputError("could not decode UTF-16 text") from e
    if b"\x00" in data[:8192]:
        raise MalformedInputError("file looks binary, expected CSV/TSV text or an .xlsx workbook")

    for enc in ENCODINGS:
        try:
            return data.decode(enc), enc
        except UnicodeDecodeError:
            continue
    # latin-1 decodes any byte string
    raise MalformedInputError("could not decode text")


def _guess_delimiter(sample_text: str, preferred: Optional[str] = None) -> str:
    lines = [ln for ln in sample_text.splitlines() if ln.strip()][:20]
    if not lines:
        return preferred or ","

    # average count per line
    scores = {}
    for d in DELIMITERS:
        cnts = [ln.count(d) for ln in lines]
        scores[d] = sum(cnts) / max(1, len(cnts))

    try:
        dialect = csv.Sniffer().sniff("\n".join(lines), delimiters="".join(DELIMITERS))
        sniffed = dialect.delimiter
    except csv.Error:
        sniffed = None

    if sniffed and preferred and preferred != sniffed and scores.get(preferred, 0) >= scores.get(sniffed, 0) > 0:
        return preferred
    if sniffed:
        return sniffed

    best = max(DELIMITERS, key=lambda d: (scores[d], d == preferred))
    return best if scores.get(best, 0) > 0 else (preferred or ",")


def _read_csv_text(text: str, delim: str) -> pd.DataFrame:
    # read WITHOUT a header so title rows above the header land in df_raw as ordinary rows;
    # all cells as text (leading zeros, "NA" and "Nan" stay as typed)
    width = max((ln.count(delim) for ln in text.splitlines()), default=0) + 1
    try:
        df = pd.read_csv(
            StringIO(text),
            header=None,
            names=list(range(width)),
            index_col=False,
            sep=delim,
            engine="python",
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
        )
    except pd.errors.EmptyDataError as e:
        raise MalformedInputError("file is empty") from e
    except pd.errors.ParserError as e:
        raise MalformedInputError(f"could not parse delimited text: {e}") from e
    # short rows are padded with NaN
    return df.fillna("")


def _read_delimited(data: bytes, fmt: str) -> Tuple[List[List[str]], str, str]:
    text, enc = _decode(data)
    preferred = "\t" if fmt == "tsv" else None
    delim = _guess_delimiter(text[:65536], preferred)
    df = _read_csv_text(text, delim)

    # read into a single column: try the other delimiters
    if df.shape[1] == 1:
        for d2 in DELIMITERS:
            if d2 == delim:
                continue
            df2 = _read_csv_text(text, d2)
            if df2.shape[1] > 1:
                df, delim = df2, d2
                break

    return df.values.tolist(), enc, delim


# =========================
# Matrix -> SourceTable
# =========================
def _make_unique(cols):
    seen = {}
    out = []
    for c in cols:
        base = str(c).strip()
        if base == "" or base.lower() == "nan":
            base = "col"
        n = seen.get(base, 0) + 1
        seen[base] = n
        out.append(base if n == 1 else f"{base}__{n}")
    return out


def _clean_header_cell(v: Any) -> str:
    if v is None:
        return ""
    s = str(v).replace("\ufeff", "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ('"', "'"):
        s = s[1:-1].strip()
    return s


def _matrix_to_frame(matrix: List[List[str]]) -> pd.DataFrame:
    width = max((len(r) for r in matrix), default=0)
    padded = [list(r) + [""] * (width - len(r)) for r in matrix]
    df_raw = pd.DataFrame(padded, dtype=object)
    # unified: row number in the source (1-based)
    df_raw.insert(0, "_origin_row", range(1, len(df_raw) + 1))
    return df_raw


def build_table(
    df_raw: pd.DataFrame,
    *,
    header_row: Optional[int] = None,
    max_scan_rows: int = 5,
    source_name: str = "",
    sheet_name: str = "",
    fmt: str = "csv",
) -> SourceTable:
    if df_raw.empty or df_raw.shape[1] <= 1:
        raise MalformedInputError("file is empty", source_name=source_name)

    if header_row is None:
        start, filled = detect_header_row(df_raw, max_scan_rows=max_scan_rows)
    else:
        start = int(header_row)
        if not 0 <= start < len(df_raw):
            raise MalformedInputError(f"header row {start + 1} is outside the table", source_name=source_name)
        filled = sum(1 for v in df_raw.iloc[start, 1:].tolist() if _cell_text(v).strip())
    if filled == 0:
        raise MalformedInputError("header row is blank", source_name=source_name)

    header_cells = df_raw.iloc[start, 1:].tolist()
    data_block = df_raw.iloc[start + 1:, :]

    # drop trailing/stray columns that are blank both in the header and in every data row
    keep = []
    for c_idx, h in enumerate(header_cells):
        col = data_block.iloc[:, c_idx + 1].tolist()
        if _clean_header_cell(h) or any(str(v).strip() for v in col if v is not None):
            keep.append(c_idx)

    headers = [_clean_header_cell(header_cells[i]) or f"col_{i + 1}" for i in keep]
    headers = _make_unique(headers)

    rows: List[Dict[str, str]] = []
    origin_rows: List[int] = []
    for rec in data_block.itertuples(index=False, name=None):
        cells = ["" if v is None else str(v) for v in rec[1:]]
        values = [cells[i] for i in keep]
        if not any(v.strip() for v in values):
            continue
        rows.append(dict(zip(headers, values)))
        origin_rows.append(int(rec[0]))

    if not rows:
        raise MalformedInputError("no data rows below the header row", source_name=source_name)

    return SourceTable(
        headers=headers,
        rows=rows,
        source_name=source_name,
        sheet_name=sheet_name,
        format=fmt,
        header_row=int(df_raw.iat[start, 0]),
        origin_rows=origin_rows,
    )


# =========================
# Main: bytes -> table
# =========================
def read_table(
    data: bytes,
    format_hint: Optional[str] = None,
    *,
    source_name: str = "",
    sheet: Optional[str] = None,
    header_row: Optional[int] = None,
) -> SourceTable:
    """
    Parse an uploaded file into a SourceTable.

    The format is detected from content (ZIP signature -> .xlsx, otherwise
    delimited text with a sniffed delimiter and encoding); `format_hint` (a
    format name or a file name) only breaks delimiter ties.
    `header_row` (0-based) overrides header detection.

    Raises MalformedInputError for empty or unreadable files, blank header
    rows and tables without data rows.
    """
    if not data or not data.strip():
        raise MalformedInputError("file is empty", source_name=source_name)

    fmt = sniff_format(data, format_hint)
    if fmt == "xls":
        raise MalformedInputError(
            "legacy .xls workbooks are not supported; save the sheet as .xlsx or CSV",
            source_name=source_name,
        )

    if fmt == "xlsx":
        matrix, sheet_name = _read_xlsx(data, sheet)
        logger.debug("%s: xlsx sheet %r, %d raw rows", source_name, sheet_name, len(matrix))
    else:
        matrix, enc, delim = _read_delimited(data, fmt)
        sheet_name = fmt.upper()
        logger.debug("%s: %s text, encoding=%s delimiter=%r, %d raw rows", source_name, fmt, enc, delim, len(matrix))

    rules = load_rules()
    table = build_table(
        _matrix_to_frame(matrix),
        header_row=header_row,
        max_scan_rows=int(rules["header_scan_rows"]),
        source_name=source_name,
        sheet_name=sheet_name,
        fmt=fmt,
    )
    logger.debug("%s: header at row %d, %d columns, %d data rows",
                 source_name, table.header_row, len(table.headers), len(table.rows))
    return table


def read_upload(upload, *, sheet: Optional[str] = None, header_row: Optional[int] = None) -> SourceTable:
    # Streamlit UploadedFile or anything with .name and .getvalue()
    return read_table(upload.getvalue(), format_hint=upload.name, source_name=upload.name,
                      sheet=sheet, header_row=header_row)
