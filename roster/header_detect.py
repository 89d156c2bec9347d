from __future__ import annotations
import re
from typing import Tuple
import pandas as pd
from .utils import norm_text

EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
NUMERIC_RE = re.compile(r"^\s*[-+]?\d+([.,]\d+)?\s*$")
NAME_CHAR_RE = re.compile(r"[^\W\d_]")
DIGIT_RE = re.compile(r"\d")

# Keywords typical for roster header rows
HEADER_KWS = [
    "first", "last", "name", "student", "grade", "email", "e-mail", "gender", "pronoun",
    "iep", "ell", "esl", "medical", "parent", "guardian", "contact", "phone",
    "school", "class", "homeroom", "section", "id", "relationship",
]


def _cell_text(v) -> str:
    if v is None:
        return ""
    s = str(v)
    if not s or s.lower() == "nan":
        return ""
    return s


def _row_nonempty_count(row: pd.Series) -> int:
    return sum(1 for v in row.tolist() if norm_text(_cell_text(v)) != "")


def _row_keyword_score(row: pd.Series) -> int:
    # how many cells carry a header-ish keyword
    score = 0
    for v in row.tolist():
        s = norm_text(_cell_text(v))
        if not s:
            continue
        if any(k in s for k in HEADER_KWS):
            score += 1
    return score


def _row_dataish_score(row: pd.Series) -> int:
    # looks like a student record: emails, numbers, "Firstname Lastname" values
    score = 0
    for v in row.tolist():
        s = _cell_text(v).strip()
        if not s:
            continue
        if EMAIL_RE.search(s):
            score += 1
        if NUMERIC_RE.match(s):
            score += 1
        if NAME_CHAR_RE.search(s) and not DIGIT_RE.search(s):
            parts = s.split()
            if len(parts) >= 2 and len(s) >= 8:
                score += 1
    return score


def _row_header_score(row: pd.Series) -> Tuple[int, int]:
    nonempty = _row_nonempty_count(row)
    return nonempty + _row_keyword_score(row) - _row_dataish_score(row), nonempty


def detect_header_row(df_raw: pd.DataFrame, max_scan_rows: int = 5) -> Tuple[int, int]:
    """
    Returns (header_row_0based, nonempty_cells).
    Exported spreadsheets often start with title rows ("Room 12 roster - Fall"),
    so each of the first few rows is scored: non-empty cells plus keyword hits,
    minus data-like cells (emails, numbers, full names). A header with an
    untitled column still beats the fuller data row below it.
    On a tie the earliest row wins.
    """
    n = min(max_scan_rows, len(df_raw))
    best = (0, 0)
    best_score = None

    for i in range(n):
        row = df_raw.iloc[i, 1:]  # without _origin_row
        score, nonempty = _row_header_score(row)
        if nonempty == 0:
            continue
        if best_score is None or score > best_score:
            best_score = score
            best = (i, nonempty)

    return best
