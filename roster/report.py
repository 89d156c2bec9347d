from __future__ import annotations
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Optional, Union
import pandas as pd
from .errors import RowCommitError, RowValidationError

COUNTERS = [
    "created_students",
    "updated_students",
    "created_guardians",
    "created_links",
    "created_schools",
    "created_classes",
    "created_enrollments",
]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


# =========================
# Per-row results
# =========================
@dataclass(frozen=True)
class RowCommitted:
    row_index: int
    student_id: str
    # increments for COUNTERS, as durably committed by this row
    counts: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RowSkipped:
    row_index: int
    error: RowValidationError


@dataclass(frozen=True)
class RowFailed:
    row_index: int
    error: RowCommitError


RowResult = Union[RowCommitted, RowSkipped, RowFailed]


@dataclass
class RowProblem:
    row_index: int
    message: str
    kind: str  # "skipped" | "failed"
    source_row: Optional[int] = None


@dataclass
class ImportReport:
    """
    Aggregate outcome of one commit. Counts only ever include rows whose
    transaction committed; problems are kept in input row order.
    """
    tenant_id: str = ""
    rows_total: int = 0
    created_students: int = 0
    updated_students: int = 0
    created_guardians: int = 0
    created_links: int = 0
    created_schools: int = 0
    created_classes: int = 0
    created_enrollments: int = 0
    skipped_rows: int = 0
    failed_rows: int = 0
    cancelled: bool = False
    failures: List[RowProblem] = field(default_factory=list)

    def add(self, result: RowResult, source_row: Optional[int] = None) -> None:
        self.rows_total += 1
        if isinstance(result, RowCommitted):
            for name, n in result.counts.items():
                if name not in COUNTERS:
                    raise KeyError(f"unknown report counter: {name}")
                setattr(self, name, getattr(self, name) + n)
        elif isinstance(result, RowSkipped):
            self.skipped_rows += 1
            self.failures.append(RowProblem(result.row_index, result.error.message, "skipped", source_row))
        elif isinstance(result, RowFailed):
            self.failed_rows += 1
            self.failures.append(RowProblem(result.row_index, result.error.message, "failed", source_row))
        else:
            raise TypeError(f"unknown row result: {result!r}")

    @property
    def committed_rows(self) -> int:
        return self.rows_total - self.skipped_rows - self.failed_rows

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled

    def counts(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNTERS}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"tenantId": self.tenant_id, "rowsTotal": self.rows_total}
        out.update({_camel(k): v for k, v in self.counts().items()})
        out.update({
            "skippedRows": self.skipped_rows,
            "failedRows": self.failed_rows,
            "cancelled": self.cancelled,
            "failures": [
                {"rowIndex": p.row_index, "message": p.message, "kind": p.kind, "sourceRow": p.source_row}
                for p in self.failures
            ],
        })
        return out

    def summary_frame(self) -> pd.DataFrame:
        rows = [("rowsTotal", self.rows_total)]
        rows += [(_camel(k), v) for k, v in self.counts().items()]
        rows += [("skippedRows", self.skipped_rows), ("failedRows", self.failed_rows), ("cancelled", self.cancelled)]
        return pd.DataFrame(rows, columns=["Metric", "Value"])

    def failures_frame(self) -> pd.DataFrame:
        cols = ["Row", "Source row", "Kind", "Message"]
        if not self.failures:
            return pd.DataFrame(columns=cols)
        return pd.DataFrame(
            [[p.row_index, p.source_row, p.kind, p.message] for p in self.failures],
            columns=cols,
        )


def export_report_to_excel_bytes(report: ImportReport) -> bytes:
    summary_df = report.summary_frame()
    problems_df = report.failures_frame()
    bio = BytesIO()

    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        summary_df.to_excel(writer, index=False, sheet_name="Summary")
        problems_df.to_excel(writer, index=False, sheet_name="Row problems")

        wb = writer.book
        fmt_header = wb.add_format({"bold": True, "bg_color": "#F2F2F2", "border": 1, "valign": "vcenter"})
        fmt_skip = wb.add_format({"border": 1, "valign": "top", "bg_color": "#FEF7E0"})
        fmt_fail = wb.add_format({"border": 1, "valign": "top", "bg_color": "#FCE8E6"})

        def format_df_sheet(sheet_name: str, df: pd.DataFrame, default_width: int = 16, max_width: int = 60):
            ws = writer.sheets.get(sheet_name)
            if ws is None:
                return
            ws.freeze_panes(1, 0)
            ws.autofilter(0, 0, max(1, len(df)), max(0, len(df.columns) - 1))
            for col, name in enumerate(df.columns):
                ws.write(0, col, name, fmt_header)
                w = max(10, min(max_width, int(len(str(name)) * 1.2) + 10))
                ws.set_column(col, col, max(default_width, w))

        format_df_sheet("Summary", summary_df, default_width=22, max_width=30)
        format_df_sheet("Row problems", problems_df)

        ws = writer.sheets["Row problems"]
        ws.set_column(3, 3, 70)
        for i, p in enumerate(report.failures, start=1):
            ws.set_row(i, None, fmt_fail if p.kind == "failed" else fmt_skip)

    return bio.getvalue()
