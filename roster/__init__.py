"""
Roster import and reconciliation:
- reading uploaded tables (CSV/TSV/XLSX)
- mapping columns to the fixed field catalog (column mapper)
- normalizing rows into student and guardian records
- committing them idempotently by natural key
- the import report and its Excel export
"""
from .catalog import TargetField, catalog_fields
from .ingest import SourceTable, read_table, read_upload
from .infer import ColumnMapping, MappingProposal, propose_mapping, persist_profile_for_mapping, load_profiles
from .normalize import normalize_row
from .store import make_engine, create_schema
from .commit import CommitOptions, commit_rows, commit_table
from .report import ImportReport, export_report_to_excel_bytes

__all__ = [
    "TargetField",
    "catalog_fields",
    "SourceTable",
    "read_table",
    "read_upload",
    "ColumnMapping",
    "MappingProposal",
    "propose_mapping",
    "persist_profile_for_mapping",
    "load_profiles",
    "normalize_row",
    "make_engine",
    "create_schema",
    "CommitOptions",
    "commit_rows",
    "commit_table",
    "ImportReport",
    "export_report_to_excel_bytes",
]
