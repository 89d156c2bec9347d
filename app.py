from __future__ import annotations
import hashlib
import logging
import streamlit as st
import pandas as pd
from roster.catalog import FIELD_CATALOG, catalog_fields
from roster.commit import CommitOptions, commit_table
from roster.errors import MalformedInputError, MappingConflictError
from roster.infer import ColumnMapping, load_profiles, persist_profile_for_mapping, propose_mapping, sample_values
from roster.ingest import read_upload, sheet_names, sniff_format
from roster.report import export_report_to_excel_bytes
from roster.store import create_schema, make_engine

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

st.set_page_config(page_title="Roster import", layout="wide")
st.title("Roster import")


# =========================
# Helpers
# =========================
def _safe_key_prefix(src_key: str) -> str:
    # widget keys must be stable and safe for any file name
    return hashlib.md5(src_key.encode("utf-8")).hexdigest()


@st.cache_resource
def _engine():
    engine = make_engine()
    create_schema(engine)
    return engine


# =========================
# Sidebar
# =========================
with st.sidebar:
    st.header("Import settings")
    tenant_id = st.text_input("Tenant id", value=st.session_state.get("tenant_id", ""))
    st.session_state["tenant_id"] = tenant_id
    catalog_name = st.selectbox(
        "Field set",
        ["full", "web"],
        format_func=lambda x: {"full": "All fields", "web": "Without school/classroom"}[x],
    )
    create_classes = st.checkbox("Create missing classrooms", value=True)
    use_profiles = st.checkbox("Reuse saved mapping profiles", value=True)

upload = st.file_uploader("Roster file (CSV, TSV or XLSX)", type=["csv", "tsv", "txt", "xlsx"])

if upload is None:
    st.warning("Upload a roster file.")
    st.stop()

sheet = None
if sniff_format(upload.getvalue(), upload.name) == "xlsx":
    try:
        names = sheet_names(upload.getvalue())
    except MalformedInputError as e:
        st.error(str(e))
        st.stop()
    if len(names) > 1:
        sheet = st.selectbox("Sheet", names)

src_key = f"{upload.name}::{sheet or ''}"
kp = _safe_key_prefix(src_key)

if "header_overrides" not in st.session_state:
    st.session_state["header_overrides"] = {}

try:
    table = read_upload(upload, sheet=sheet, header_row=st.session_state["header_overrides"].get(src_key))
except MalformedInputError as e:
    st.error(str(e))
    st.stop()

st.info(f"{table.source_name} / {table.sheet_name}: {len(table.headers)} columns, {len(table)} rows, header at row {table.header_row}")

with st.expander("Header row", expanded=False):
    new_hdr = st.number_input("Header row (1-based)", 1, max(1, table.header_row + 20), int(table.header_row), key=f"{kp}__hdr")
    if st.button("Use this header row", key=f"{kp}__save_hdr"):
        st.session_state["header_overrides"][src_key] = int(new_hdr) - 1
        st.rerun()
    st.dataframe(table.to_dataframe().head(20), width="stretch")


# =========================
# Column mapping
# =========================
fields = catalog_fields(catalog_name)
profiles = load_profiles() if use_profiles else None
proposal = propose_mapping(table, fields, profiles=profiles)

st.subheader("Column mapping")
if proposal.from_profile:
    st.success("Mapping taken from a saved profile for this column layout.")

for w in proposal.warnings:
    st.warning(str(w))

# widget and mapping state are kept per field set
kfp = f"{kp}__{catalog_name}"
mapping_key = f"{kfp}__mapping"
if mapping_key not in st.session_state:
    st.session_state[mapping_key] = proposal.mapping.to_dict()
current = st.session_state[mapping_key]

options = [""] + list(table.headers)
grid = st.columns(4)
for i, f in enumerate(fields):
    spec = FIELD_CATALOG[f]
    chosen = current.get(f.value) or ""
    with grid[i % 4]:
        picked = st.selectbox(
            f"{spec.label} ({f.value})",
            options,
            index=options.index(chosen) if chosen in options else 0,
            key=f"{kfp}__{f.value}",
        )
        score = proposal.scores.get(f)
        if score is not None and picked == chosen:
            st.caption(f"confidence {score:.2f}")
    if picked != chosen:
        # a header moved to this field is released from any other field
        edited = ColumnMapping.from_dict(current).with_override(f, picked or None)
        st.session_state[mapping_key] = edited.to_dict()
        for other, h in current.items():
            if h and h == picked and other != f.value:
                st.session_state.pop(f"{kfp}__{other}", None)
        st.rerun()

try:
    mapping = ColumnMapping.from_dict(st.session_state[mapping_key], headers=table.headers).restricted_to(fields)
except MappingConflictError as e:
    st.error(str(e))
    st.stop()

# samples follow the reviewed mapping, not the proposal
final_samples = sample_values(table, mapping)
samples = pd.DataFrame(
    [{"Field": f.value, "Column": h, "Sample values": ", ".join(final_samples.get(f, []))}
     for f, h in mapping.items()]
)
st.dataframe(samples, width="stretch", hide_index=True)

c1, c2 = st.columns(2)
with c1:
    if st.button("Save mapping profile"):
        sig = persist_profile_for_mapping(table.headers, mapping)
        st.success(f"Saved profile {sig[:8]}.")
with c2:
    if st.button("Reset to proposal"):
        st.session_state.pop(mapping_key, None)
        for f in fields:
            st.session_state.pop(f"{kfp}__{f.value}", None)
        st.rerun()


# =========================
# Commit
# =========================
st.subheader("Commit")
if not tenant_id.strip():
    st.warning("Enter a tenant id to commit.")
    st.stop()

if st.button("Commit import", type="primary"):
    with st.spinner("Committing rows..."):
        report = commit_table(_engine(), tenant_id.strip(), mapping, table, CommitOptions(create_classes=create_classes))
    st.session_state["report"] = report

report = st.session_state.get("report")
if report is not None:
    m = st.columns(4)
    m[0].metric("Students created", report.created_students)
    m[1].metric("Students updated", report.updated_students)
    m[2].metric("Guardians created", report.created_guardians)
    m[3].metric("Enrollments created", report.created_enrollments)
    m = st.columns(4)
    m[0].metric("Classrooms created", report.created_classes)
    m[1].metric("Links created", report.created_links)
    m[2].metric("Skipped rows", report.skipped_rows)
    m[3].metric("Failed rows", report.failed_rows)

    if report.failures:
        st.error(f"{len(report.failures)} row(s) were not imported:")
        st.dataframe(report.failures_frame(), width="stretch", hide_index=True)
    else:
        st.success("All rows imported.")

    st.download_button(
        "Download report (Excel)",
        data=export_report_to_excel_bytes(report),
        file_name="roster_import_report.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )
