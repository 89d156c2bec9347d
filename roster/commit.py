"""
Reconciliation/commit engine.

Each raw row is normalized and then written in its own transaction:
school, student, guardians and their links, classroom, enrollment. All of
them are create-or-update by natural key, so importing the same table
again converges instead of duplicating (except students without an
external id, which have no natural key and are always new).

A row ends as exactly one of RowCommitted / RowSkipped / RowFailed;
nothing a single row does can stop the rows after it.
"""
from __future__ import annotations
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Union
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker
from .catalog import TargetField
from .errors import RowCommitError
from .infer import ColumnMapping
from .ingest import SourceTable
from .models import Classroom, Enrollment, Guardian, School, Student, StudentGuardian
from .normalize import NormalizedGuardian, NormalizedRow, NormalizedStudent, normalize_row
from .report import ImportReport, RowCommitted, RowFailed, RowResult, RowSkipped
from .store import get_row, insert_row, session_factory, update_row, upsert
from .utils import slugify

logger = logging.getLogger(__name__)

SYNTHETIC_EMAIL_DOMAIN = "example.invalid"
DEFAULT_RELATIONSHIP = "guardian"

_FLAG_FIELDS = (
    (TargetField.IEP, "iep"),
    (TargetField.ELL, "ell"),
    (TargetField.MEDICAL, "medical"),
)
_TEXT_FIELDS = ("grade", "email", "gender")


@dataclass
class CommitOptions:
    create_classes: bool = True


def synthetic_guardian_key(student_id: str, guardian: NormalizedGuardian) -> str:
    """Stable dedupe key for a guardian without an email, scoped to one student."""
    tail = "" if guardian.name_synthesized else slugify(guardian.name)
    return f"{student_id}-{tail or f'guardian-{guardian.slot}'}@{SYNTHETIC_EMAIL_DOMAIN}"


# =========================
# One row, inside its transaction
# =========================
def _student_insert_values(s: NormalizedStudent, school_id: Optional[str]) -> Dict[str, Any]:
    return {
        "tenant_id": s.tenant_id,
        "external_id": s.external_id,
        "first": s.first,
        "last": s.last,
        "grade": s.grade,
        "email": s.email,
        "gender": s.gender,
        "pronouns": s.pronouns,
        "iep": s.iep,
        "ell": s.ell,
        "medical": s.medical,
        "school_id": school_id,
    }


def _student_update_values(s: NormalizedStudent, school_id: Optional[str], existing) -> Dict[str, Any]:
    # blank or unmapped cells never clear stored values
    vals: Dict[str, Any] = {"first": s.first, "last": s.last}
    for attr in _TEXT_FIELDS:
        v = getattr(s, attr)
        if v is not None:
            vals[attr] = v
    for f, attr in _FLAG_FIELDS:
        if f in s.provided:
            vals[attr] = getattr(s, attr)
    if s.pronouns and not (s.pronouns_derived and existing is not None and existing.pronouns):
        vals["pronouns"] = s.pronouns
    if school_id is not None:
        vals["school_id"] = school_id
    return vals


def _commit_student(session: Session, s: NormalizedStudent, school_id: Optional[str], counts: Counter) -> str:
    values = _student_insert_values(s, school_id)
    if not s.external_id:
        counts["created_students"] += 1
        return insert_row(session, Student, values)

    key = {"tenant_id": s.tenant_id, "external_id": s.external_id}
    student_id, created = upsert(session, Student, key, values)
    if created:
        counts["created_students"] += 1
    else:
        existing = get_row(session, Student, student_id)
        update_row(session, Student, student_id, _student_update_values(s, school_id, existing))
        counts["updated_students"] += 1
    return student_id


def _commit_guardian(session: Session, tenant_id: str, student_id: str, g: NormalizedGuardian, counts: Counter) -> None:
    key = {"tenant_id": tenant_id, "dedupe_key": g.email or synthetic_guardian_key(student_id, g)}
    guardian_id, created = upsert(session, Guardian, key, {"email": g.email, "name": g.name, "phone": g.phone})
    if created:
        counts["created_guardians"] += 1
    else:
        vals: Dict[str, Any] = {}
        if not g.name_synthesized:
            vals["name"] = g.name
        if g.phone:
            vals["phone"] = g.phone
        update_row(session, Guardian, guardian_id, vals)

    # an existing link keeps its relationship label
    link_key = {"tenant_id": tenant_id, "student_id": student_id, "guardian_id": guardian_id}
    _, link_created = upsert(session, StudentGuardian, link_key, {"relationship": g.relationship or DEFAULT_RELATIONSHIP})
    if link_created:
        counts["created_links"] += 1


def _commit_row(session: Session, row: NormalizedRow, options: CommitOptions) -> RowCommitted:
    s = row.student
    counts: Counter = Counter()

    school_id = None
    if s.school_name:
        school_id, created = upsert(session, School, {"tenant_id": s.tenant_id, "name": s.school_name})
        if created:
            counts["created_schools"] += 1

    student_id = _commit_student(session, s, school_id, counts)

    for g in row.guardians:
        _commit_guardian(session, s.tenant_id, student_id, g, counts)

    if options.create_classes and s.classroom_name:
        class_key = {"tenant_id": s.tenant_id, "name": s.classroom_name}
        classroom_id, created = upsert(session, Classroom, class_key, {"grade": s.grade, "school_id": school_id})
        if created:
            counts["created_classes"] += 1
        enroll_key = {"tenant_id": s.tenant_id, "classroom_id": classroom_id, "student_id": student_id}
        _, created = upsert(session, Enrollment, enroll_key)
        if created:
            counts["created_enrollments"] += 1

    return RowCommitted(row.row_index, student_id, dict(counts))


def _describe(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        exc = exc.orig
    text = str(exc).strip().splitlines()[0] if str(exc).strip() else ""
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def commit_row(
    sessions: sessionmaker,
    tenant_id: str,
    mapping: ColumnMapping,
    raw: Mapping[str, str],
    row_index: int,
    options: CommitOptions,
) -> RowResult:
    """Normalize and commit one row. Never raises; the outcome is the returned value."""
    nrow = normalize_row(dict(raw), mapping, tenant_id, row_index)
    if not nrow.ok:
        return RowSkipped(row_index, nrow.error)
    try:
        with sessions() as session, session.begin():
            return _commit_row(session, nrow, options)
    except Exception as e:  # the row's transaction is already rolled back here
        return RowFailed(row_index, RowCommitError(row_index, _describe(e), cause=e))


def commit_rows(
    bind: Union[Engine, sessionmaker],
    tenant_id: str,
    mapping: ColumnMapping,
    rows: Iterable[Mapping[str, str]],
    options: Optional[CommitOptions] = None,
    *,
    origin_rows: Optional[Sequence[int]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> ImportReport:
    """
    Commit raw rows for one tenant, in input order, one transaction per row.
    `should_stop` is polled between rows; when it returns True the remaining
    rows are left alone and the report is marked cancelled.
    """
    if not tenant_id:
        raise ValueError("tenant_id is required")
    options = options or CommitOptions()
    sessions = session_factory(bind)
    report = ImportReport(tenant_id=tenant_id)
    rows = list(rows)
    logger.info("[commit] tenant=%s rows=%d create_classes=%s", tenant_id, len(rows), options.create_classes)

    for i, raw in enumerate(rows):
        if should_stop is not None and should_stop():
            report.cancelled = True
            logger.warning("[commit] tenant=%s cancelled after %d of %d rows", tenant_id, i, len(rows))
            break
        result = commit_row(sessions, tenant_id, mapping, raw, i, options)
        source_row = origin_rows[i] if origin_rows is not None and i < len(origin_rows) else None
        report.add(result, source_row)
        if isinstance(result, RowCommitted):
            logger.debug("[commit] row %d -> student %s %s", i, result.student_id, result.counts)
        else:
            logger.warning("[commit] row %d %s: %s", i, "skipped" if isinstance(result, RowSkipped) else "failed", result.error.message)

    logger.info(
        "[commit] tenant=%s done: %s skipped=%d failed=%d",
        tenant_id, report.counts(), report.skipped_rows, report.failed_rows,
    )
    return report


def commit_table(
    bind: Union[Engine, sessionmaker],
    tenant_id: str,
    mapping: ColumnMapping,
    table: SourceTable,
    options: Optional[CommitOptions] = None,
    *,
    should_stop: Optional[Callable[[], bool]] = None,
) -> ImportReport:
    mapping.validate(table.headers)
    return commit_rows(
        bind,
        tenant_id,
        mapping,
        table.rows,
        options,
        origin_rows=table.origin_rows,
        should_stop=should_stop,
    )
