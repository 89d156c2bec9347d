from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional
from .catalog import GUARDIAN_SLOTS, TargetField
from .errors import RowValidationError
from .infer import ColumnMapping
from .utils import norm_text

TRUTHY = frozenset({"y", "yes", "true", "1", "t", "\u2713", "\u2714"})

GENDER_CANON = {
    "m": "male", "male": "male", "boy": "male",
    "f": "female", "female": "female", "girl": "female",
    "nb": "nonbinary", "non-binary": "nonbinary", "non binary": "nonbinary",
    "nonbinary": "nonbinary", "enby": "nonbinary",
}

PRONOUNS_BY_GENDER = {
    "male": "he/him/his",
    "female": "she/her/her",
    "nonbinary": "they/them/their",
}

_INVISIBLE_RE = re.compile(r"[\ufeff\u200b]")
_NBSP_RE = re.compile(r"[\u00A0\u2007\u202F]")


def clean(v) -> Optional[str]:
    # trimmed text, or None when nothing is left
    if v is None:
        return None
    s = _INVISIBLE_RE.sub("", str(v))
    s = _NBSP_RE.sub(" ", s).strip()
    return s or None


def coerce_bool(v) -> bool:
    return norm_text(v) in TRUTHY


def canonical_gender(v) -> Optional[str]:
    s = clean(v)
    if s is None:
        return None
    return GENDER_CANON.get(norm_text(s), s)


def derive_pronouns(gender: Optional[str], explicit: Optional[str] = None) -> Optional[str]:
    """An explicit value always wins; otherwise pronouns follow a canonical gender."""
    if explicit:
        return explicit
    if not gender:
        return None
    return PRONOUNS_BY_GENDER.get(GENDER_CANON.get(norm_text(gender), norm_text(gender)))


@dataclass(frozen=True)
class NormalizedGuardian:
    slot: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None
    # name came from the email local part (or the "Guardian" fallback)
    name_synthesized: bool = False


@dataclass
class NormalizedStudent:
    tenant_id: str
    first: str
    last: str
    external_id: Optional[str] = None
    grade: Optional[str] = None
    email: Optional[str] = None
    gender: Optional[str] = None
    pronouns: Optional[str] = None
    pronouns_derived: bool = False
    iep: bool = False
    ell: bool = False
    medical: bool = False
    school_name: Optional[str] = None
    classroom_name: Optional[str] = None
    # fields whose column is mapped; unmapped ones are never written on update
    provided: FrozenSet[TargetField] = frozenset()


@dataclass
class NormalizedRow:
    row_index: int
    student: Optional[NormalizedStudent] = None
    guardians: List[NormalizedGuardian] = field(default_factory=list)
    error: Optional[RowValidationError] = None

    @property
    def ok(self) -> bool:
        return self.student is not None


def _guardian(slot: int, values: Dict[str, Optional[str]]) -> Optional[NormalizedGuardian]:
    name, email, phone = values.get("name"), values.get("email"), values.get("phone")
    if not (name or email or phone):
        return None
    if email:
        email = email.lower()
    synthesized = False
    if not name:
        name = email.split("@", 1)[0] if email else "Guardian"
        synthesized = True
    return NormalizedGuardian(
        slot=slot,
        name=name,
        email=email,
        phone=phone,
        relationship=values.get("relationship"),
        name_synthesized=synthesized,
    )


def normalize_row(row: Dict[str, str], mapping: ColumnMapping, tenant_id: str, row_index: int = 0) -> NormalizedRow:
    """
    Apply a mapping to one raw row. Never raises: a row without both names
    comes back with `student=None` and a RowValidationError value.
    """
    def get(f: TargetField) -> Optional[str]:
        h = mapping.get(f)
        if h is None:
            return None
        return clean(row.get(h, ""))

    first, last = get(TargetField.FIRST), get(TargetField.LAST)
    if not first or not last:
        missing = [label for label, v in (("first", first), ("last", last)) if not v]
        msg = f"missing {' and '.join(missing)} name"
        return NormalizedRow(row_index=row_index, error=RowValidationError(row_index, msg))

    gender = canonical_gender(get(TargetField.GENDER))
    explicit = get(TargetField.PRONOUNS)
    pronouns = derive_pronouns(gender, explicit)
    email = get(TargetField.STUDENT_EMAIL)

    student = NormalizedStudent(
        tenant_id=tenant_id,
        first=first,
        last=last,
        external_id=get(TargetField.STUDENT_EXTERNAL_ID),
        grade=get(TargetField.GRADE),
        email=email.lower() if email else None,
        gender=gender,
        pronouns=pronouns,
        pronouns_derived=bool(pronouns) and not explicit,
        iep=coerce_bool(get(TargetField.IEP)),
        ell=coerce_bool(get(TargetField.ELL)),
        medical=coerce_bool(get(TargetField.MEDICAL)),
        school_name=get(TargetField.SCHOOL),
        classroom_name=get(TargetField.CLASSROOM),
        provided=frozenset(mapping.fields()),
    )

    guardians: List[NormalizedGuardian] = []
    for slot, fields in GUARDIAN_SLOTS.items():
        g = _guardian(slot, {k: get(f) for k, f in fields.items()})
        if g is not None:
            guardians.append(g)

    return NormalizedRow(row_index=row_index, student=student, guardians=guardians)
