"""
Field catalog: the fixed set of semantic target fields the roster importer
understands, with the header aliases and sampled-value detectors the column
mapper scores against.

Header patterns are matched against `norm_header(...)` output: lower case,
punctuation removed, camelCase and digits split ("Guardian2Email" ->
"guardian 2 email").
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Tuple
from .utils import norm_text

CATALOG_VERSION = 3


class TargetField(str, Enum):
    FIRST = "first"
    LAST = "last"
    STUDENT_EXTERNAL_ID = "studentExternalId"
    GRADE = "grade"
    STUDENT_EMAIL = "studentEmail"
    GENDER = "gender"
    PRONOUNS = "pronouns"
    IEP = "iep"
    ELL = "ell"
    MEDICAL = "medical"
    SCHOOL = "school"
    CLASSROOM = "classroom"
    GUARDIAN1_NAME = "guardian1Name"
    GUARDIAN1_EMAIL = "guardian1Email"
    GUARDIAN1_PHONE = "guardian1Phone"
    GUARDIAN1_RELATIONSHIP = "guardian1Relationship"
    GUARDIAN2_NAME = "guardian2Name"
    GUARDIAN2_EMAIL = "guardian2Email"
    GUARDIAN2_PHONE = "guardian2Phone"
    GUARDIAN2_RELATIONSHIP = "guardian2Relationship"

    def __str__(self) -> str:
        return self.value


class ValueKind(str, Enum):
    TEXT = "text"
    BOOLEAN = "boolean"
    GENDER = "enum(gender)"
    IDENTIFIER = "identifier"


# =========================
# Value detectors (one cell at a time)
# =========================
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
GRADE_RE = re.compile(r"^(k|jk|sk|pk|prek|pre-k|kg)$|^((gr|grade|yr|year)\s*)?(0?\d|1[0-2])(st|nd|rd|th)?$")
PRONOUN_RE = re.compile(r"^(he|she|they|ze|xe|any)\s*/\s*\w+")
ID_RE = re.compile(r"^[a-z]{0,3}-?\d{3,}$")

YES_NO_TOKENS = frozenset({
    "y", "yes", "true", "1", "t", "\u2713", "\u2714",
    "n", "no", "false", "0", "f", "x", "-",
})
GENDER_TOKENS = frozenset({
    "male", "m", "female", "f", "nonbinary", "non-binary", "non binary", "nb", "enby",
    "boy", "girl", "unspecified", "custom", "x", "other",
})
RELATIONSHIP_TOKENS = frozenset({
    "mother", "father", "mom", "dad", "mum", "parent", "guardian", "legal guardian",
    "stepmother", "stepfather", "step-mother", "step-father", "grandmother", "grandfather",
    "grandparent", "aunt", "uncle", "sibling", "brother", "sister", "foster parent",
    "caregiver", "other",
})


def is_email(v: str) -> bool:
    return bool(EMAIL_RE.match(norm_text(v)))


def is_phone(v: str) -> bool:
    digits = re.sub(r"\D+", "", str(v or ""))
    return len(digits) >= 10


def is_grade(v: str) -> bool:
    return bool(GRADE_RE.match(norm_text(v)))


def is_gender(v: str) -> bool:
    return norm_text(v) in GENDER_TOKENS


def is_yes_no(v: str) -> bool:
    return norm_text(v) in YES_NO_TOKENS


def is_pronouns(v: str) -> bool:
    return bool(PRONOUN_RE.match(norm_text(v)))


def is_relationship(v: str) -> bool:
    return norm_text(v) in RELATIONSHIP_TOKENS


def is_identifier(v: str) -> bool:
    return bool(ID_RE.match(norm_text(v)))


# =========================
# Header vocabulary
# =========================
GUARDIAN_WORDS = r"(parent|guardian|caregiver|carer|contact|mother|father|mom|dad|custodian|emergency)"
SLOT_WORDS = r"(1|2|one|two|primary|main|secondary|second|alternate|alt|other)"
_GW_RE = re.compile(rf"\b{GUARDIAN_WORDS}s?\b")
# A second-guardian signal in a header
SECOND_SLOT_RE = re.compile(r"\b(2|two|second|secondary|alternate|alt|other)\b")

_G_PREFIX = rf"(({SLOT_WORDS}|legal|home|emergency) )?{GUARDIAN_WORDS}s?( {SLOT_WORDS})?"


def _rx(*patterns: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


@dataclass(frozen=True)
class FieldSpec:
    field: TargetField
    label: str
    kind: ValueKind
    strong: Tuple[Pattern[str], ...]
    aliases: Tuple[Pattern[str], ...]
    detector: Optional[Callable[[str], bool]] = None
    # full value-signal credit; partial credit scales down from it
    value_weight: float = 0.0
    requires: Optional[Pattern[str]] = None
    avoid: Optional[Pattern[str]] = None
    guardian_slot: Optional[int] = None

    @property
    def is_guardian(self) -> bool:
        return self.guardian_slot is not None


_NOT_STUDENT = re.compile(rf"\b{GUARDIAN_WORDS}s?\b|\bteacher\b")


def _guardian_specs(slot: int) -> List[FieldSpec]:
    n = str(slot)
    return [
        FieldSpec(
            field=TargetField(f"guardian{n}Name"),
            label=f"guardian {n} name",
            kind=ValueKind.TEXT,
            strong=_rx(rf"^{_G_PREFIX}( full)?( name)?$"),
            aliases=_rx(r"\bname\b", r"\bfull\b"),
            requires=_GW_RE,
            avoid=re.compile(r"\b(e ?mail|mail|phone|tel|telephone|cell|mobile|relation|relationship|address|language|id)\b"),
            guardian_slot=slot,
        ),
        FieldSpec(
            field=TargetField(f"guardian{n}Email"),
            label=f"guardian {n} email",
            kind=ValueKind.TEXT,
            strong=_rx(rf"^{_G_PREFIX} e ?mail( address)?$"),
            aliases=_rx(r"\be ?mail\b", r"\bmail\b"),
            detector=is_email,
            value_weight=4.0,
            requires=_GW_RE,
            guardian_slot=slot,
        ),
        FieldSpec(
            field=TargetField(f"guardian{n}Phone"),
            label=f"guardian {n} phone",
            kind=ValueKind.TEXT,
            strong=_rx(
                rf"^{_G_PREFIX}( (home|cell|mobile|work|day))? (phone|tel|telephone|cell|mobile)( (number|no|#))?$",
                r"^(home |cell |mobile |primary )?(phone|telephone|tel)( (number|no|#))?$",
            ),
            aliases=_rx(r"\b(phone|tel|telephone|cell|mobile)\b"),
            detector=is_phone,
            value_weight=3.0,
            avoid=re.compile(r"\bstudent\b"),
            guardian_slot=slot,
        ),
        FieldSpec(
            field=TargetField(f"guardian{n}Relationship"),
            label=f"guardian {n} relationship",
            kind=ValueKind.TEXT,
            strong=_rx(rf"^({_G_PREFIX} )?(relationship|relation|role)( to student)?$"),
            aliases=_rx(r"\b(relationship|relation)\b"),
            detector=is_relationship,
            value_weight=2.5,
            guardian_slot=slot,
        ),
    ]


_STUDENT_SPECS: List[FieldSpec] = [
    FieldSpec(
        field=TargetField.FIRST,
        label="first name",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(student |legal |student legal )?(first|given|fname|first name|given name|firstname|first nm)$"),
        aliases=_rx(r"\b(first|given|fname|forename)\b"),
        avoid=_NOT_STUDENT,
    ),
    FieldSpec(
        field=TargetField.LAST,
        label="last name",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(student |legal |student legal )?(last|surname|family name|lname|last name|lastname|last nm)$"),
        aliases=_rx(r"\b(last|surname|family|lname)\b"),
        avoid=_NOT_STUDENT,
    ),
    FieldSpec(
        field=TargetField.STUDENT_EXTERNAL_ID,
        label="student id",
        kind=ValueKind.IDENTIFIER,
        strong=_rx(
            r"^(student )?(id|id number|id #)$",
            r"^student (number|no|num|#)$",
            r"^(sis|osis|oen|local|state|district|school) (student )?(id|number|#)$",
            r"^(sid|student id|student number|student no|student #|studentid)$",
        ),
        aliases=_rx(r"\b(sid|osis|oen|sis)\b", r"\bstudent (id|number|no|#)\b", r"\bid\b"),
        detector=is_identifier,
        value_weight=1.5,
        avoid=re.compile(rf"\b{GUARDIAN_WORDS}s?\b|\b(e ?mail|mail|phone|class|course|section|school|teacher)\b"),
    ),
    FieldSpec(
        field=TargetField.GRADE,
        label="grade level",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(student )?(grade|grade level|gr|grd|grade lvl|year|yr|year level|year group)$"),
        aliases=_rx(r"\b(grade|gr|grd|yr|year|level)\b"),
        detector=is_grade,
        value_weight=2.5,
        avoid=re.compile(r"\b(average|avg|score|mark|percent|gpa|result|final)\b"),
    ),
    FieldSpec(
        field=TargetField.STUDENT_EMAIL,
        label="student email",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(student |school )?e ?mail( address)?$"),
        aliases=_rx(r"\be ?mail\b", r"\bmail\b"),
        detector=is_email,
        value_weight=4.0,
        avoid=_NOT_STUDENT,
    ),
    FieldSpec(
        field=TargetField.GENDER,
        label="gender",
        kind=ValueKind.GENDER,
        strong=_rx(r"^(student )?(gender|sex|gender identity)$"),
        aliases=_rx(r"\b(gender|sex)\b"),
        detector=is_gender,
        value_weight=2.5,
        avoid=_NOT_STUDENT,
    ),
    FieldSpec(
        field=TargetField.PRONOUNS,
        label="pronouns",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(student |preferred )?pronouns?$"),
        aliases=_rx(r"pronoun"),
        detector=is_pronouns,
        value_weight=3.0,
    ),
    FieldSpec(
        field=TargetField.IEP,
        label="iep",
        kind=ValueKind.BOOLEAN,
        strong=_rx(r"^(has )?(iep|sped|special ed|special education|iep status|iep 504|504)( status)?$"),
        aliases=_rx(r"\b(iep|sped|504)\b", r"\bspecial (ed|education|needs)\b"),
        detector=is_yes_no,
        value_weight=2.0,
    ),
    FieldSpec(
        field=TargetField.ELL,
        label="ell",
        kind=ValueKind.BOOLEAN,
        strong=_rx(r"^(is )?(ell|esl|eal|ell status|esl status|english learner|english language learner|mll)$"),
        aliases=_rx(r"\b(ell|esl|eal|mll|elp)\b", r"\benglish (language )?learner\b"),
        detector=is_yes_no,
        value_weight=2.0,
    ),
    FieldSpec(
        field=TargetField.MEDICAL,
        label="medical",
        kind=ValueKind.BOOLEAN,
        strong=_rx(r"^(medical|medical alert|medical flag|health|health alert|allergy|allergies|medical condition)$"),
        aliases=_rx(r"\bmed(ical)?\b", r"\bhealth\b", r"\ballerg"),
        detector=is_yes_no,
        value_weight=2.0,
    ),
    FieldSpec(
        field=TargetField.SCHOOL,
        label="school",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(school|school name|building|campus|site|school site)$"),
        aliases=_rx(r"\b(school|building|campus|site)\b"),
        avoid=re.compile(r"\b(e ?mail|mail|phone|id|number|#|year)\b"),
    ),
    FieldSpec(
        field=TargetField.CLASSROOM,
        label="classroom",
        kind=ValueKind.TEXT,
        strong=_rx(r"^(class|classroom|class name|section|course|course name|homeroom|period|class section|room|home room)$"),
        aliases=_rx(r"\b(class|classroom|section|course|homeroom|period|room)\b"),
        avoid=re.compile(r"\b(e ?mail|mail|phone|id|number|rank)\b"),
    ),
]

FIELD_CATALOG: Dict[TargetField, FieldSpec] = {
    spec.field: spec for spec in _STUDENT_SPECS + _guardian_specs(1) + _guardian_specs(2)
}

# catalog order is the deterministic tie-break order for the mapper
FIELD_ORDER: List[TargetField] = list(TargetField)

GUARDIAN_SLOTS: Dict[int, Dict[str, TargetField]] = {
    slot: {
        "name": TargetField(f"guardian{slot}Name"),
        "email": TargetField(f"guardian{slot}Email"),
        "phone": TargetField(f"guardian{slot}Phone"),
        "relationship": TargetField(f"guardian{slot}Relationship"),
    }
    for slot in (1, 2)
}

# Call sites differ only in which part of the catalog they expose
CATALOG_FILTERS: Dict[str, frozenset] = {
    "full": frozenset(TargetField),
    "web": frozenset(TargetField) - {TargetField.SCHOOL, TargetField.CLASSROOM},
}


def catalog_fields(name: str = "full") -> List[TargetField]:
    try:
        allowed = CATALOG_FILTERS[name]
    except KeyError:
        raise ValueError(f"unknown catalog filter: {name!r}") from None
    return [f for f in FIELD_ORDER if f in allowed]


def field_spec(field) -> FieldSpec:
    return FIELD_CATALOG[TargetField(field)]
