from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple
from rapidfuzz import fuzz
from .catalog import (
    FIELD_ORDER,
    SECOND_SLOT_RE,
    CATALOG_VERSION,
    FieldSpec,
    TargetField,
    catalog_fields,
    field_spec,
)
from .errors import MappingAmbiguityWarning, MappingConflictError
from .ingest import SourceTable
from .utils import column_signature, load_json, load_rules, norm_header, profiles_path, save_json

logger = logging.getLogger(__name__)

STRONG_HEADER = 6.0
ALIAS_HEADER = 3.0
SLOT_BIAS = 1.5
# a winner this close to the runner-up is reported to the reviewer
AMBIGUITY_MARGIN = 0.25

_FIELD_RANK = {f: i for i, f in enumerate(FIELD_ORDER)}


def _as_field(f: Any) -> TargetField:
    try:
        return TargetField(f)
    except ValueError:
        raise MappingConflictError(f"unknown target field: {f!r}") from None


class ColumnMapping:
    """
    Partial injective assignment TargetField -> source header.
    No two fields may share a header; an unmapped field is simply absent.
    """

    def __init__(self, assignments: Optional[Mapping[Any, Optional[str]]] = None,
                 *, headers: Optional[Sequence[str]] = None):
        self._by_field: Dict[TargetField, str] = {}
        for f, h in (assignments or {}).items():
            if h is None or str(h) == "":
                continue
            self._assign(_as_field(f), str(h))
        if headers is not None:
            self.validate(headers)

    def _assign(self, f: TargetField, header: str) -> None:
        owner = self.field_for(header)
        if owner is not None and owner != f:
            raise MappingConflictError(f"column {header!r} is assigned to both {owner} and {f}")
        self._by_field[f] = header

    def get(self, f: Any) -> Optional[str]:
        return self._by_field.get(_as_field(f))

    def field_for(self, header: str) -> Optional[TargetField]:
        for f, h in self._by_field.items():
            if h == header:
                return f
        return None

    def items(self) -> Iterator[Tuple[TargetField, str]]:
        for f in sorted(self._by_field, key=_FIELD_RANK.__getitem__):
            yield f, self._by_field[f]

    def fields(self) -> List[TargetField]:
        return [f for f, _ in self.items()]

    def with_override(self, f: Any, header: Optional[str]) -> "ColumnMapping":
        """
        Copy with one field reassigned (None unmaps it). A header taken from
        another field is released from that field.
        """
        f = _as_field(f)
        out = ColumnMapping()
        out._by_field = {k: v for k, v in self._by_field.items() if k != f and v != header}
        if header:
            out._by_field[f] = header
        return out

    def restricted_to(self, fields: Sequence[Any]) -> "ColumnMapping":
        # drop assignments outside a catalog subset (e.g. the "web" field set)
        keep = {_as_field(f) for f in fields}
        out = ColumnMapping()
        out._by_field = {k: v for k, v in self._by_field.items() if k in keep}
        return out

    def validate(self, headers: Sequence[str]) -> None:
        known = set(headers)
        missing = [h for _, h in self.items() if h not in known]
        if missing:
            raise MappingConflictError(f"mapped column(s) not in table: {', '.join(map(repr, missing))}")

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {f.value: self._by_field.get(f) for f in FIELD_ORDER}

    @classmethod
    def from_dict(cls, d: Mapping[Any, Optional[str]], headers: Optional[Sequence[str]] = None) -> "ColumnMapping":
        return cls(d, headers=headers)

    def __len__(self) -> int:
        return len(self._by_field)

    def __contains__(self, f: Any) -> bool:
        return _as_field(f) in self._by_field

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ColumnMapping):
            return NotImplemented
        return self._by_field == other._by_field

    def __repr__(self) -> str:
        inner = ", ".join(f"{f.value}={h!r}" for f, h in self.items())
        return f"ColumnMapping({inner})"


@dataclass
class MappingProposal:
    mapping: ColumnMapping
    # winning score per mapped field
    scores: Dict[TargetField, float] = field(default_factory=dict)
    # top candidates per field (header, score), for the review UI
    candidates: Dict[TargetField, List[Tuple[str, float]]] = field(default_factory=dict)
    warnings: List[MappingAmbiguityWarning] = field(default_factory=list)
    samples: Dict[TargetField, List[str]] = field(default_factory=dict)
    signature: str = ""
    from_profile: bool = False

    def unmapped(self, fields: Optional[Iterable[TargetField]] = None) -> List[TargetField]:
        fields = list(fields) if fields is not None else FIELD_ORDER
        return [f for f in fields if f not in self.mapping]


# =========================
# Signals
# =========================
def header_signal(header: str, spec: FieldSpec) -> float:
    h = norm_header(header)
    if not h:
        return 0.0
    if spec.requires is not None and not spec.requires.search(h):
        return 0.0
    if spec.avoid is not None and spec.avoid.search(h):
        return 0.0
    if any(p.fullmatch(h) for p in spec.strong):
        return STRONG_HEADER
    if any(p.search(h) for p in spec.aliases):
        # substring hit, graded by closeness to the field's own label
        return ALIAS_HEADER + fuzz.token_set_ratio(h, spec.label) / 100.0
    return 0.0


def value_signal(values: Sequence[str], spec: FieldSpec, full_credit_ratio: float = 0.6) -> float:
    if spec.detector is None or not values:
        return 0.0
    hits = sum(1 for v in values if spec.detector(v))
    if hits == 0:
        return 0.0
    ratio = hits / len(values)
    if ratio >= full_credit_ratio:
        return spec.value_weight
    return spec.value_weight * 0.5 * (ratio / full_credit_ratio)


def slot_bias(header: str, spec: FieldSpec) -> float:
    if not spec.is_guardian:
        return 0.0
    second = bool(SECOND_SLOT_RE.search(norm_header(header)))
    if spec.guardian_slot == 2:
        return SLOT_BIAS if second else -SLOT_BIAS
    return -SLOT_BIAS if second else SLOT_BIAS / 3


def sampled_values(table: SourceTable, header: str, limit: int = 50) -> List[str]:
    out: List[str] = []
    for v in table.column(header):
        s = str(v).strip()
        if not s:
            continue
        out.append(s)
        if len(out) >= limit:
            break
    return out


def score_table(
    table: SourceTable,
    fields: Optional[Iterable[TargetField]] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> Dict[Tuple[TargetField, str], float]:
    """Score every (field, header) pair: header text + sampled values + guardian slot bias."""
    rules = rules or load_rules()
    fields = [TargetField(f) for f in fields] if fields is not None else catalog_fields("full")
    limit = int(rules["value_sample_size"])
    full_ratio = float(rules["value_full_credit_ratio"])

    samples = {h: sampled_values(table, h, limit) for h in table.headers}
    scores: Dict[Tuple[TargetField, str], float] = {}
    for f in fields:
        spec = field_spec(f)
        for h in table.headers:
            base = header_signal(h, spec) + value_signal(samples[h], spec, full_ratio)
            if base <= 0:
                continue
            scores[(f, h)] = round(base + slot_bias(h, spec), 4)
    return scores


# =========================
# Selection
# =========================
def _select(
    scores: Dict[Tuple[TargetField, str], float],
    headers: Sequence[str],
    threshold: float,
) -> Dict[TargetField, str]:
    # greedy over all pairs in descending score order; a claimed header is gone
    header_rank = {h: i for i, h in enumerate(headers)}
    ordered = sorted(
        ((s, f, h) for (f, h), s in scores.items() if s >= threshold),
        key=lambda x: (-x[0], _FIELD_RANK[x[1]], header_rank[x[2]]),
    )
    assigned: Dict[TargetField, str] = {}
    used = set()
    for s, f, h in ordered:
        if f in assigned or h in used:
            continue
        assigned[f] = h
        used.add(h)
    return assigned


def _candidates_by_field(scores, headers) -> Dict[TargetField, List[Tuple[str, float]]]:
    header_rank = {h: i for i, h in enumerate(headers)}
    out: Dict[TargetField, List[Tuple[str, float]]] = {}
    for (f, h), s in scores.items():
        out.setdefault(f, []).append((h, s))
    for f in out:
        out[f].sort(key=lambda x: (-x[1], header_rank[x[0]]))
    return out


def _ambiguity_warnings(
    fields: Sequence[TargetField],
    assigned: Dict[TargetField, str],
    candidates: Dict[TargetField, List[Tuple[str, float]]],
    threshold: float,
) -> List[MappingAmbiguityWarning]:
    warnings: List[MappingAmbiguityWarning] = []
    used = set(assigned.values())
    for f in fields:
        cands = candidates.get(f, [])
        if f in assigned:
            win = assigned[f]
            win_score = next(s for h, s in cands if h == win)
            rivals = [(h, s) for h, s in cands if h != win and h not in used and win_score - s <= AMBIGUITY_MARGIN]
            if rivals:
                warnings.append(MappingAmbiguityWarning(
                    f.value,
                    f"{f.value}: chose {win!r} over {rivals[0][0]!r} by a narrow margin",
                    [(win, win_score)] + rivals,
                ))
            continue
        if not cands:
            continue
        best_h, best_s = cands[0]
        if best_s >= threshold:
            warnings.append(MappingAmbiguityWarning(
                f.value,
                f"{f.value}: left unmapped, candidate column {best_h!r} is already used by "
                f"{next(k.value for k, v in assigned.items() if v == best_h)}",
                cands[:3],
            ))
        elif best_s >= threshold / 2:
            warnings.append(MappingAmbiguityWarning(
                f.value,
                f"{f.value}: left unmapped, best candidate {best_h!r} scored {best_s:.2f} (needs {threshold:.2f})",
                cands[:3],
            ))
    return warnings


def sample_values(table: SourceTable, mapping: ColumnMapping, k: int = 3) -> Dict[TargetField, List[str]]:
    # up to k distinct non-empty values per mapped column, for human review
    out: Dict[TargetField, List[str]] = {}
    for f, h in mapping.items():
        seen: List[str] = []
        for v in table.column(h):
            s = str(v).strip()
            if s and s not in seen:
                seen.append(s)
            if len(seen) >= k:
                break
        out[f] = seen
    return out


def propose_mapping(
    table: SourceTable,
    fields: Optional[Iterable[Any]] = None,
    *,
    profiles: Optional[Dict[str, Any]] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> MappingProposal:
    """
    Propose a ColumnMapping for a table.

    `fields` restricts the catalog (see catalog_fields); `profiles` are saved
    human-reviewed mappings keyed by column signature, checked first.
    The result depends only on (table, fields, profiles, rules).
    """
    rules = rules or load_rules()
    fields = [TargetField(f) for f in fields] if fields is not None else catalog_fields("full")
    sig = column_signature(table.headers)
    k = int(rules["sample_values_per_column"])

    if profiles and sig in profiles:
        mapping = _mapping_from_profile(profiles[sig], table.headers, fields)
        if mapping is not None:
            logger.info("[column_mapper] %s: using saved profile %s", table.source_name, sig)
            return MappingProposal(
                mapping=mapping,
                samples=sample_values(table, mapping, k),
                signature=sig,
                from_profile=True,
            )

    threshold = float(rules["min_confidence"])
    scores = score_table(table, fields, rules)
    assigned = _select(scores, table.headers, threshold)
    candidates = _candidates_by_field(scores, table.headers)
    mapping = ColumnMapping(assigned)
    warnings = _ambiguity_warnings(fields, assigned, candidates, threshold)

    for f, h in mapping.items():
        logger.info("[column_mapper] %s: %s <- %r (%.2f)", table.source_name, f.value, h, scores[(f, h)])
    for w in warnings:
        logger.warning("[column_mapper] %s: %s", table.source_name, w)

    return MappingProposal(
        mapping=mapping,
        scores={f: scores[(f, h)] for f, h in mapping.items()},
        candidates={f: c[:3] for f, c in candidates.items()},
        warnings=warnings,
        samples=sample_values(table, mapping, k),
        signature=sig,
    )


# =========================
# Saved mapping profiles
# =========================
def load_profiles() -> Dict[str, Any]:
    profiles = load_json(profiles_path(), {})
    return profiles if isinstance(profiles, dict) else {}


def save_profiles(profiles: Dict[str, Any]) -> None:
    save_json(profiles_path(), profiles)


def _mapping_from_profile(prof: Any, headers: Sequence[str], fields: Sequence[TargetField]) -> Optional[ColumnMapping]:
    if not isinstance(prof, dict) or not isinstance(prof.get("mapping"), dict):
        return None
    allowed = {f.value for f in fields}
    raw = {k: v for k, v in prof["mapping"].items() if k in allowed}
    try:
        return ColumnMapping.from_dict(raw, headers=headers)
    except MappingConflictError as e:
        logger.warning("[column_mapper] ignoring stale profile: %s", e)
        return None


def persist_profile_for_mapping(headers: Sequence[str], mapping: ColumnMapping) -> str:
    """Remember a reviewed mapping for tables with the same headers. Returns the signature."""
    mapping.validate(headers)
    sig = column_signature(headers)
    profiles = load_profiles()
    profiles[sig] = {
        "catalog_version": CATALOG_VERSION,
        "headers": list(headers),
        "mapping": {f.value: h for f, h in mapping.items()},
    }
    save_profiles(profiles)
    return sig
