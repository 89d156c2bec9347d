import pytest
from roster.catalog import TargetField, catalog_fields
from roster.errors import MappingConflictError
from roster.infer import (
    ColumnMapping,
    load_profiles,
    persist_profile_for_mapping,
    propose_mapping,
    sample_values,
)
from roster.ingest import SourceTable


def make_table(headers, *rows):
    return SourceTable(headers=list(headers), rows=[dict(zip(headers, r)) for r in rows])


def assigned(mapping):
    return {k: v for k, v in mapping.to_dict().items() if v is not None}


def test_example_roster_mapping():
    t = make_table(
        ["Student First", "Student Last", "Grade Level", "Parent Email"],
        ["Ada", "Lovelace", "7", "ada.parent@example.com"],
    )
    p = propose_mapping(t)
    assert assigned(p.mapping) == {
        "first": "Student First",
        "last": "Student Last",
        "grade": "Grade Level",
        "guardian1Email": "Parent Email",
    }
    assert p.samples[TargetField.GRADE] == ["7"]
    assert not p.from_profile


def test_guardian_slots_follow_header_signal():
    t = make_table(
        ["First Name", "Last Name", "Guardian 1 Name", "Guardian 1 Email",
         "Guardian 2 Name", "Guardian 2 Email", "Guardian 2 Phone"],
        ["Ada", "Lovelace", "Anne Byron", "anne@example.com", "Bill King", "bill@example.com", "555-123-4567"],
        ["Grace", "Hopper", "Mary Murray", "mary@example.com", "", "", ""],
    )
    m = propose_mapping(t).mapping
    assert m.get("guardian1Name") == "Guardian 1 Name"
    assert m.get("guardian1Email") == "Guardian 1 Email"
    assert m.get("guardian2Name") == "Guardian 2 Name"
    assert m.get("guardian2Email") == "Guardian 2 Email"
    assert m.get("guardian2Phone") == "Guardian 2 Phone"
    assert m.get("guardian1Phone") is None
    assert m.get("first") == "First Name"
    assert m.get("last") == "Last Name"


@pytest.mark.parametrize("headers, row", [
    (["Email", "E-mail", "Parent Email", "Guardian 2 Email"],
     ["a@x.com", "b@x.com", "c@x.com", "d@x.com"]),
    (["Name", "First", "First Name", "Last", "Last Name"],
     ["Ada Lovelace", "Ada", "Ada", "Lovelace", "Lovelace"]),
    (["Phone", "Cell", "Home Phone", "Parent Phone", "Mother Phone", "Father Phone"],
     ["5551234567", "5551234568", "5551234569", "5551234570", "5551234571", "5551234572"]),
    (["IEP", "ELL", "Medical", "Flag", "Y/N"],
     ["Y", "N", "yes", "no", "true"]),
    (["Class", "Section", "Homeroom", "Room", "School", "Building"],
     ["5A", "2", "Rm 4", "12", "Lincoln", "North"]),
])
def test_mapping_is_injective(headers, row):
    m = propose_mapping(make_table(headers, row, row)).mapping
    used = [h for _, h in m.items()]
    assert len(used) == len(set(used))


def test_low_confidence_fields_stay_unmapped_with_warning():
    t = make_table(
        ["First", "Last", "Misc", "Notes"],
        ["Ada", "Lovelace", "Y", "likes math"],
        ["Grace", "Hopper", "N", "chess club"],
        ["Alan", "Turing", "Y", ""],
    )
    p = propose_mapping(t)
    assert assigned(p.mapping) == {"first": "First", "last": "Last"}
    assert any(w.field == "iep" for w in p.warnings)
    assert all(isinstance(w, UserWarning) for w in p.warnings)


def test_catalog_filter_limits_fields():
    t = make_table(["First", "Last", "School", "Homeroom"], ["Ada", "Lovelace", "Lincoln", "5A"])
    full = propose_mapping(t).mapping
    assert full.get("school") == "School"
    assert full.get("classroom") == "Homeroom"

    web = propose_mapping(t, catalog_fields("web")).mapping
    assert web.get("school") is None
    assert web.get("classroom") is None
    assert web.get("first") == "First"


def test_proposal_is_deterministic():
    t = make_table(
        ["Student ID", "First", "Last", "Gender", "Pronouns", "Email"],
        ["S-1001", "Ada", "Lovelace", "F", "she/her", "ada@school.org"],
    )
    a, b = propose_mapping(t), propose_mapping(t)
    assert a.mapping == b.mapping
    assert a.scores == b.scores
    assert a.mapping.get("studentExternalId") == "Student ID"
    assert a.mapping.get("studentEmail") == "Email"


def test_column_mapping_rejects_double_assignment():
    with pytest.raises(MappingConflictError):
        ColumnMapping({"first": "Name", "last": "Name"})
    with pytest.raises(ValueError):
        ColumnMapping({"nickname": "Name"})
    with pytest.raises(MappingConflictError):
        ColumnMapping({"first": "Given"}, headers=["First", "Last"])


def test_with_override_releases_header():
    m = ColumnMapping({"first": "A", "last": "B"})
    m2 = m.with_override("last", "A")
    assert m2.get("last") == "A"
    assert m2.get("first") is None
    # the original is untouched
    assert m.get("first") == "A"
    assert m.with_override("first", None).get("first") is None


def test_to_dict_round_trip():
    m = ColumnMapping({"first": "A", "guardian2Phone": "P"})
    d = m.to_dict()
    assert list(d)[0] == "first"
    assert d["last"] is None
    assert ColumnMapping.from_dict(d) == m


def test_sample_values_are_distinct_and_limited():
    t = make_table(["Grade"], ["7"], ["7"], ["8"], [""], ["9"], ["10"])
    m = ColumnMapping({"grade": "Grade"})
    assert sample_values(t, m) == {TargetField.GRADE: ["7", "8", "9"]}


def test_samples_follow_a_reassigned_field():
    t = make_table(["Grade", "Year"], ["7", "2024"], ["8", "2025"])
    m = ColumnMapping({"grade": "Grade"}).with_override("grade", "Year")
    assert sample_values(t, m) == {TargetField.GRADE: ["2024", "2025"]}


def test_restricted_to_drops_fields_outside_the_set():
    m = ColumnMapping({"first": "First", "last": "Last", "school": "School", "classroom": "Homeroom"})
    web = m.restricted_to(catalog_fields("web"))
    assert assigned(web) == {"first": "First", "last": "Last"}
    assert m.get("school") == "School"
    assert m.restricted_to(catalog_fields("full")) == m


def test_saved_profile_is_reused():
    t = make_table(["Col A", "Col B"], ["Ada", "Lovelace"])
    assert len(propose_mapping(t).mapping) == 0

    reviewed = ColumnMapping({"first": "Col A", "last": "Col B"})
    persist_profile_for_mapping(t.headers, reviewed)

    p = propose_mapping(t, profiles=load_profiles())
    assert p.from_profile
    assert p.mapping == reviewed
    assert p.samples[TargetField.FIRST] == ["Ada"]


def test_stale_profile_is_ignored():
    persist_profile_for_mapping(["Col A", "Col B"], ColumnMapping({"first": "Col A", "last": "Col B"}))
    # same normalized signature, different raw headers
    t = make_table(["col a", "col b"], ["Ada", "Lovelace"])
    p = propose_mapping(t, profiles=load_profiles())
    assert not p.from_profile
