import pytest
from roster.catalog import (
    FIELD_CATALOG,
    FIELD_ORDER,
    TargetField,
    ValueKind,
    catalog_fields,
    field_spec,
    is_email,
    is_gender,
    is_grade,
    is_phone,
    is_yes_no,
)
from roster.utils import column_signature, norm_header, slugify


def test_every_field_has_one_spec():
    assert set(FIELD_CATALOG) == set(TargetField)
    assert len(FIELD_ORDER) == 20
    assert field_spec("guardian2Email").guardian_slot == 2
    assert field_spec(TargetField.IEP).kind is ValueKind.BOOLEAN
    assert field_spec(TargetField.GENDER).kind.value == "enum(gender)"


def test_catalog_filters():
    web = catalog_fields("web")
    assert TargetField.SCHOOL not in web
    assert TargetField.CLASSROOM not in web
    assert TargetField.FIRST in web
    assert catalog_fields() == FIELD_ORDER
    with pytest.raises(ValueError):
        catalog_fields("bogus")


@pytest.mark.parametrize("v, expected", [
    ("(555) 123-4567", True),
    ("+1 555 123 4567", True),
    ("555-1234", False),
    ("", False),
])
def test_is_phone(v, expected):
    assert is_phone(v) is expected


@pytest.mark.parametrize("v, expected", [
    ("K", True), ("JK", True), ("sk", True), ("0", True), ("7", True), ("12", True),
    ("Grade 7", True), ("7th", True), ("13", False), ("Lincoln", False),
])
def test_is_grade(v, expected):
    assert is_grade(v) is expected


def test_other_detectors():
    assert is_email(" Ada.Parent@Example.com ")
    assert not is_email("ada at example")
    assert is_gender("F") and is_gender("Non-Binary") and not is_gender("Lincoln")
    assert is_yes_no("Yes") and is_yes_no("\u2713") and not is_yes_no("maybe")


def test_header_normalization():
    assert norm_header("guardian2Email") == "guardian 2 email"
    assert norm_header("StudentFirst") == "student first"
    assert norm_header("  Student #  ") == "student #"
    assert norm_header("Parent/Guardian E-mail") == "parent guardian e mail"
    assert column_signature(["First Name", "Last"]) == column_signature(["first  name", "LAST"])
    assert column_signature(["First", "Last"]) != column_signature(["Last", "First"])
    assert slugify("  Pat O'Neil ") == "pat-o-neil"
