"""Tests for field value validation."""

import pytest

from dossierflow.catalog import FieldDef
from dossierflow.gates import validate_fields


def _field(key="f", **kwargs):
    return FieldDef(key=key, **kwargs)


@pytest.mark.parametrize("value", [None, "", "   ", []])
def test_required_field_rejects_empty_values(value):
    errors = validate_fields([_field("name", label="Name", required=True)], {"name": value})
    assert errors == {"name": "Name is required"}


def test_optional_field_may_be_left_empty():
    assert validate_fields([_field("nickname")], {}) == {}


def test_missing_required_key_is_reported():
    errors = validate_fields([_field("a", required=True), _field("b")], {"b": "x"})
    assert list(errors) == ["a"]


def test_text_length_bounds():
    field = _field("name", min_length=2, max_length=5)
    assert "name" in validate_fields([field], {"name": "A"})
    assert "name" in validate_fields([field], {"name": "Abcdef"})
    assert validate_fields([field], {"name": "Abc"}) == {}


@pytest.mark.parametrize(
    "value, ok",
    [("12", True), (7, True), ("3.5", True), ("abc", False), (True, False), (0, False), (101, False)],
)
def test_number_fields(value, ok):
    field = _field("amount", field_type="number", min_value=1, max_value=100)
    assert (validate_fields([field], {"amount": value}) == {}) is ok


@pytest.mark.parametrize(
    "value, ok",
    [("jane@example.com", True), ("jane@example", False), ("not an email", False)],
)
def test_email_fields(value, ok):
    field = _field("email", field_type="email")
    assert (validate_fields([field], {"email": value}) == {}) is ok


def test_phone_and_date_fields():
    fields = [_field("phone", field_type="phone"), _field("born", field_type="date")]
    assert validate_fields(fields, {"phone": "+33 6 12 34 56 78", "born": "1990-04-12"}) == {}
    errors = validate_fields(fields, {"phone": "call me", "born": "12/04/1990"})
    assert set(errors) == {"phone", "born"}
    assert "born" in validate_fields(fields, {"born": "2024-01-01garbage"})
    assert validate_fields(fields, {"born": "2024-01-01T09:30:00"}) == {}


def test_select_and_checkbox_options():
    options = [{"value": "WY"}, {"value": "DE"}]
    fields = [
        _field("state", field_type="select", options=options),
        _field("also", field_type="checkbox", options=options),
    ]
    assert validate_fields(fields, {"state": "WY", "also": ["DE"]}) == {}
    errors = validate_fields(fields, {"state": "NY", "also": ["DE", "TX"]})
    assert set(errors) == {"state", "also"}


def test_required_checkbox_must_be_checked():
    field = _field("terms", field_type="checkbox", required=True)
    assert "terms" in validate_fields([field], {"terms": False})
    assert validate_fields([field], {"terms": True}) == {}


def test_pattern_must_match_whole_value():
    field = _field("ein", pattern=r"\d{2}-\d{7}")
    assert validate_fields([field], {"ein": "12-3456789"}) == {}
    assert "ein" in validate_fields([field], {"ein": "12-3456789x"})


def test_only_limits_validation_to_subset():
    fields = [_field("a", required=True), _field("b", required=True)]
    assert validate_fields(fields, {}, only=["b"]) == {"b": "b is required"}
    assert validate_fields(fields, {}, only=[]) == {}
