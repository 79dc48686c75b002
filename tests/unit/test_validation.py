"""Tests for input schema validation."""

from flowgate.validation import validate_input


def test_required_field_round_trip():
    schema = {"name": {"required": True}}

    rejected = validate_input({}, schema)
    assert not rejected.is_valid
    assert [e.field for e in rejected.errors] == ["name"]
    assert rejected.errors[0].message == "Field 'name' is required"
    assert rejected.sanitized_data is None

    accepted = validate_input({"name": "x", "extra": "y"}, schema)
    assert accepted.is_valid
    assert accepted.sanitized_data == {"name": "x"}


def test_empty_string_and_none_count_as_missing():
    schema = {"name": {"required": True}}
    assert not validate_input({"name": ""}, schema).is_valid
    assert not validate_input({"name": None}, schema).is_valid


def test_missing_schema_passes_payload_through():
    payload = {"anything": [1, 2]}
    result = validate_input(payload, None)
    assert result.is_valid
    assert result.sanitized_data == payload

    assert validate_input(payload, "not-a-schema").sanitized_data == payload


def test_presence_mode_ignores_types():
    schema = {"count": {"type": "number", "required": True}, "note": {"type": "string"}}
    result = validate_input({"count": "many", "note": None}, schema)
    assert result.is_valid
    assert result.sanitized_data == {"count": "many"}


def test_strict_mode_checks_types():
    schema = {
        "title": {"type": "string", "required": True, "minLength": 3, "maxLength": 10},
        "count": {"type": "number", "min": 1, "max": 5},
        "approved": {"type": "boolean"},
        "tags": {"type": "array"},
        "meta": {"type": "object"},
    }
    result = validate_input(
        {"title": 42, "count": "nine", "approved": "yes", "tags": "a,b", "meta": []},
        schema,
        strict=True,
    )
    assert not result.is_valid
    messages = {e.field: e.message for e in result.errors}
    assert messages == {
        "title": "Field 'title' must be a string",
        "count": "Field 'count' must be a number",
        "approved": "Field 'approved' must be a boolean",
        "tags": "Field 'tags' must be an array",
        "meta": "Field 'meta' must be an object",
    }


def test_strict_mode_sanitizes_values():
    schema = {
        "title": {"type": "string", "required": True, "maxLength": 20},
        "count": {"type": "number", "min": 1, "max": 5},
        "optional": {"type": "string"},
        "free": {"type": "custom"},
    }
    result = validate_input(
        {"title": "  Hello  ", "count": "3", "optional": "", "free": {"x": 1}},
        schema,
        strict=True,
    )
    assert result.is_valid
    assert result.sanitized_data == {"title": "Hello", "count": 3, "free": {"x": 1}}


def test_strict_mode_length_range_and_enum():
    schema = {
        "title": {"type": "string", "minLength": 5},
        "count": {"type": "number", "max": 5},
        "level": {"type": "string", "enum": ["low", "high"]},
    }
    result = validate_input({"title": "abc", "count": 9, "level": "mid"}, schema, strict=True)
    assert not result.is_valid
    assert {e.message for e in result.errors} == {
        "Field 'title' must be at least 5 characters",
        "Field 'count' must be at most 5",
        "Field 'level' must be one of: low, high",
    }


def test_booleans_are_not_numbers():
    result = validate_input({"count": True}, {"count": {"type": "number"}}, strict=True)
    assert not result.is_valid
