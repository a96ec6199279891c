"""
Tests for tool-call argument parsing and schema validation.
"""

import pytest

from taskboard_agent.utils.exceptions import ConfigurationError, InvalidArgumentsError
from taskboard_agent.utils.validation import check_schema, parse_arguments, validate_arguments, validate_schema

SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title"],
    "additionalProperties": False,
}


class TestParseArguments:

    def test_empty_values(self):
        assert parse_arguments("x", None) == {}
        assert parse_arguments("x", "") == {}

    def test_dict_is_copied(self):
        raw = {"title": "a"}
        parsed = parse_arguments("x", raw)
        parsed["title"] = "b"
        assert raw["title"] == "a"

    def test_json_string(self):
        assert parse_arguments("x", '{"title": "a"}') == {"title": "a"}

    def test_invalid_json(self):
        with pytest.raises(InvalidArgumentsError) as exc:
            parse_arguments("x", "{oops")
        assert exc.value.violations[0]["validator"] == "json"

    def test_non_object(self):
        with pytest.raises(InvalidArgumentsError):
            parse_arguments("x", "[1, 2]")
        with pytest.raises(InvalidArgumentsError):
            parse_arguments("x", 42)


class TestValidateArguments:

    def test_valid(self):
        assert validate_arguments("create", SCHEMA, {"title": "Buy milk"}) == {"title": "Buy milk"}

    def test_missing_required_points_at_field(self):
        with pytest.raises(InvalidArgumentsError) as exc:
            validate_arguments("create", SCHEMA, {})
        assert exc.value.violations[0]["path"] == "title"
        assert exc.value.summary == "Invalid arguments for 'create' (check: title)"

    def test_nested_path(self):
        result = validate_schema(SCHEMA, {"title": "a", "tags": ["ok", 3]})
        assert not result
        assert result.errors[0]["path"] == "tags.1"
        assert "Validation failed" in str(result)

    def test_extra_property(self):
        with pytest.raises(InvalidArgumentsError) as exc:
            validate_arguments("create", SCHEMA, {"title": "a", "colour": "red"})
        assert exc.value.violations[0]["validator"] == "additionalProperties"


class TestCheckSchema:

    def test_malformed_schema(self):
        with pytest.raises(ConfigurationError):
            check_schema("broken", {"type": "not-a-type"})

    def test_valid_schema(self):
        check_schema("fine", SCHEMA)
