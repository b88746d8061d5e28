"""Tests for :mod:`toolrelay.validation`."""

from __future__ import annotations

from types import MappingProxyType

import pytest

from toolrelay.errors import ToolValidationError
from toolrelay.parsing import normalize_params
from toolrelay.schema import FieldShape, FieldSpec, ToolSchema
from toolrelay.tools import MULTI_REPLACE_STRING_SCHEMA, WEB_FETCH_SCHEMA
from toolrelay.validation import CallIdFactory, SchemaValidator, shape_of

ITEMS_SCHEMA = ToolSchema(
    name="x",
    fields=(
        FieldSpec("items", shape=FieldShape.ARRAY, min_items=1),
        FieldSpec("flag", shape=FieldShape.BOOLEAN, required=False),
    ),
)

SCHEMAS = {schema.name: schema for schema in (ITEMS_SCHEMA, MULTI_REPLACE_STRING_SCHEMA, WEB_FETCH_SCHEMA)}


@pytest.fixture
def validator() -> SchemaValidator:
    return SchemaValidator(SCHEMAS.get, known_tools=lambda: list(SCHEMAS), clock=lambda: 100.0)


class TestSchemaValidator:
    def test_valid_params_produce_call(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("x", {"items": ["a", "b"], "flag": True})
        assert outcome.ok
        call = outcome.call
        assert call is not None
        assert call.tool_name == "x"
        assert dict(call.params) == {"items": ["a", "b"], "flag": True}
        assert isinstance(call.params, MappingProxyType)
        assert call.created_at == 100.0

    def test_empty_items_cite_minimum_length(self, validator: SchemaValidator) -> None:
        params = normalize_params(ITEMS_SCHEMA, {"items": ""})
        outcome = validator.validate("x", params)
        assert not outcome.ok
        issue = outcome.issues[0]
        assert issue.field_path == "items"
        assert issue.received_shape == "array with 0 items"
        assert "at least 1 repeating <item> element required inside <items>" in issue.hint

    def test_replacement_hint_names_item_tag(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("multi_replace_string_in_file", {"replacements": []})
        assert "<replacement>" in outcome.issues[0].hint

    def test_missing_required_field(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("x", {})
        issue = outcome.issues[0]
        assert issue.field_path == "items"
        assert issue.received_shape == "missing"
        assert issue.hint == "add a <items> field containing one or more <item> elements"

    def test_wrong_type_reports_shapes(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("x", {"items": ["a"], "flag": "maybe"})
        issue = outcome.issues[0]
        assert issue.field_path == "flag"
        assert issue.expected_shape == "boolean"
        assert issue.received_shape == "string"
        assert issue.hint == "use true or false"

    def test_nested_record_issue_path(self, validator: SchemaValidator) -> None:
        params = {"replacements": [{"filePath": "a.py", "oldString": "x"}]}
        outcome = validator.validate("multi_replace_string_in_file", params)
        assert outcome.issues[0].field_path == "replacements.0.newString"

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "example.com", "/relative/path", "https://"])
    def test_uri_format_requires_http_url(self, validator: SchemaValidator, url: str) -> None:
        outcome = validator.validate("web_fetch", {"url": url})
        assert not outcome.ok
        assert outcome.issues[0].hint == "use an absolute http:// or https:// URL"

    def test_http_url_is_accepted(self, validator: SchemaValidator) -> None:
        assert validator.validate("web_fetch", {"url": "https://example.com/a?b=1"}).ok

    def test_unknown_tool_is_an_issue(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("nope", {})
        assert not outcome.ok
        assert outcome.issues[0].message == "Unknown tool 'nope'"
        assert "web_fetch" in outcome.issues[0].hint

    def test_undeclared_fields_are_dropped(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("x", {"items": ["a"], "surprise": 1})
        assert outcome.call is not None
        assert "surprise" not in outcome.call.params

    def test_issues_follow_field_order(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("x", {"items": "nope", "flag": "nope"})
        assert [issue.field_path for issue in outcome.issues] == ["items", "flag"]

    def test_raise_for_issues(self, validator: SchemaValidator) -> None:
        outcome = validator.validate("x", {})
        with pytest.raises(ToolValidationError) as excinfo:
            outcome.raise_for_issues()
        assert excinfo.value.tool_name == "x"
        assert excinfo.value.to_dict()["issues"][0]["field_path"] == "items"


class TestHelpers:
    def test_call_ids_are_unique_and_ordered(self) -> None:
        factory = CallIdFactory()
        first, second = factory("a"), factory("a")
        assert first != second
        assert first.startswith("call_0_")
        assert second.startswith("call_1_")

    @pytest.mark.parametrize(
        ("value", "shape"),
        [(None, "null"), (True, "boolean"), (3, "number"), ("s", "string"), ([1], "array"), ({}, "object")],
    )
    def test_shape_of(self, value: object, shape: str) -> None:
        assert shape_of(value) == shape
