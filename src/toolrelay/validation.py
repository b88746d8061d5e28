"""Schema validation of normalized parameter bags.

Validation runs ``jsonschema.Draft7Validator`` against the JSON Schema
rendered from each :class:`~toolrelay.schema.ToolSchema` and turns every
``jsonschema`` error into a :class:`ValidationIssue` that names the field,
the expected and received shapes, and a concrete remediation hint.
"""

from __future__ import annotations

import itertools
import logging
import re
import time
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import urlparse

from jsonschema import Draft7Validator, FormatChecker
from jsonschema.exceptions import ValidationError as SchemaViolation

from .errors import ToolValidationError
from .schema import FieldShape, FieldSpec, ToolSchema
from .types import ValidatedCall

__all__ = [
    "ValidationIssue",
    "ValidationOutcome",
    "SchemaValidator",
    "CallIdFactory",
    "FORMAT_CHECKER",
    "shape_of",
]

LOGGER = logging.getLogger(__name__)

_REQUIRED_RE = re.compile(r"'(.+)' is a required property")
MAX_ISSUES = 20

FORMAT_CHECKER = FormatChecker(formats=())


@FORMAT_CHECKER.checks("uri")
def _is_http_uri(value: object) -> bool:
    if not isinstance(value, str):
        return True
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def shape_of(value: Any) -> str:
    """Name the JSON shape of ``value`` for issue reporting."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return FieldShape.BOOLEAN.value
    if isinstance(value, (int, float)):
        return FieldShape.NUMBER.value
    if isinstance(value, str):
        return FieldShape.STRING.value
    if isinstance(value, (list, tuple)):
        return FieldShape.ARRAY.value
    if isinstance(value, Mapping):
        return FieldShape.OBJECT.value
    return type(value).__name__


# -----------------------------------------------------------------------------
# Issues
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    """One schema violation.

    Attributes:
        field_path: Dotted path of the offending field (``items.0.path``);
            empty for tool-level issues.
        expected_shape: What the schema wanted.
        received_shape: What the parameters contained (``missing`` when absent).
        message: Human-readable description.
        hint: Concrete remediation.
    """

    field_path: str
    expected_shape: str
    received_shape: str
    message: str
    hint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_path": self.field_path,
            "expected_shape": self.expected_shape,
            "received_shape": self.received_shape,
            "message": self.message,
            "hint": self.hint,
        }


@dataclass(slots=True, frozen=True)
class ValidationOutcome:
    tool_name: str
    call: ValidatedCall | None = None
    issues: tuple[ValidationIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return self.call is not None and not self.issues

    def to_error(self) -> ToolValidationError:
        return ToolValidationError.from_issues(self.tool_name, self.issues)

    def raise_for_issues(self) -> ValidatedCall:
        if self.call is None or self.issues:
            raise self.to_error()
        return self.call


class CallIdFactory:
    """Generates call ids unique within one conversation turn."""

    def __init__(self) -> None:
        self._counter = itertools.count()

    def __call__(self, tool_name: str = "") -> str:
        return f"call_{next(self._counter)}_{uuid.uuid4().hex[:8]}"


# -----------------------------------------------------------------------------
# Hint rendering
# -----------------------------------------------------------------------------


def _resolve_spec(schema: ToolSchema, path: Sequence[Any]) -> FieldSpec | None:
    if not path:
        return None
    spec = schema.field(str(path[0]))
    for part in path[1:]:
        if spec is None:
            return None
        if isinstance(part, int):
            continue
        spec = spec.sub_field(str(part))
    return spec


def _dotted(path: Iterable[Any]) -> str:
    return ".".join(str(part) for part in path)


def _min_items_hint(spec: FieldSpec | None, minimum: int) -> str:
    noun = "element" if minimum == 1 else "elements"
    if spec is None:
        return f"provide at least {minimum} item{'s' if minimum != 1 else ''}"
    return (
        f"at least {minimum} repeating <{spec.item_tag}> {noun} required inside <{spec.name}> "
        f"(or a JSON array with at least {minimum} item{'s' if minimum != 1 else ''})"
    )


def _required_hint(spec: FieldSpec | None, name: str) -> str:
    if spec is None:
        return f"add a <{name}> field"
    if spec.shape is FieldShape.ARRAY:
        return f"add a <{name}> field containing one or more <{spec.item_tag}> elements"
    return f"add a <{name}>...</{name}> field ({spec.shape.value})"


def _type_hint(spec: FieldSpec | None, expected: str) -> str:
    if spec is not None and spec.shape is FieldShape.ARRAY:
        return f"send <{spec.name}> as repeating <{spec.item_tag}> elements or a JSON array"
    if expected == FieldShape.BOOLEAN.value:
        return "use true or false"
    if expected == FieldShape.NUMBER.value:
        return "use a numeric literal such as 3 or 2.5"
    if expected == FieldShape.OBJECT.value:
        return "send a JSON object or <key>value</key> child elements"
    return f"provide a {expected} value"


def _format_hint(fmt: str) -> str:
    if fmt == "uri":
        return "use an absolute http:// or https:// URL"
    return f"provide a value in {fmt} format"


# -----------------------------------------------------------------------------
# Validator
# -----------------------------------------------------------------------------


class SchemaValidator:
    """Validates normalized parameter bags against registered tool schemas.

    Args:
        lookup: Returns the schema for a tool name, or ``None``.
        known_tools: Returns the registered tool names, for unknown-tool hints.
        id_factory: Produces call ids; one factory per conversation turn.
        clock: Timestamp source for ``ValidatedCall.created_at``.
    """

    def __init__(
        self,
        lookup: Callable[[str], ToolSchema | None],
        *,
        known_tools: Callable[[], Sequence[str]] | None = None,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lookup = lookup
        self._known_tools = known_tools
        self._id_factory = id_factory or CallIdFactory()
        self._clock = clock
        self._validators: dict[str, tuple[ToolSchema, Draft7Validator]] = {}

    def validate(self, tool_name: str, params: Mapping[str, Any]) -> ValidationOutcome:
        schema = self._lookup(tool_name)
        if schema is None:
            return ValidationOutcome(tool_name=tool_name, issues=(self._unknown_tool_issue(tool_name),))

        issues = self.check(schema, params)
        if issues:
            LOGGER.debug("Validation of %s produced %d issue(s)", tool_name, len(issues))
            return ValidationOutcome(tool_name=tool_name, issues=tuple(issues))

        declared = set(schema.field_names)
        dropped = sorted(key for key in params if key not in declared)
        if dropped:
            LOGGER.debug("Dropping undeclared field(s) for %s: %s", tool_name, ", ".join(dropped))
        clean = {key: value for key, value in params.items() if key in declared}
        call = ValidatedCall(
            id=self._id_factory(tool_name),
            tool_name=tool_name,
            params=MappingProxyType(clean),
            created_at=self._clock(),
        )
        return ValidationOutcome(tool_name=tool_name, call=call)

    def check(self, schema: ToolSchema, params: Mapping[str, Any]) -> list[ValidationIssue]:
        """Return the issues of ``params`` against ``schema`` (empty when valid)."""
        validator = self._validator_for(schema)
        order = {name: index for index, name in enumerate(schema.field_names)}

        def sort_key(error: SchemaViolation) -> tuple[int, str]:
            path = list(error.path)
            head = str(path[0]) if path else self._missing_name(error)
            return order.get(head, len(order)), _dotted(path)

        issues: list[ValidationIssue] = []
        for error in sorted(validator.iter_errors(dict(params)), key=sort_key):
            issues.append(self._to_issue(schema, error))
            if len(issues) >= MAX_ISSUES:
                break
        return issues

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _validator_for(self, schema: ToolSchema) -> Draft7Validator:
        cached = self._validators.get(schema.name)
        if cached is not None and cached[0] is schema:
            return cached[1]
        validator = Draft7Validator(schema.to_json_schema(), format_checker=FORMAT_CHECKER)
        self._validators[schema.name] = (schema, validator)
        return validator

    def _unknown_tool_issue(self, tool_name: str) -> ValidationIssue:
        names = sorted(self._known_tools()) if self._known_tools else []
        hint = f"use one of: {', '.join(names)}" if names else "register the tool before calling it"
        return ValidationIssue(
            field_path="",
            expected_shape="registered tool",
            received_shape=tool_name or "missing",
            message=f"Unknown tool '{tool_name}'",
            hint=hint,
        )

    @staticmethod
    def _missing_name(error: SchemaViolation) -> str:
        match = _REQUIRED_RE.search(error.message)
        return match.group(1) if match else ""

    def _to_issue(self, schema: ToolSchema, error: SchemaViolation) -> ValidationIssue:
        path = list(error.path)
        keyword = error.validator

        if keyword == "required":
            name = self._missing_name(error)
            full = path + [name]
            spec = _resolve_spec(schema, full)
            expected = spec.shape.value if spec else "value"
            return ValidationIssue(
                field_path=_dotted(full),
                expected_shape=expected,
                received_shape="missing",
                message=f"Missing required field '{_dotted(full)}'",
                hint=_required_hint(spec, name),
            )

        spec = _resolve_spec(schema, path)
        field_path = _dotted(path)
        received = shape_of(error.instance)

        if keyword == "minItems":
            minimum = int(error.validator_value)
            count = len(error.instance) if isinstance(error.instance, (list, tuple)) else 0
            return ValidationIssue(
                field_path=field_path,
                expected_shape=f"array with at least {minimum} item{'s' if minimum != 1 else ''}",
                received_shape=f"array with {count} item{'s' if count != 1 else ''}",
                message=f"'{field_path}' needs at least {minimum} item{'s' if minimum != 1 else ''}, got {count}",
                hint=_min_items_hint(spec, minimum),
            )
        if keyword == "type":
            expected = error.validator_value
            expected_text = " or ".join(expected) if isinstance(expected, list) else str(expected)
            return ValidationIssue(
                field_path=field_path,
                expected_shape=expected_text,
                received_shape=received,
                message=f"'{field_path}' must be {expected_text}, got {received}",
                hint=_type_hint(spec, expected_text),
            )
        if keyword == "format":
            fmt = str(error.validator_value)
            return ValidationIssue(
                field_path=field_path,
                expected_shape=f"string ({fmt})",
                received_shape=received,
                message=f"'{field_path}' is not a valid {fmt}: {error.instance!r}",
                hint=_format_hint(fmt),
            )
        return ValidationIssue(
            field_path=field_path,
            expected_shape=spec.shape.value if spec else "value",
            received_shape=received,
            message=f"'{field_path}': {error.message}" if field_path else error.message,
            hint="check the field against the tool description",
        )
