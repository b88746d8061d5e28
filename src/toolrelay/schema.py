"""Tool schema types shared by the normalizer and the validator.

A :class:`ToolSchema` is registered once at startup. Each field declares
its shape; array and object fields additionally carry a structural decoder
(resolved by the registry when the schema is registered) that turns the raw
captured text into the declared container.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable

__all__ = [
    "FieldShape",
    "FieldSpec",
    "ToolSchema",
    "StructuralDecoder",
    "ToolCategory",
]


# -----------------------------------------------------------------------------
# Shapes
# -----------------------------------------------------------------------------


class FieldShape(str, Enum):
    """Declared shape of a tool parameter."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"

    @property
    def is_structural(self) -> bool:
        return self in (FieldShape.ARRAY, FieldShape.OBJECT)

    @property
    def empty_value(self) -> Any:
        """Value a failed structural decode collapses to."""
        if self is FieldShape.ARRAY:
            return []
        if self is FieldShape.OBJECT:
            return {}
        return None


class ToolCategory:
    """Standard tool categories for organization."""

    FILESYSTEM = "filesystem"
    NETWORK = "network"
    PROCESS = "process"
    UTILITY = "utility"


@runtime_checkable
class StructuralDecoder(Protocol):
    """Turns a raw captured field string into an array or object."""

    def decode(self, raw: str, spec: "FieldSpec") -> Any:
        """Decode ``raw``; may raise, the normalizer contains the failure."""
        ...


# -----------------------------------------------------------------------------
# Field Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FieldSpec:
    """Declaration of one tool parameter.

    Attributes:
        name: Parameter name, also the element name in the tag format.
        shape: Declared shape.
        required: Whether the parameter must be present.
        description: Human-readable description.
        min_items: Minimum array length (arrays only).
        item_tag: Element name of one repeating item (arrays only).
        item_shape: Shape of primitive items when ``item_fields`` is empty.
        item_fields: Sub-fields of record items (arrays) or of the object.
        format: Optional string format; ``"uri"`` requires an http(s) URL.
        unescape: Decode XML entities and backslash escapes in string leaves.
        strip: Trim surrounding whitespace from string leaves.
        decoder: Structural decoder; filled in at registration when omitted.
    """

    name: str
    shape: FieldShape = FieldShape.STRING
    required: bool = True
    description: str = ""
    min_items: int | None = None
    item_tag: str = "item"
    item_shape: FieldShape = FieldShape.STRING
    item_fields: tuple["FieldSpec", ...] = ()
    format: str | None = None
    unescape: bool = True
    strip: bool = False
    decoder: StructuralDecoder | None = field(default=None, compare=False)

    def sub_field(self, name: str) -> "FieldSpec | None":
        for sub in self.item_fields:
            if sub.name == name:
                return sub
        return None

    def to_json_schema(self) -> dict[str, Any]:
        """Render this field as a JSON Schema fragment."""
        if self.shape is FieldShape.ARRAY:
            schema: dict[str, Any] = {"type": "array", "items": self._item_schema()}
            if self.min_items is not None:
                schema["minItems"] = self.min_items
        elif self.shape is FieldShape.OBJECT:
            schema = _object_schema(self.item_fields)
        else:
            schema = {"type": self.shape.value}
            if self.format:
                schema["format"] = self.format
        if self.description:
            schema["description"] = self.description
        return schema

    def _item_schema(self) -> dict[str, Any]:
        if self.item_fields:
            return _object_schema(self.item_fields)
        return {"type": self.item_shape.value}


def _object_schema(fields_: tuple[FieldSpec, ...]) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object"}
    if fields_:
        schema["properties"] = {f.name: f.to_json_schema() for f in fields_}
        required = [f.name for f in fields_ if f.required]
        if required:
            schema["required"] = required
    return schema


# -----------------------------------------------------------------------------
# Tool Schema
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSchema:
    """Static description of one tool's parameters.

    Attributes:
        name: Unique tool name, matched against ``<tool name="...">``.
        fields: Ordered parameter declarations.
        description: Human-readable description of the tool.
        category: Tool category for organization.
        timeout: Default execution timeout in seconds for this tool.
    """

    name: str
    fields: tuple[FieldSpec, ...] = ()
    description: str = ""
    category: str = ToolCategory.UTILITY
    timeout: float | None = None

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    def with_decoders(self, decoders: Mapping[str, StructuralDecoder]) -> "ToolSchema":
        """Return a copy whose structural fields use ``decoders`` by name."""
        if not decoders:
            return self
        updated = tuple(
            replace(spec, decoder=decoders[spec.name]) if spec.name in decoders else spec
            for spec in self.fields
        )
        return replace(self, fields=updated)

    def to_json_schema(self) -> dict[str, Any]:
        """Render the full parameter schema as JSON Schema (draft 7)."""
        schema = _object_schema(self.fields)
        schema.setdefault("properties", {})
        return schema

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "timeout": self.timeout,
            "parameters": self.to_json_schema(),
        }
