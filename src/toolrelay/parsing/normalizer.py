"""Turns raw captured field text into schema-shaped parameter values."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from ..schema import FieldShape, FieldSpec, ToolSchema
from .decoding import coerce_primitive, decode_leaf, default_decoder_for
from .scanner import ToolInvocationDraft

__all__ = ["ParameterNormalizer", "NormalizedParamBag", "normalize_params", "normalize_value"]

LOGGER = logging.getLogger(__name__)

NormalizedParamBag = dict[str, Any]
SchemaLookup = Callable[[str], "ToolSchema | None"]


def _decode_text(value: str, spec: FieldSpec) -> Any:
    if spec.shape.is_structural:
        decoder = spec.decoder or default_decoder_for(spec)
        if decoder is None:
            return spec.shape.empty_value
        try:
            decoded = decoder.decode(value, spec)
        except Exception:
            LOGGER.warning("Structural decode of field %s failed", spec.name, exc_info=True)
            return spec.shape.empty_value
        expected = list if spec.shape is FieldShape.ARRAY else dict
        if not isinstance(decoded, expected):
            LOGGER.debug("Decoder for %s returned %s", spec.name, type(decoded).__name__)
            return spec.shape.empty_value
        return decoded
    if spec.shape is FieldShape.STRING:
        return decode_leaf(value, spec)
    return coerce_primitive(decode_leaf(value, spec), spec.shape)


def _coerce_typed(value: Any, spec: FieldSpec) -> Any:
    if spec.shape is FieldShape.ARRAY and isinstance(value, (list, tuple)):
        items: list[Any] = []
        for item in value:
            if spec.item_fields and isinstance(item, Mapping):
                items.append(_coerce_mapping(item, spec))
            elif isinstance(item, str) and not spec.item_fields:
                items.append(coerce_primitive(item, spec.item_shape))
            else:
                items.append(item)
        return items
    if spec.shape is FieldShape.OBJECT and isinstance(value, Mapping):
        return _coerce_mapping(value, spec)
    return value


def _coerce_mapping(value: Mapping[str, Any], spec: FieldSpec) -> dict[str, Any]:
    record = dict(value)
    for sub in spec.item_fields:
        if sub.name in record:
            record[sub.name] = coerce_primitive(record[sub.name], sub.shape)
    return record


def normalize_value(value: Any, spec: FieldSpec) -> Any:
    """Normalize one parameter value against its declaration.

    Already-typed values (lists, dicts, bools, numbers) skip text decoding
    entirely; strings go through the primitive and structural layers.
    Never raises.
    """

    if isinstance(value, str):
        return _decode_text(value, spec)
    return _coerce_typed(value, spec)


def normalize_params(schema: ToolSchema, params: Mapping[str, Any]) -> NormalizedParamBag:
    """Normalize a parameter mapping for ``schema``.

    Undeclared keys are passed through untouched for the validator to
    report or drop.
    """

    bag: NormalizedParamBag = {}
    for key, value in params.items():
        spec = schema.field(key)
        bag[key] = value if spec is None else normalize_value(value, spec)
    return bag


class ParameterNormalizer:
    """Normalizes scanner drafts using the registered tool schemas.

    Args:
        lookup: Returns the schema for a tool name, or ``None``.
    """

    def __init__(self, lookup: SchemaLookup) -> None:
        self._lookup = lookup

    def normalize(self, draft: ToolInvocationDraft) -> NormalizedParamBag:
        return self.normalize_fields(draft.tool_name, draft.raw_fields)

    def normalize_fields(self, tool_name: str, fields: Mapping[str, Any]) -> NormalizedParamBag:
        schema = self._lookup(tool_name)
        if schema is None:
            LOGGER.debug("No schema for %s; leaving %d field(s) raw", tool_name, len(fields))
            return dict(fields)
        return normalize_params(schema, fields)
