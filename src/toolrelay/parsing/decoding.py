"""Text and structural decoding for captured tool fields.

Leaf strings are decoded outside-in: XML entities first (the outer layer
the model wrapped around the value), then backslash escapes (the inner
layer). Structural decoders turn a raw field into an array or object,
accepting either a JSON document or the field's repeating pseudo-XML
micro-format.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator

from ..schema import FieldShape, FieldSpec, StructuralDecoder

__all__ = [
    "unescape_entities",
    "decode_escapes",
    "decode_leaf",
    "coerce_primitive",
    "iter_elements",
    "extract_element",
    "try_parse_json",
    "RepeatingElementDecoder",
    "ElementMapDecoder",
    "default_decoder_for",
]

LOGGER = logging.getLogger(__name__)

_DECIMAL_REF_RE = re.compile(r"&#(\d+);")
_HEX_REF_RE = re.compile(r"&#[xX]([0-9A-Fa-f]+);")
_ESCAPE_RE = re.compile(r"\\([\\nrt])")
_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\"}
_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INT_RE = re.compile(r"[+-]?\d+")
_MAX_CODEPOINT = 0x10FFFF
_SURROGATES = range(0xD800, 0xE000)


# -----------------------------------------------------------------------------
# Leaf decoding
# -----------------------------------------------------------------------------


def _char_ref(value: int, original: str) -> str:
    if 0 < value <= _MAX_CODEPOINT and value not in _SURROGATES:
        return chr(value)
    return original


def unescape_entities(text: str) -> str:
    """Replace XML character references and the five predefined entities.

    Numeric references (``&#10;``, ``&#xA;``) come first, then ``&lt;``,
    ``&gt;``, ``&quot;``, ``&apos;`` and finally ``&amp;`` so that
    ``&amp;lt;`` yields ``&lt;`` rather than ``<``. References to surrogate or
    out-of-range code points are left as written.
    """

    if "&" not in text:
        return text
    text = _DECIMAL_REF_RE.sub(lambda m: _char_ref(int(m.group(1)), m.group(0)), text)
    text = _HEX_REF_RE.sub(lambda m: _char_ref(int(m.group(1), 16), m.group(0)), text)
    return (
        text.replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&quot;", '"')
        .replace("&apos;", "'")
        .replace("&amp;", "&")
    )


def decode_escapes(text: str) -> str:
    r"""Decode ``\n``, ``\r``, ``\t`` and ``\\``; other backslashes stay as-is.

    A single left-to-right pass, so ``\\n`` is a literal backslash followed
    by ``n`` and never a newline.
    """

    if "\\" not in text:
        return text
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(1)], text)


def decode_leaf(text: str, spec: FieldSpec | None = None) -> str:
    """Apply the field's leaf policy (unescape, strip) to ``text``."""
    unescape = True if spec is None else spec.unescape
    strip = False if spec is None else spec.strip
    if unescape:
        text = decode_escapes(unescape_entities(text))
    if strip:
        text = text.strip()
    return text


def coerce_primitive(value: Any, shape: FieldShape) -> Any:
    """Schema-driven coercion of a raw string to boolean or number.

    Values that do not look like the declared shape are returned unchanged
    so the validator can report them.
    """

    if not isinstance(value, str):
        return value
    if shape is FieldShape.BOOLEAN:
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        return value
    if shape is FieldShape.NUMBER:
        candidate = value.strip()
        if _INT_RE.fullmatch(candidate):
            return int(candidate)
        if _NUMBER_RE.fullmatch(candidate):
            return float(candidate)
        return value
    return value


# -----------------------------------------------------------------------------
# Element extraction
# -----------------------------------------------------------------------------


def _element_re(tag: str) -> re.Pattern[str]:
    escaped = re.escape(tag)
    return re.compile(rf"<{escaped}\s*>(.*?)</{escaped}\s*>|<{escaped}\s*/>", re.DOTALL)


def iter_elements(text: str, tag: str) -> Iterator[str]:
    """Yield the inner text of each ``<tag>...</tag>`` in ``text``.

    Matching is field-local and non-greedy; self-closing ``<tag/>`` yields
    an empty string.
    """

    for match in _element_re(tag).finditer(text):
        yield match.group(1) or ""


def extract_element(text: str, tag: str) -> str | None:
    """Return the inner text of the first ``<tag>`` in ``text``, if any."""
    match = _element_re(tag).search(text)
    if match is None:
        return None
    return match.group(1) or ""


def try_parse_json(text: str) -> tuple[bool, Any]:
    """Attempt to parse ``text`` as JSON, returning ``(ok, value)``."""
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


# -----------------------------------------------------------------------------
# Structural decoders
# -----------------------------------------------------------------------------


def _coerce_record(record: dict[str, Any], spec: FieldSpec) -> dict[str, Any]:
    coerced = dict(record)
    for sub in spec.item_fields:
        if sub.name in coerced:
            coerced[sub.name] = coerce_primitive(coerced[sub.name], sub.shape)
    return coerced


def _extract_record(block: str, spec: FieldSpec) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for sub in spec.item_fields:
        inner = extract_element(block, sub.name)
        if inner is None:
            continue
        record[sub.name] = coerce_primitive(decode_leaf(inner, sub), sub.shape)
    return record


@dataclass(slots=True, frozen=True)
class RepeatingElementDecoder:
    """Decode an array field from JSON or repeating ``<item_tag>`` elements.

    Record items (``spec.item_fields``) have each declared sub-field
    extracted from inside the item block; primitive items are decoded as a
    single leaf. Items from both encodings go through the same primitive
    coercion so JSON and XML inputs normalize identically.
    """

    def decode(self, raw: str, spec: FieldSpec) -> list[Any]:
        text = raw.strip()
        if not text:
            return []
        if text[0] in "[{":
            ok, parsed = try_parse_json(text)
            if ok:
                return self._from_json(parsed, spec)
            LOGGER.debug("Field %s looked like JSON but did not parse; trying elements", spec.name)
        items: list[Any] = []
        for block in iter_elements(text, spec.item_tag):
            if spec.item_fields:
                items.append(_extract_record(block, spec))
            else:
                items.append(coerce_primitive(decode_leaf(block, spec), spec.item_shape))
        if not items:
            LOGGER.debug("Field %s: no <%s> elements found", spec.name, spec.item_tag)
        return items

    def _from_json(self, parsed: Any, spec: FieldSpec) -> list[Any]:
        if isinstance(parsed, dict):
            # A lone object where a list was expected is taken as one item.
            parsed = [parsed]
        if not isinstance(parsed, list):
            LOGGER.debug("Field %s: JSON value is %s, not a list", spec.name, type(parsed).__name__)
            return []
        if spec.item_fields:
            return [_coerce_record(item, spec) if isinstance(item, dict) else item for item in parsed]
        return [coerce_primitive(item, spec.item_shape) for item in parsed]


@dataclass(slots=True, frozen=True)
class ElementMapDecoder:
    """Decode an object field from JSON or ``<key>value</key>`` children."""

    def decode(self, raw: str, spec: FieldSpec) -> dict[str, Any]:
        text = raw.strip()
        if not text:
            return {}
        if text[0] in "[{":
            ok, parsed = try_parse_json(text)
            if ok:
                if not isinstance(parsed, dict):
                    return {}
                return _coerce_record(parsed, spec)
        if spec.item_fields:
            return _extract_record(text, spec)
        record: dict[str, Any] = {}
        for match in re.finditer(r"<([A-Za-z_][\w.\-]*)\s*>(.*?)</\1\s*>", text, re.DOTALL):
            record[match.group(1)] = decode_leaf(match.group(2), spec)
        return record


def default_decoder_for(spec: FieldSpec) -> StructuralDecoder | None:
    """Pick the decoder a structural field gets when none was declared."""
    if spec.shape is FieldShape.ARRAY:
        return RepeatingElementDecoder()
    if spec.shape is FieldShape.OBJECT:
        return ElementMapDecoder()
    return None
