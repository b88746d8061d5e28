"""Streaming text to normalized parameters."""

from .buffer import StreamBuffer
from .decoding import (
    ElementMapDecoder,
    RepeatingElementDecoder,
    decode_escapes,
    decode_leaf,
    default_decoder_for,
    unescape_entities,
)
from .normalizer import NormalizedParamBag, ParameterNormalizer, normalize_params, normalize_value
from .scanner import DiscardReason, DraftStatus, DraftUpdate, TagScanner, ToolInvocationDraft

__all__ = [
    "StreamBuffer",
    "TagScanner",
    "DraftStatus",
    "DraftUpdate",
    "DiscardReason",
    "ToolInvocationDraft",
    "ParameterNormalizer",
    "NormalizedParamBag",
    "normalize_params",
    "normalize_value",
    "RepeatingElementDecoder",
    "ElementMapDecoder",
    "default_decoder_for",
    "decode_leaf",
    "decode_escapes",
    "unescape_entities",
]
