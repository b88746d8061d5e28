"""Reference capability handlers and their filesystem/network helpers."""

from .cache import CacheStats, TTLCache
from .replace import MultiReplaceStringHandler, ReplaceStringHandler, apply_replacement, find_occurrences
from .transaction import CommitError, EditTransaction, StagedEdit, TransactionError, TransactionState
from .web_fetch import WebFetchHandler, html_to_text
from .workspace import MAX_FILE_BYTES, Workspace

__all__ = [
    "TTLCache",
    "CacheStats",
    "ReplaceStringHandler",
    "MultiReplaceStringHandler",
    "apply_replacement",
    "find_occurrences",
    "EditTransaction",
    "TransactionState",
    "StagedEdit",
    "TransactionError",
    "CommitError",
    "WebFetchHandler",
    "html_to_text",
    "Workspace",
    "MAX_FILE_BYTES",
]
