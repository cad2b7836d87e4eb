"""Exception types and failure classification for the generation pipeline."""

import asyncio
import socket
import sqlite3
from typing import Iterable, List, Optional, Sequence

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_RATE_LIMIT = "rate_limit"
ERROR_KIND_INVALID_INPUT = "invalid_input"
ERROR_KIND_CANCELLED = "cancelled"
ERROR_KIND_UNKNOWN = "unknown"

# A timed-out call may still finish on the backend; it is not retried
RETRYABLE_ERROR_KINDS = {
    ERROR_KIND_NETWORK,
    ERROR_KIND_RATE_LIMIT,
}


class AdmissionError(ValueError):
    """A submission was refused by the item validator."""

    def __init__(self, message: str, rejections: Optional[Sequence[object]] = None):
        super().__init__(message)
        self.rejections = list(rejections or [])


class SynthesisError(RuntimeError):
    """A synthesis gateway could not produce audio for one item."""

    def __init__(self, message: str, *, error_kind: str = ERROR_KIND_UNKNOWN):
        super().__init__(message)
        self.error_kind = str(error_kind or ERROR_KIND_UNKNOWN).strip().lower()


class PersistenceError(RuntimeError):
    """A history write could not be durably committed."""


class TransitionError(RuntimeError):
    """An item was asked to make a state change its lifecycle forbids."""

    def __init__(self, item_id: str, from_status: object, to_status: object):
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"invalid transition for item {item_id}: {from_status} -> {to_status}")


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        current = current.__cause__ or current.__context__


def classify_exception(exc: BaseException) -> str:
    """Map a gateway exception to a coarse failure kind."""
    messages: List[str] = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, SynthesisError):
            return item.error_kind
        if isinstance(item, asyncio.CancelledError):
            return ERROR_KIND_CANCELLED
        if isinstance(item, (TimeoutError, asyncio.TimeoutError, socket.timeout)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, ConnectionError):
            return ERROR_KIND_NETWORK
        if isinstance(item, ValueError):
            return ERROR_KIND_INVALID_INPUT
        messages.append(str(item))

    message = " ".join(messages).lower()
    if "429" in message or "rate limit" in message:
        return ERROR_KIND_RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ERROR_KIND_TIMEOUT
    if "connection" in message or "network" in message:
        return ERROR_KIND_NETWORK
    return ERROR_KIND_UNKNOWN


def is_retryable(kind: str) -> bool:
    return str(kind or "").strip().lower() in RETRYABLE_ERROR_KINDS


def wrap_storage_error(exc: sqlite3.Error, operation: str) -> PersistenceError:
    """Build the PersistenceError surfaced for a failed history write."""
    error = PersistenceError(f"History {operation} failed: {type(exc).__name__}: {exc}")
    error.__cause__ = exc
    return error
