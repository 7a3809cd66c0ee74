"""Canonical id generation and ISBN helpers."""

from __future__ import annotations

import os
import re
import threading
import time
import uuid
from enum import Enum
from typing import Any, Optional, Tuple

_ISBN_CHARS = re.compile(r"[^0-9Xx]")
_STRICT_ISBN13 = re.compile(r"^\d{13}$")
_STRICT_ISBN10 = re.compile(r"^\d{9}[\dXx]$")
_PROVIDER_ID = re.compile(r"^[A-Za-z0-9_-]{4,64}$")
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

_id_lock = threading.Lock()
_last_timestamp_ms = 0
_last_sequence = 0


def new_canonical_id() -> str:
    """Return a time-ordered UUID (version 7 layout).

    The 48-bit millisecond timestamp leads, followed by a 12-bit sequence
    that keeps ids created within the same millisecond strictly increasing.
    """

    global _last_timestamp_ms, _last_sequence

    with _id_lock:
        timestamp_ms = time.time_ns() // 1_000_000
        if timestamp_ms > _last_timestamp_ms:
            _last_timestamp_ms = timestamp_ms
            _last_sequence = int.from_bytes(os.urandom(2), "big") & 0x07FF
        else:
            _last_sequence += 1
            if _last_sequence > 0x0FFF:
                _last_timestamp_ms += 1
                _last_sequence = 0
        timestamp_ms = _last_timestamp_ms
        sequence = _last_sequence

    tail = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)
    value = (timestamp_ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= sequence << 64
    value |= 0b10 << 62
    value |= tail
    return str(uuid.UUID(int=value))


def is_canonical_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_PATTERN.match(value.strip()))


def canonical_id_timestamp_ms(value: str) -> int:
    """Return the millisecond timestamp embedded in a canonical id."""

    return uuid.UUID(value).int >> 80


def normalize_isbn(value: Any) -> Optional[str]:
    """Strip separators and return a 10 or 13 character ISBN, or None."""

    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    cleaned = _ISBN_CHARS.sub("", value).upper()
    if len(cleaned) == 13 and cleaned.isdigit():
        return cleaned
    if len(cleaned) == 10 and cleaned[:9].isdigit():
        return cleaned
    return None


class IdentifierKind(str, Enum):
    CANONICAL = "canonical"
    ISBN13 = "isbn13"
    ISBN10 = "isbn10"
    PROVIDER = "provider"


def parse_lookup_identifier(value: Any) -> Tuple[IdentifierKind, str]:
    """Classify a lookup identifier strictly; raise ``ValueError`` when malformed."""

    if not isinstance(value, str) or not value.strip():
        raise ValueError("identifier must be a non-empty string")
    candidate = value.strip()
    if is_canonical_id(candidate):
        return IdentifierKind.CANONICAL, candidate.lower()
    compact = candidate.replace("-", "").replace(" ", "")
    if _STRICT_ISBN13.match(compact):
        return IdentifierKind.ISBN13, compact
    if _STRICT_ISBN10.match(compact):
        return IdentifierKind.ISBN10, compact.upper()
    if _PROVIDER_ID.match(candidate):
        return IdentifierKind.PROVIDER, candidate
    raise ValueError(f"malformed identifier: {value!r}")


def normalize_isbn13(value: Any) -> Optional[str]:
    isbn = normalize_isbn(value)
    return isbn if isbn is not None and len(isbn) == 13 else None


def normalize_isbn10(value: Any) -> Optional[str]:
    isbn = normalize_isbn(value)
    return isbn if isbn is not None and len(isbn) == 10 else None


__all__ = [
    "IdentifierKind",
    "canonical_id_timestamp_ms",
    "is_canonical_id",
    "new_canonical_id",
    "normalize_isbn",
    "normalize_isbn10",
    "normalize_isbn13",
    "parse_lookup_identifier",
]
