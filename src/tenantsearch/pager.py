"""Paging state threaded through every query.

A `Pager` is both input (page or cursor, page size, sort) and output: each
query writes the total hit count and the cursor of the following page back
into it. Callers usually keep one pager per listing and call `advance()`
between requests.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from tenantsearch.exceptions import ValidationError

DEFAULT_PAGE_SIZE = 30


@dataclass(slots=True)
class Pager:
    """Cursor/offset, page size and sort state for one paginated query."""

    page: int = 1
    limit: Optional[int] = None
    sort_field: Optional[str] = None
    sort_ascending: bool = True
    cursor: Optional[str] = None
    # Written by the last executed query
    count: int = 0
    next_cursor: Optional[str] = None

    def normalize(self, *, default_limit: int = DEFAULT_PAGE_SIZE, max_limit: int) -> Pager:
        """Clamp `limit` to ``[1, max_limit]`` and `page` to ``>= 1`` in place.

        Out-of-range values are clamped rather than rejected; a missing limit
        takes `default_limit`.
        """
        limit = default_limit if self.limit is None else int(self.limit)
        self.limit = min(max(1, limit), max(1, max_limit))
        self.page = max(1, int(self.page or 1))
        if self.sort_field is not None and not str(self.sort_field).strip():
            self.sort_field = None
        return self

    @property
    def offset(self) -> int:
        return (self.page - 1) * (self.limit or DEFAULT_PAGE_SIZE)

    def advance(self) -> bool:
        """Move to the page after the last executed query.

        Returns False (and leaves the pager untouched) when the previous
        query returned the final page.
        """
        if not self.next_cursor:
            return False
        self.cursor = self.next_cursor
        self.next_cursor = None
        self.page += 1
        return True

    def reset(self) -> None:
        self.page = 1
        self.cursor = None
        self.next_cursor = None
        self.count = 0


def encode_cursor(sort_key: Sequence[Any]) -> str:
    """Encode a backend sort key as an opaque, URL-safe cursor token."""
    raw = json.dumps(list(sort_key), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> List[Any]:
    """Decode a token produced by `encode_cursor`.

    Raises `ValidationError` when the token was not produced by this module.
    """
    padded = token + "=" * (-len(token) % 4)
    try:
        value = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError(f"Malformed pagination cursor: {token!r}") from exc
    if not isinstance(value, list):
        raise ValidationError(f"Malformed pagination cursor: {token!r}")
    return value
