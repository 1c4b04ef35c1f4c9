"""Count engine: runs a query shape in counting mode only."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from tenantsearch.backends.base import SearchBackend
from tenantsearch.queries import FullText, QueryDescriptor, Terms


class CountEngine:
    """Counts matching objects without materializing hits."""

    def __init__(self, backend: SearchBackend) -> None:
        self._backend = backend

    @staticmethod
    def count_query(type_: Optional[str], terms: Optional[Mapping[str, Any]] = None) -> QueryDescriptor:
        if terms:
            return Terms(type=type_, terms=dict(terms), match_all=True)
        return FullText(type=type_)

    def get_count(
        self, namespace: str, type_: Optional[str], terms: Optional[Mapping[str, Any]] = None
    ) -> Optional[int]:
        """Number of objects of `type_` (all types if empty) matching every term.

        Returns 0 when nothing matches and None only when the backend reports
        that it cannot compute the count.
        """
        return self.count(namespace, self.count_query(type_, terms))

    def count(self, namespace: str, query: QueryDescriptor) -> Optional[int]:
        result = self._backend.count(namespace, query)
        if result is None:
            return None
        return max(0, int(result))
