"""Query translation: descriptor -> backend-native query.

`QueryTranslator` performs the single exhaustive dispatch over
`QueryShape`; each backend subclasses it with one method per shape that
builds its native query object. The ordering rules shared by all backends
live here too, so that every backend pages through results in the same
order.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Generic, Optional, TypeVar

from tenantsearch.exceptions import SearchError
from tenantsearch.pager import Pager
from tenantsearch.queries import (
    RANKED_SHAPES,
    ById,
    FullText,
    Nearby,
    Prefix,
    QueryDescriptor,
    QueryShape,
    Similar,
    Tagged,
    TermInList,
    Terms,
    Wildcard,
)

N = TypeVar("N")

# Fields that keep their exact case; everything else matches case-insensitively
EXACT_FIELDS = frozenset({"id", "type"})

_HANDLERS: Dict[QueryShape, str] = {
    QueryShape.BY_ID: "by_id",
    QueryShape.FULL_TEXT: "full_text",
    QueryShape.PREFIX: "prefix",
    QueryShape.WILDCARD: "wildcard",
    QueryShape.TERMS: "terms",
    QueryShape.TERM_IN_LIST: "term_in_list",
    QueryShape.TAGGED: "tagged",
    QueryShape.SIMILAR: "similar",
    QueryShape.NEARBY: "nearby",
}


class OrderBy(str, Enum):
    SCORE = "score"
    DISTANCE = "distance"
    FIELD = "field"
    ID = "id"


@dataclass(frozen=True, slots=True)
class Ordering:
    """Primary sort criterion for a query; ties are always broken by ascending id."""

    by: OrderBy
    field: Optional[str] = None
    ascending: bool = True


def ordering_for(query: QueryDescriptor, pager: Pager) -> Ordering:
    """Decide how results of `query` are ordered under `pager`.

    An explicit sort field wins. Otherwise ranked shapes order by descending
    score, geo queries by ascending distance and everything else by id.
    """
    if pager.sort_field:
        if pager.sort_field == "id":
            return Ordering(OrderBy.ID, "id", pager.sort_ascending)
        return Ordering(OrderBy.FIELD, pager.sort_field, pager.sort_ascending)
    if query.shape in RANKED_SHAPES:
        return Ordering(OrderBy.SCORE, ascending=False)
    if query.shape is QueryShape.NEARBY:
        return Ordering(OrderBy.DISTANCE)
    return Ordering(OrderBy.ID)


def normalize_term(field: str, value: str) -> str:
    """Apply the case policy to a string compared against `field`."""
    return value if field in EXACT_FIELDS else value.lower()


class QueryTranslator(ABC, Generic[N]):
    """Converts query descriptors into a backend's native query type `N`."""

    def translate(self, query: QueryDescriptor) -> N:
        if query.shape is QueryShape.TAGS:
            if not query.keyword.strip():
                return self.match_none()
            query = query.as_prefix()
        try:
            name = _HANDLERS[query.shape]
        except KeyError:
            raise SearchError(f"Unsupported query shape: {query.shape!r}") from None
        return getattr(self, name)(query)

    @abstractmethod
    def match_none(self) -> N:
        """A query matching no documents."""

    @abstractmethod
    def by_id(self, query: ById) -> N: ...

    @abstractmethod
    def full_text(self, query: FullText) -> N: ...

    @abstractmethod
    def prefix(self, query: Prefix) -> N: ...

    @abstractmethod
    def wildcard(self, query: Wildcard) -> N: ...

    @abstractmethod
    def terms(self, query: Terms) -> N: ...

    @abstractmethod
    def term_in_list(self, query: TermInList) -> N: ...

    @abstractmethod
    def tagged(self, query: Tagged) -> N: ...

    @abstractmethod
    def similar(self, query: Similar) -> N: ...

    @abstractmethod
    def nearby(self, query: Nearby) -> N: ...
