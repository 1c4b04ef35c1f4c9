"""Abstract search backend interface for indexing and querying tenant namespaces.

Defines the surface every backend (e.g., Whoosh, Elasticsearch) implements,
enabling extensibility and testability via a common contract. Backends own
query translation, TTL expiry and paging mechanics; the engines and the
facade above them only deal in namespaces, descriptors and raw hits.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic_core import to_jsonable_python

from tenantsearch.models import GeoPoint
from tenantsearch.pager import Pager
from tenantsearch.queries import QueryDescriptor

EARTH_RADIUS_KM = 6371.0088


@dataclass(slots=True)
class IndexDocument:
    """One object's indexable projection, ready to be written to a namespace."""

    id: str
    type: str
    fields: Dict[str, Any] = field(default_factory=dict)
    # Epoch milliseconds after which the entry is expired; None means never
    expires_at: Optional[int] = None

    @property
    def key(self) -> str:
        return document_key(self.type, self.id)

    def source(self) -> Dict[str, Any]:
        """JSON-compatible copy of the projection, stored for hydration."""
        return to_jsonable_python(self.fields)


@dataclass(slots=True)
class BatchFailure:
    """A single entry of a batch write that the backend did not apply."""

    key: str
    reason: str
    retryable: bool = False


@dataclass(slots=True)
class RawHit:
    """A backend hit: the stored source plus ranking metadata."""

    source: Dict[str, Any]
    score: Optional[float] = None
    distance_km: Optional[float] = None


@dataclass(slots=True)
class SearchPage:
    """Hits for one page together with the total and the cursor of the next page."""

    hits: List[RawHit] = field(default_factory=list)
    total: int = 0
    next_cursor: Optional[str] = None


def document_key(type_: str, id_: str) -> str:
    return f"{type_}/{id_}"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def value_kind(value: Any) -> Optional[str]:
    """Classify a projected value into a searchable kind, or None if it is stored only."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "numeric" if math.isfinite(value) else None
    if isinstance(value, str):
        return "text"
    if isinstance(value, GeoPoint):
        return "geo"
    if isinstance(value, (list, tuple, set, frozenset)):
        if value and all(isinstance(v, str) for v in value):
            return "keyword"
    return None


class SearchBackend(ABC):
    """Abstract interface for search backend implementations."""

    @abstractmethod
    def upsert(self, namespace: str, docs: Sequence[IndexDocument]) -> List[BatchFailure]:
        """Index or reindex documents; returns the entries the backend rejected.

        Raises `BackendUnavailable` when the request as a whole could not be applied.
        """

    @abstractmethod
    def delete(self, namespace: str, keys: Iterable[str]) -> List[BatchFailure]:
        """Remove documents by key; missing keys are not failures."""

    @abstractmethod
    def get(self, namespace: str, id_: str) -> Optional[RawHit]:
        """Return the live document with this id, if any."""

    @abstractmethod
    def search(self, namespace: str, query: QueryDescriptor, pager: Pager) -> SearchPage:
        """Execute a query and return one page of raw hits."""

    @abstractmethod
    def count(self, namespace: str, query: QueryDescriptor) -> Optional[int]:
        """Count matching documents; None only when the backend cannot compute a count."""

    @abstractmethod
    def drop_namespace(self, namespace: str) -> None:
        """Delete a namespace and everything in it."""

    def close(self) -> None:
        """Release connections or file handles held by the backend."""
