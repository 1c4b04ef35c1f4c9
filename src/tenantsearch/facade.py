"""Search facade: the public contract applications call.

Resolves the tenant, dispatches to the indexing engine, the backend's
query path or the count engine, and hydrates raw hits back into the
caller's model type. Every operation takes an optional keyword-only
``appid``; omitting it targets the default tenant.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError as ModelValidationError

from tenantsearch.backends import create_backend
from tenantsearch.backends.base import SearchBackend
from tenantsearch.config import Settings
from tenantsearch.counting import CountEngine
from tenantsearch.exceptions import HydrationFailure
from tenantsearch.indexing import BatchReport, IndexingEngine
from tenantsearch.models import ResultSet, Searchable, SearchableModel
from tenantsearch.pager import DEFAULT_PAGE_SIZE, Pager
from tenantsearch.queries import (
    FullText,
    Nearby,
    Prefix,
    QueryDescriptor,
    Similar,
    Tagged,
    Tags,
    TermInList,
    Terms,
    Wildcard,
)
from tenantsearch.tenancy import TenantContext, TenantResolver

logger = logging.getLogger(__name__)

P = TypeVar("P")


def hydrate(model: Type[P], source: Mapping[str, Any]) -> P:
    """Rebuild a `model` instance from a stored projection.

    Raises `HydrationFailure` when the record does not fit the model.
    """
    try:
        validate = getattr(model, "model_validate", None)
        if validate is not None:
            return validate(dict(source))
        return model(**source)
    except (ModelValidationError, TypeError, ValueError) as exc:
        raise HydrationFailure(
            f"Cannot hydrate {source.get('type')}/{source.get('id')} as {model.__name__}: {exc}"
        ) from exc


class SearchFacade:
    """Multi-tenant indexing and query entry point."""

    def __init__(
        self,
        resolver: TenantResolver,
        backend: SearchBackend,
        *,
        indexing: Optional[IndexingEngine] = None,
        counting: Optional[CountEngine] = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = 1000,
    ) -> None:
        self._resolver = resolver
        self._backend = backend
        self._indexing = indexing or IndexingEngine(backend)
        self._counting = counting or CountEngine(backend)
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._hydration_failures = 0
        self._stats_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: Optional[SearchBackend] = None,
        clock: Callable[[], float] = time.time,
    ) -> SearchFacade:
        """Wire resolver, backend and engines from configuration."""
        cfg = settings.search
        backend = backend or create_backend(settings, clock=clock)
        return cls(
            TenantResolver(TenantContext.from_config(cfg)),
            backend,
            indexing=IndexingEngine(
                backend,
                batch_size=cfg.batch_size,
                max_workers=cfg.batch_workers,
                clock=clock,
            ),
            counting=CountEngine(backend),
            default_page_size=cfg.default_page_size,
            max_page_size=cfg.max_page_size,
        )

    @property
    def backend(self) -> SearchBackend:
        return self._backend

    @property
    def hydration_failures(self) -> int:
        """Total hits dropped so far because they could not be hydrated."""
        return self._hydration_failures

    def namespace(self, appid: Optional[str] = None) -> str:
        return self._resolver.resolve(appid)

    def close(self) -> None:
        self._backend.close()

    # ----- Indexing -----

    def index(self, obj: Searchable, ttl_ms: int = 0, *, appid: Optional[str] = None) -> None:
        """Index `obj`; with `ttl_ms` > 0 it is removed from the index after that long."""
        self._indexing.index(self.namespace(appid), obj, ttl_ms)

    def unindex(self, obj: Searchable, *, appid: Optional[str] = None) -> None:
        self._indexing.unindex(self.namespace(appid), obj)

    def index_all(
        self, objects: Iterable[Searchable], ttl_ms: int = 0, *, appid: Optional[str] = None
    ) -> BatchReport:
        return self._indexing.index_all(self.namespace(appid), objects, ttl_ms)

    def unindex_all(
        self, objects: Iterable[Searchable], *, appid: Optional[str] = None
    ) -> BatchReport:
        return self._indexing.unindex_all(self.namespace(appid), objects)

    # ----- Queries -----

    def _drop(self, exc: HydrationFailure) -> None:
        with self._stats_lock:
            self._hydration_failures += 1
        logger.warning("Dropping search hit: %s", exc)

    def find_by_id(
        self, id_: str, *, appid: Optional[str] = None, model: Type[P] = SearchableModel
    ) -> Optional[P]:
        """Return the object with this id, or None when it is not indexed."""
        if not id_:
            return None
        hit = self._backend.get(self.namespace(appid), id_)
        if hit is None:
            return None
        try:
            return hydrate(model, hit.source)
        except HydrationFailure as exc:
            self._drop(exc)
            return None

    def find(
        self,
        query: QueryDescriptor,
        pager: Pager,
        *,
        appid: Optional[str] = None,
        model: Type[P] = SearchableModel,
    ) -> ResultSet[P]:
        """Run any query descriptor and hydrate one page of results."""
        namespace = self.namespace(appid)
        pager.normalize(default_limit=self._default_page_size, max_limit=self._max_page_size)
        page = self._backend.search(namespace, query, pager)
        pager.count = page.total
        pager.next_cursor = page.next_cursor
        result: ResultSet[P] = ResultSet(pager=pager)
        for hit in page.hits:
            try:
                result.items.append(hydrate(model, hit.source))
            except HydrationFailure as exc:
                result.dropped += 1
                self._drop(exc)
        return result

    def find_query(
        self, type_: Optional[str], query: str, pager: Pager, **kwargs: Any
    ) -> ResultSet[Any]:
        return self.find(FullText(type=type_, query=query), pager, **kwargs)

    def find_prefix(
        self, type_: Optional[str], field: str, prefix: str, pager: Pager, **kwargs: Any
    ) -> ResultSet[Any]:
        return self.find(Prefix(type=type_, field=field, prefix=prefix), pager, **kwargs)

    def find_wildcard(
        self, type_: Optional[str], field: str, pattern: str, pager: Pager, **kwargs: Any
    ) -> ResultSet[Any]:
        return self.find(Wildcard(type=type_, field=field, pattern=pattern), pager, **kwargs)

    def find_terms(
        self,
        type_: Optional[str],
        terms: Mapping[str, Any],
        pager: Pager,
        *,
        match_all: bool = True,
        **kwargs: Any,
    ) -> ResultSet[Any]:
        """AND (`match_all`) or OR search over exact field values."""
        return self.find(Terms(type=type_, terms=dict(terms), match_all=match_all), pager, **kwargs)

    def find_term_in_list(
        self,
        type_: Optional[str],
        field: str,
        values: Sequence[Any],
        pager: Pager,
        **kwargs: Any,
    ) -> ResultSet[Any]:
        return self.find(TermInList(type=type_, field=field, values=tuple(values)), pager, **kwargs)

    def find_tagged(
        self, type_: Optional[str], tags: Sequence[str], pager: Pager, **kwargs: Any
    ) -> ResultSet[Any]:
        """Objects whose tags include every tag in `tags`."""
        return self.find(Tagged(type=type_, tags=tuple(tags)), pager, **kwargs)

    def find_similar(
        self,
        type_: Optional[str],
        fields: Sequence[str],
        text: str,
        pager: Pager,
        *,
        exclude_id: Optional[str] = None,
        **kwargs: Any,
    ) -> ResultSet[Any]:
        """More-like-this search; `exclude_id` is never part of the results."""
        query = Similar(type=type_, fields=tuple(fields), text=text, exclude_id=exclude_id)
        return self.find(query, pager, **kwargs)

    def find_nearby(
        self,
        type_: Optional[str],
        lat: float,
        lng: float,
        radius_km: float,
        pager: Pager,
        *,
        query: str = "*",
        **kwargs: Any,
    ) -> ResultSet[Any]:
        """Objects within `radius_km` (inclusive) of a point, nearest first by default."""
        nearby = Nearby(type=type_, lat=lat, lng=lng, radius_km=radius_km, query=query)
        return self.find(nearby, pager, **kwargs)

    def find_tags(self, keyword: str, pager: Pager, **kwargs: Any) -> ResultSet[Any]:
        return self.find(Tags(keyword=keyword), pager, **kwargs)

    # ----- Counting -----

    def get_count(
        self,
        type_: Optional[str] = None,
        terms: Optional[Mapping[str, Any]] = None,
        *,
        appid: Optional[str] = None,
    ) -> Optional[int]:
        return self._counting.get_count(self.namespace(appid), type_, terms)
