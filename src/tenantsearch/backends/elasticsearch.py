"""Elasticsearch backend speaking the REST API through httpx.

Each namespace is one Elasticsearch index, created on first write with:

  * a ``lowercase`` normalizer;
  * a dynamic template mapping every string to ``text`` plus a ``raw``
    keyword sub-field (lowercased), used for exact, prefix, wildcard and sort;
  * ``id`` and ``type`` as plain ``keyword`` (exact case);
  * the configured geo field as ``geo_point`` (stored as ``{lat, lon}``);
  * ``sys.key`` / ``sys.expires`` bookkeeping, the latter as ``epoch_millis``.

Expired documents are excluded from every query by a ``must_not`` range
on ``sys.expires`` and removed with ``_delete_by_query`` at most once per
``purge_interval`` seconds, piggybacking on writes. Paging uses
``search_after`` when a cursor is given.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

import httpx

from tenantsearch.backends.base import (
    BatchFailure,
    IndexDocument,
    RawHit,
    SearchBackend,
    SearchPage,
)
from tenantsearch.exceptions import BackendUnavailable, SearchError
from tenantsearch.models import GeoPoint, RESERVED_FIELD
from tenantsearch.pager import Pager, decode_cursor, encode_cursor
from tenantsearch.queries import (
    ById,
    FullText,
    Nearby,
    Prefix,
    QueryDescriptor,
    Similar,
    Tagged,
    TermInList,
    Terms,
    Wildcard,
)
from tenantsearch.translator import (
    EXACT_FIELDS,
    OrderBy,
    Ordering,
    QueryTranslator,
    normalize_term,
    ordering_for,
)

logger = logging.getLogger(__name__)

Json = Dict[str, Any]

SYS_EXPIRES = f"{RESERVED_FIELD}.expires"
MAX_SIMILAR_TERMS = 25


def index_body(*, geo_field: str, shards: int, replicas: int) -> Json:
    """Settings and mappings for a new namespace index."""
    return {
        "settings": {
            "number_of_shards": shards,
            "number_of_replicas": replicas,
            "analysis": {
                "normalizer": {"lowercase": {"type": "custom", "filter": ["lowercase"]}}
            },
        },
        "mappings": {
            "dynamic_templates": [
                {
                    "strings": {
                        "match_mapping_type": "string",
                        "mapping": {
                            "type": "text",
                            "fields": {
                                "raw": {
                                    "type": "keyword",
                                    "normalizer": "lowercase",
                                    "ignore_above": 1024,
                                }
                            },
                        },
                    }
                }
            ],
            "properties": {
                "id": {"type": "keyword"},
                "type": {"type": "keyword"},
                geo_field: {"type": "geo_point"},
                RESERVED_FIELD: {
                    "properties": {
                        "key": {"type": "keyword"},
                        "expires": {"type": "date", "format": "epoch_millis"},
                    }
                },
            },
        },
    }


class ElasticsearchTranslator(QueryTranslator[Json]):
    """Builds Elasticsearch query DSL."""

    def __init__(self, *, geo_field: str) -> None:
        self._geo_field = geo_field

    @staticmethod
    def _target(field: str, value: str) -> tuple:
        if field in EXACT_FIELDS:
            return field, value
        return f"{field}.raw", normalize_term(field, value)

    def _term(self, field: str, value: Any) -> Optional[Json]:
        if value is None:
            return None
        if field in EXACT_FIELDS:
            return {"term": {field: str(value)}}
        if isinstance(value, str):
            target, text = self._target(field, value)
            return {"term": {target: text}}
        if isinstance(value, (bool, int, float)):
            return {"term": {field: value}}
        return None

    def match_none(self) -> Json:
        return {"match_none": {}}

    def by_id(self, query: ById) -> Json:
        return {"term": {"id": query.id}}

    def full_text(self, query: FullText) -> Json:
        if query.matches_all:
            return {"match_all": {}}
        return {"query_string": {"query": query.query, "lenient": True}}

    def prefix(self, query: Prefix) -> Json:
        target, text = self._target(query.field, query.prefix)
        return {"prefix": {target: text}}

    def wildcard(self, query: Wildcard) -> Json:
        target, text = self._target(query.field, query.pattern)
        return {"wildcard": {target: {"value": text}}}

    def terms(self, query: Terms) -> Json:
        subs = []
        for field, value in query.terms.items():
            sub = self._term(field, value)
            if sub is None:
                if query.match_all:
                    return self.match_none()
                continue
            subs.append(sub)
        if not subs:
            return self.match_none()
        if query.match_all:
            return {"bool": {"filter": subs}}
        return {"bool": {"should": subs, "minimum_should_match": 1}}

    def term_in_list(self, query: TermInList) -> Json:
        subs = [s for s in (self._term(query.field, v) for v in query.values) if s is not None]
        if not subs:
            return self.match_none()
        return {"bool": {"should": subs, "minimum_should_match": 1}}

    def tagged(self, query: Tagged) -> Json:
        subs = [s for s in (self._term(query.field, t) for t in query.tags) if s is not None]
        if not subs or len(subs) != len(query.tags):
            return self.match_none()
        return {"bool": {"filter": subs}}

    def similar(self, query: Similar) -> Json:
        if not query.fields or not query.text.strip():
            return self.match_none()
        like: Json = {
            "more_like_this": {
                "fields": list(query.fields),
                "like": query.text,
                "min_term_freq": 1,
                "min_doc_freq": 1,
                "max_query_terms": MAX_SIMILAR_TERMS,
            }
        }
        if query.exclude_id:
            return {"bool": {"must": [like], "must_not": [{"term": {"id": query.exclude_id}}]}}
        return like

    def nearby(self, query: Nearby) -> Json:
        text = self.full_text(FullText(query=query.query))
        return {
            "bool": {
                "must": [text],
                "filter": [
                    {
                        "geo_distance": {
                            "distance": f"{query.radius_km}km",
                            self._geo_field: {"lat": query.lat, "lon": query.lng},
                        }
                    }
                ],
            }
        }


class ElasticsearchBackend(SearchBackend):
    """Search backend storing each namespace in its own Elasticsearch index."""

    def __init__(
        self,
        *,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        refresh: str = "false",
        shards: int = 1,
        replicas: int = 0,
        purge_interval: float = 60.0,
        geo_field: str = "latlng",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.refresh = refresh
        self.shards = shards
        self.replicas = replicas
        self.purge_interval = purge_interval
        self.geo_field = geo_field
        self._clock = clock
        self._translator = ElasticsearchTranslator(geo_field=geo_field)
        self._http: Optional[httpx.Client] = None
        self._known: Set[str] = set()
        self._mappings: Dict[str, Json] = {}
        self._last_purge: Dict[str, float] = {}
        self._lock = threading.Lock()

    # ----- HTTP plumbing -----

    def _client(self) -> httpx.Client:
        auth = (self.username, self.password or "") if self.username else None
        return httpx.Client(
            base_url=self.base_url,
            auth=auth,
            timeout=self.timeout,
            verify=self.verify_ssl,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )

    def _conn(self) -> httpx.Client:
        with self._lock:
            if self._http is None:
                self._http = self._client()
            return self._http

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self._conn().request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"{method} {path} failed: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise BackendUnavailable(
                f"{method} {path} returned {resp.status_code}: {_error_reason(resp)}"
            )
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response, *, allow: Sequence[int] = ()) -> None:
        if resp.status_code >= 400 and resp.status_code not in allow:
            raise SearchError(
                f"{resp.request.method} {resp.request.url.path} returned "
                f"{resp.status_code}: {_error_reason(resp)}"
            )

    def close(self) -> None:
        with self._lock:
            if self._http is not None:
                self._http.close()
                self._http = None

    # ----- Namespace management -----

    def ensure_namespace(self, namespace: str) -> None:
        if namespace in self._known:
            return
        resp = self._request("HEAD", f"/{namespace}")
        if resp.status_code == 404:
            body = index_body(geo_field=self.geo_field, shards=self.shards, replicas=self.replicas)
            resp = self._request("PUT", f"/{namespace}", json=body)
            if resp.status_code == 400 and "resource_already_exists" in resp.text:
                pass
            else:
                self._raise_for_status(resp)
                logger.debug("Created elasticsearch index %s", namespace)
        else:
            self._raise_for_status(resp)
        with self._lock:
            self._known.add(namespace)

    def drop_namespace(self, namespace: str) -> None:
        resp = self._request("DELETE", f"/{namespace}")
        self._raise_for_status(resp, allow=(404,))
        with self._lock:
            self._known.discard(namespace)
            self._mappings.pop(namespace, None)
            self._last_purge.pop(namespace, None)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _maybe_purge(self, namespace: str) -> None:
        now = self._clock()
        with self._lock:
            last = self._last_purge.get(namespace)
            if last is not None and now - last < self.purge_interval:
                return
            self._last_purge[namespace] = now
        body = {"query": {"range": {SYS_EXPIRES: {"lte": self._now_ms()}}}}
        try:
            resp = self._request(
                "POST",
                f"/{namespace}/_delete_by_query",
                params={"conflicts": "proceed"},
                json=body,
            )
        except BackendUnavailable as exc:
            logger.warning("Expiry purge of %s skipped: %s", namespace, exc)
            return
        if resp.status_code < 400:
            deleted = resp.json().get("deleted", 0)
            if deleted:
                logger.debug("Purged %d expired entries from %s", deleted, namespace)
        elif resp.status_code != 404:
            logger.warning("Expiry purge of %s failed: %s", namespace, _error_reason(resp))

    # ----- Writes -----

    def _es_source(self, doc: IndexDocument) -> Json:
        source = doc.source()
        for name, value in doc.fields.items():
            if isinstance(value, GeoPoint):
                source[name] = {"lat": value.lat, "lon": value.lng}
        sys_fields: Json = {"key": doc.key}
        if doc.expires_at:
            sys_fields["expires"] = int(doc.expires_at)
        source[RESERVED_FIELD] = sys_fields
        return source

    def _bulk(self, lines: List[Json], *, deleting: bool) -> List[BatchFailure]:
        payload = "\n".join(json.dumps(line) for line in lines) + "\n"
        resp = self._request(
            "POST",
            "/_bulk",
            params={"refresh": self.refresh},
            content=payload.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        self._raise_for_status(resp)
        data = resp.json()
        failures: List[BatchFailure] = []
        for item in data.get("items", []):
            result = next(iter(item.values()), {})
            status = int(result.get("status", 200))
            if status < 300 or (deleting and status == 404):
                continue
            error = result.get("error")
            reason = error.get("reason") if isinstance(error, dict) else str(error or status)
            failures.append(
                BatchFailure(
                    key=str(result.get("_id")),
                    reason=f"{status}: {reason}",
                    retryable=status == 429 or status >= 500,
                )
            )
        return failures

    def upsert(self, namespace: str, docs: Sequence[IndexDocument]) -> List[BatchFailure]:
        if not docs:
            return []
        self.ensure_namespace(namespace)
        lines: List[Json] = []
        for doc in docs:
            lines.append({"index": {"_index": namespace, "_id": doc.key}})
            lines.append(self._es_source(doc))
        failures = self._bulk(lines, deleting=False)
        self._maybe_purge(namespace)
        return failures

    def delete(self, namespace: str, keys: Iterable[str]) -> List[BatchFailure]:
        lines = [{"delete": {"_index": namespace, "_id": key}} for key in keys]
        if not lines:
            return []
        failures = self._bulk(lines, deleting=True)
        self._maybe_purge(namespace)
        return failures

    # ----- Reads -----

    def _scoped(self, query: QueryDescriptor) -> Json:
        native = self._translator.translate(query)
        scoped: Json = {
            "must": [native],
            "must_not": [{"range": {SYS_EXPIRES: {"lte": self._now_ms()}}}],
        }
        if query.type_filter:
            scoped["filter"] = [{"term": {"type": query.type_filter}}]
        return {"bool": scoped}

    def _field_mapping(self, namespace: str, field: str) -> Json:
        props = self._mappings.get(namespace)
        if props is None or field not in props:
            resp = self._request("GET", f"/{namespace}/_mapping")
            if resp.status_code == 404:
                return {}
            self._raise_for_status(resp)
            data = resp.json().get(namespace, {})
            props = data.get("mappings", {}).get("properties", {})
            self._mappings[namespace] = props
        return props.get(field, {})

    def _sort(self, namespace: str, query: QueryDescriptor, ordering: Ordering) -> List[Json]:
        if ordering.by is OrderBy.SCORE:
            return [{"_score": "desc"}, {"id": "asc"}]
        if ordering.by is OrderBy.DISTANCE and isinstance(query, Nearby):
            geo = {
                self.geo_field: {"lat": query.lat, "lon": query.lng},
                "order": "asc",
                "unit": "km",
            }
            return [{"_geo_distance": geo}, {"id": "asc"}]
        direction = "asc" if ordering.ascending else "desc"
        if ordering.by is OrderBy.ID or not ordering.field:
            return [{"id": direction}]
        field = ordering.field
        mapping = self._field_mapping(namespace, field)
        if mapping.get("type") == "text" and "raw" in mapping.get("fields", {}):
            field = f"{field}.raw"
        clause = {"order": direction, "missing": "_last", "unmapped_type": "keyword"}
        return [{field: clause}, {"id": "asc"}]

    @staticmethod
    def _to_hit(raw: Json, ordering: Ordering) -> RawHit:
        source = dict(raw.get("_source") or {})
        source.pop(RESERVED_FIELD, None)
        for name, value in source.items():
            if isinstance(value, dict) and set(value) == {"lat", "lon"}:
                source[name] = {"lat": value["lat"], "lng": value["lon"]}
        distance = None
        if ordering.by is OrderBy.DISTANCE and raw.get("sort"):
            distance = float(raw["sort"][0])
        return RawHit(source=source, score=raw.get("_score"), distance_km=distance)

    def search(self, namespace: str, query: QueryDescriptor, pager: Pager) -> SearchPage:
        ordering = ordering_for(query, pager)
        limit = pager.limit or 1
        body: Json = {
            "query": self._scoped(query),
            # One extra hit tells whether another page follows
            "size": limit + 1,
            "sort": self._sort(namespace, query, ordering),
            "track_total_hits": True,
        }
        if pager.cursor:
            body["search_after"] = decode_cursor(pager.cursor)
        else:
            body["from"] = pager.offset
        resp = self._request("POST", f"/{namespace}/_search", json=body)
        if resp.status_code == 404:
            return SearchPage()
        self._raise_for_status(resp)
        hits_block = resp.json().get("hits", {})
        total = hits_block.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)
        raw_hits = hits_block.get("hits", [])
        window = raw_hits[:limit]
        next_cursor = None
        if len(raw_hits) > limit and window:
            next_cursor = encode_cursor(window[-1].get("sort", []))
        return SearchPage(
            hits=[self._to_hit(h, ordering) for h in window],
            total=int(total),
            next_cursor=next_cursor,
        )

    def get(self, namespace: str, id_: str) -> Optional[RawHit]:
        page = self.search(namespace, ById(id=id_), Pager(limit=1))
        return page.hits[0] if page.hits else None

    def count(self, namespace: str, query: QueryDescriptor) -> Optional[int]:
        resp = self._request("POST", f"/{namespace}/_count", json={"query": self._scoped(query)})
        if resp.status_code == 404:
            return 0
        self._raise_for_status(resp)
        data = resp.json()
        shards = data.get("_shards") or {}
        if shards.get("failed"):
            logger.warning("Count on %s incomplete: %s shard(s) failed", namespace, shards["failed"])
            return None
        count = data.get("count")
        return count if isinstance(count, int) else None


def _error_reason(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("reason") or error.get("type") or error)
    return str(error or data)[:200]
