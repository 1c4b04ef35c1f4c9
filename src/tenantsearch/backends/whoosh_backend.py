"""Embedded search backend built on Whoosh.

Each tenant namespace is a separate Whoosh index inside one storage: a
`FileStorage` directory, or `RamStorage` when no directory is configured.
Documents have an open set of fields, so the schema grows on demand: the
first value seen for a field decides how it is mapped.

  * ``id``/``type``: ``ID`` (exact case)
  * str ``f``: ``TEXT`` with a stemming analyzer, plus ``f.raw`` ``ID`` holding
    the lowercased value for exact, prefix and wildcard matching
  * int/float: ``NUMERIC`` (64-bit float)
  * bool: ``BOOLEAN``
  * list of str: ``KEYWORD`` (comma separated, lowercased)
  * GeoPoint ``f``: ``NUMERIC`` ``f.lat`` and ``f.lng``

The whole projection is stored as JSON in ``sys.source``. Expiry is
carried in ``sys.expires`` (epoch millis): expired entries are masked out of
every query and purged on the next commit to the namespace.

Whoosh has no search-after or geo distance support, so this backend
collects all matches of a query, orders them in process and slices the
requested page. That suits the embedded use this backend is meant for.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from functools import cmp_to_key
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from whoosh import query as wq
from whoosh import scoring
from whoosh.analysis import StemmingAnalyzer
from whoosh.fields import BOOLEAN, ID, KEYWORD, NUMERIC, STORED, TEXT, FieldType, Schema
from whoosh.filedb.filestore import FileStorage, RamStorage
from whoosh.index import Index, LockError
from whoosh.qparser import MultifieldParser, OrGroup
from whoosh.searching import Searcher

from tenantsearch.backends.base import (
    EARTH_RADIUS_KM,
    BatchFailure,
    IndexDocument,
    RawHit,
    SearchBackend,
    SearchPage,
    haversine_km,
    value_kind,
)
from tenantsearch.exceptions import BackendUnavailable, ValidationError
from tenantsearch.models import is_valid_field_name
from tenantsearch.pager import Pager, decode_cursor, encode_cursor
from tenantsearch.queries import (
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
from tenantsearch.translator import (
    EXACT_FIELDS,
    OrderBy,
    Ordering,
    QueryTranslator,
    normalize_term,
    ordering_for,
)

logger = logging.getLogger(__name__)

SYS_KEY = "sys.key"
SYS_SOURCE = "sys.source"
SYS_EXPIRES = "sys.expires"
RAW = ".raw"
LAT = ".lat"
LNG = ".lng"

# Upper bound on terms taken from the reference text per field in similarity queries
MAX_SIMILAR_TERMS = 25

KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180.0


def _base_schema() -> Schema:
    return Schema(
        **{
            SYS_KEY: ID(stored=True, unique=True),
            SYS_SOURCE: STORED(),
            SYS_EXPIRES: NUMERIC(numtype=int, bits=64, stored=True),
            "id": ID(stored=True, sortable=True),
            "type": ID(stored=True),
        }
    )


def _field_types(name: str, kind: str) -> List[Tuple[str, FieldType]]:
    if kind == "text":
        return [(name, TEXT(analyzer=StemmingAnalyzer())), (name + RAW, ID())]
    if kind == "numeric":
        return [(name, NUMERIC(numtype=float, bits=64))]
    if kind == "boolean":
        return [(name, BOOLEAN())]
    if kind == "keyword":
        return [(name, KEYWORD(lowercase=True, commas=True, scorable=True))]
    if kind == "geo":
        return [
            (name + LAT, NUMERIC(numtype=float, bits=64)),
            (name + LNG, NUMERIC(numtype=float, bits=64)),
        ]
    raise ValueError(f"Unknown field kind: {kind}")


def _field_values(name: str, kind: str, value: Any) -> Dict[str, Any]:
    if kind == "text":
        if not value.strip():
            return {}
        return {name: value, name + RAW: value.lower()}
    if kind == "numeric":
        return {name: float(value)}
    if kind == "boolean":
        return {name: bool(value)}
    if kind == "keyword":
        tags = [str(v).replace(",", " ").strip() for v in value]
        joined = ",".join(t for t in tags if t)
        return {name: joined} if joined else {}
    if kind == "geo":
        return {name + LAT: float(value.lat), name + LNG: float(value.lng)}
    return {}


def field_kind(schema: Schema, name: str) -> Optional[str]:
    """Return how `name` is mapped in `schema`, or None if it is not searchable."""
    if name in EXACT_FIELDS:
        return "exact"
    if name in schema:
        ftype = schema[name]
        if isinstance(ftype, TEXT):
            return "text"
        if isinstance(ftype, NUMERIC):
            return "numeric"
        if isinstance(ftype, BOOLEAN):
            return "boolean"
        if isinstance(ftype, KEYWORD):
            return "keyword"
        return None
    if name + LAT in schema:
        return "geo"
    return None


def _text_fields(schema: Schema) -> List[str]:
    return [
        name
        for name in schema.names()
        if isinstance(schema[name], (TEXT, KEYWORD))
    ]


class WhooshTranslator(QueryTranslator[wq.Query]):
    """Builds Whoosh queries against the current schema of one namespace."""

    def __init__(self, schema: Schema, *, geo_field: str) -> None:
        self._schema = schema
        self._geo_field = geo_field

    def match_none(self) -> wq.Query:
        return wq.NullQuery

    def by_id(self, query: ById) -> wq.Query:
        return wq.Term("id", query.id)

    def full_text(self, query: FullText) -> wq.Query:
        if query.matches_all:
            return wq.Every()
        fields = _text_fields(self._schema)
        if not fields:
            return wq.NullQuery
        parser = MultifieldParser(fields, schema=self._schema, group=OrGroup)
        try:
            return parser.parse(query.query)
        except Exception:
            # On parse failure, fall back to raw string as a phrase query
            return parser.parse('"' + query.query.replace('"', " ") + '"')

    def _pattern_target(self, field: str, text: str) -> Optional[Tuple[str, str]]:
        kind = field_kind(self._schema, field)
        if kind == "text":
            return field + RAW, text.lower()
        if kind == "keyword":
            return field, text.lower()
        if kind == "exact":
            return field, text
        return None

    def prefix(self, query: Prefix) -> wq.Query:
        target = self._pattern_target(query.field, query.prefix)
        if target is None:
            return wq.NullQuery
        return wq.Prefix(*target)

    def wildcard(self, query: Wildcard) -> wq.Query:
        target = self._pattern_target(query.field, query.pattern)
        if target is None:
            return wq.NullQuery
        return wq.Wildcard(*target)

    def _term(self, field: str, value: Any) -> Optional[wq.Query]:
        kind = field_kind(self._schema, field)
        if value is None or kind is None:
            return None
        if kind == "exact":
            return wq.Term(field, str(value))
        if kind == "boolean":
            if isinstance(value, bool):
                return wq.Term(field, value)
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return wq.Term(field, value.lower() == "true")
            return None
        if kind == "numeric":
            if isinstance(value, bool):
                return None
            try:
                number = float(value)
            except (TypeError, ValueError):
                return None
            return wq.NumericRange(field, number, number)
        if isinstance(value, str):
            if kind == "text":
                return wq.Term(field + RAW, normalize_term(field, value))
            if kind == "keyword":
                return wq.Term(field, normalize_term(field, value))
        return None

    def terms(self, query: Terms) -> wq.Query:
        subs: List[wq.Query] = []
        for field, value in query.terms.items():
            sub = self._term(field, value)
            if sub is None:
                if query.match_all:
                    return wq.NullQuery
                continue
            subs.append(sub)
        if not subs:
            return wq.NullQuery
        if len(subs) == 1:
            return subs[0]
        return wq.And(subs) if query.match_all else wq.Or(subs)

    def term_in_list(self, query: TermInList) -> wq.Query:
        subs = []
        for value in query.values:
            sub = self._term(query.field, value)
            if sub is not None:
                subs.append(sub)
        if not subs:
            return wq.NullQuery
        return wq.Or(subs)

    def tagged(self, query: Tagged) -> wq.Query:
        subs = []
        for tag in query.tags:
            sub = self._term(query.field, tag)
            if sub is None:
                return wq.NullQuery
            subs.append(sub)
        if not subs:
            return wq.NullQuery
        return wq.And(subs) if len(subs) > 1 else subs[0]

    def similar(self, query: Similar) -> wq.Query:
        subs: List[wq.Query] = []
        for field in query.fields:
            kind = field_kind(self._schema, field)
            if kind == "text":
                analyzer = self._schema[field].analyzer
                words = [token.text for token in analyzer(query.text)]
            elif kind == "keyword":
                words = [w.strip(",.;:!?").lower() for w in query.text.split()]
            else:
                continue
            seen: List[str] = []
            for word in words:
                if word and word not in seen:
                    seen.append(word)
            subs.extend(wq.Term(field, word) for word in seen[:MAX_SIMILAR_TERMS])
        if not subs:
            return wq.NullQuery
        like: wq.Query = wq.Or(subs)
        if query.exclude_id:
            like = wq.AndNot(like, wq.Term("id", query.exclude_id))
        return like

    def nearby(self, query: Nearby) -> wq.Query:
        if field_kind(self._schema, self._geo_field) != "geo":
            return wq.NullQuery
        box = self._bounding_box(query)
        if query.matches_all:
            return box
        text = self.full_text(FullText(query=query.query))
        if text is wq.NullQuery:
            return wq.NullQuery
        return wq.And([box, text])

    def _bounding_box(self, query: Nearby) -> wq.Query:
        # Coarse pre-filter; exact distances are checked after collection
        lat_f, lng_f = self._geo_field + LAT, self._geo_field + LNG
        dlat = query.radius_km / KM_PER_DEGREE + 1e-9
        lat_lo, lat_hi = query.lat - dlat, query.lat + dlat
        lat_range = wq.NumericRange(lat_f, max(-90.0, lat_lo), min(90.0, lat_hi))
        cos_lat = math.cos(math.radians(query.lat))
        if lat_lo <= -90.0 or lat_hi >= 90.0 or cos_lat < 1e-6:
            return lat_range
        dlng = dlat / cos_lat
        if dlng >= 180.0:
            return lat_range
        lng_lo, lng_hi = query.lng - dlng, query.lng + dlng
        if lng_lo < -180.0:
            lng_range: wq.Query = wq.Or(
                [
                    wq.NumericRange(lng_f, -180.0, lng_hi),
                    wq.NumericRange(lng_f, lng_lo + 360.0, 180.0),
                ]
            )
        elif lng_hi > 180.0:
            lng_range = wq.Or(
                [
                    wq.NumericRange(lng_f, lng_lo, 180.0),
                    wq.NumericRange(lng_f, -180.0, lng_hi - 360.0),
                ]
            )
        else:
            lng_range = wq.NumericRange(lng_f, lng_lo, lng_hi)
        return wq.And([lat_range, lng_range])


def _value_key(value: Any) -> List[Any]:
    if value is None:
        return [9, ""]
    if isinstance(value, bool):
        return [2, int(value)]
    if isinstance(value, (int, float)):
        return [0, float(value)]
    if isinstance(value, str):
        return [1, value.lower()]
    if isinstance(value, list):
        return [1, ",".join(sorted(str(v).lower() for v in value))]
    return [3, json.dumps(value, sort_keys=True)]


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def sort_key(hit: RawHit, ordering: Ordering) -> List[Any]:
    """A JSON-serializable key of `hit` under `ordering` (also used as cursor)."""
    id_ = str(hit.source.get("id", ""))
    if ordering.by is OrderBy.SCORE:
        return [float(hit.score or 0.0), id_]
    if ordering.by is OrderBy.DISTANCE:
        return [float(hit.distance_km or 0.0), id_]
    if ordering.by is OrderBy.FIELD:
        return [_value_key(hit.source.get(ordering.field or "")), id_]
    return [id_]


def compare_keys(a: Sequence[Any], b: Sequence[Any], ordering: Ordering) -> int:
    if ordering.by is OrderBy.ID:
        c = _cmp(a[0], b[0])
        return c if ordering.ascending else -c
    if ordering.by is OrderBy.SCORE:
        c = -_cmp(a[0], b[0])
    elif ordering.by is OrderBy.DISTANCE:
        c = _cmp(a[0], b[0])
    else:
        missing_a, missing_b = a[0][0] == 9, b[0][0] == 9
        if missing_a or missing_b:
            # Missing values sort last in both directions
            c = _cmp(missing_a, missing_b)
        else:
            c = _cmp(list(a[0]), list(b[0]))
            if not ordering.ascending:
                c = -c
    if c:
        return c
    return _cmp(a[-1], b[-1])


def paginate(hits: List[RawHit], ordering: Ordering, pager: Pager) -> SearchPage:
    """Order `hits` and cut out the page `pager` asks for."""
    keyed = [(sort_key(h, ordering), h) for h in hits]
    keyed.sort(key=cmp_to_key(lambda x, y: compare_keys(x[0], y[0], ordering)))
    limit = pager.limit or 1
    if pager.cursor:
        after = decode_cursor(pager.cursor)
        try:
            start = next(
                (i for i, (k, _) in enumerate(keyed) if compare_keys(k, after, ordering) > 0),
                len(keyed),
            )
        except (IndexError, TypeError) as exc:
            raise ValidationError("Pagination cursor does not match the query ordering") from exc
    else:
        start = pager.offset
    window = keyed[start : start + limit]
    next_cursor = None
    if window and start + limit < len(keyed):
        next_cursor = encode_cursor(window[-1][0])
    return SearchPage(hits=[h for _, h in window], total=len(keyed), next_cursor=next_cursor)


class WhooshBackend(SearchBackend):
    """Search backend storing one Whoosh index per namespace."""

    def __init__(
        self,
        index_dir: Optional[str] = None,
        *,
        geo_field: str = "latlng",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if index_dir:
            os.makedirs(index_dir, exist_ok=True)
            self._storage = FileStorage(index_dir)
        else:
            self._storage = RamStorage()
        self._geo_field = geo_field
        self._clock = clock
        self._indexes: Dict[str, Index] = {}
        self._write_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    # ----- Namespace management -----

    def _open(self, namespace: str, *, create: bool) -> Optional[Index]:
        with self._guard:
            ix = self._indexes.get(namespace)
            if ix is not None:
                return ix
            try:
                if self._storage.index_exists(indexname=namespace):
                    ix = self._storage.open_index(indexname=namespace)
                elif create:
                    ix = self._storage.create_index(_base_schema(), indexname=namespace)
                    logger.debug("Created whoosh index for namespace %s", namespace)
                else:
                    return None
            except OSError as exc:
                raise BackendUnavailable(f"Cannot open index {namespace}: {exc}") from exc
            self._indexes[namespace] = ix
            return ix

    def _write_lock(self, namespace: str) -> threading.Lock:
        with self._guard:
            return self._write_locks.setdefault(namespace, threading.Lock())

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _expired(self) -> wq.Query:
        return wq.NumericRange(SYS_EXPIRES, None, self._now_ms())

    def drop_namespace(self, namespace: str) -> None:
        with self._write_lock(namespace):
            with self._guard:
                self._indexes.pop(namespace, None)
                # Creating over an existing name replaces its table of contents
                self._storage.create_index(_base_schema(), indexname=namespace)

    def close(self) -> None:
        with self._guard:
            for ix in self._indexes.values():
                ix.close()
            self._indexes.clear()

    # ----- Writes -----

    def _write(self, namespace: str, apply: Callable[[Any], List[BatchFailure]]) -> List[BatchFailure]:
        with self._write_lock(namespace):
            ix = self._open(namespace, create=True)
            assert ix is not None
            try:
                writer = ix.writer()
            except (LockError, OSError) as exc:
                raise BackendUnavailable(f"Index {namespace} is not writable: {exc}") from exc
            try:
                failures = apply(writer)
                purged = writer.delete_by_query(self._expired())
                writer.commit()
            except OSError as exc:
                writer.cancel()
                raise BackendUnavailable(f"Write to {namespace} failed: {exc}") from exc
            except BaseException:
                writer.cancel()
                raise
        if purged:
            logger.debug("Purged %d expired entries from %s", purged, namespace)
        return failures

    def upsert(self, namespace: str, docs: Sequence[IndexDocument]) -> List[BatchFailure]:
        if not docs:
            return []

        def apply(writer: Any) -> List[BatchFailure]:
            schema = writer.schema
            new_kinds: Dict[str, str] = {}
            rows = []
            for doc in docs:
                row: Dict[str, Any] = {
                    SYS_KEY: doc.key,
                    SYS_SOURCE: json.dumps(doc.source()),
                    "id": doc.id,
                    "type": doc.type,
                }
                if doc.expires_at:
                    row[SYS_EXPIRES] = int(doc.expires_at)
                for name, value in doc.fields.items():
                    if name in EXACT_FIELDS or not is_valid_field_name(name):
                        continue
                    kind = value_kind(value)
                    if kind is None:
                        continue
                    mapped = field_kind(schema, name) or new_kinds.setdefault(name, kind)
                    if mapped != kind:
                        logger.debug(
                            "Field %s of %s is mapped as %s; skipping %s value",
                            name, doc.key, mapped, kind,
                        )
                        continue
                    row.update(_field_values(name, kind, value))
                rows.append(row)
            # Schema changes must precede the first document added by this writer
            for name, kind in new_kinds.items():
                for fname, ftype in _field_types(name, kind):
                    writer.add_field(fname, ftype)
                logger.debug("Added %s field %s to %s", kind, name, namespace)
            failures = []
            for doc, row in zip(docs, rows):
                try:
                    writer.update_document(**row)
                except (ValueError, TypeError) as exc:
                    failures.append(BatchFailure(doc.key, f"rejected by index: {exc}"))
            return failures

        return self._write(namespace, apply)

    def delete(self, namespace: str, keys: Iterable[str]) -> List[BatchFailure]:
        keys = list(keys)
        if not keys:
            return []

        def apply(writer: Any) -> List[BatchFailure]:
            for key in keys:
                writer.delete_by_term(SYS_KEY, key)
            return []

        return self._write(namespace, apply)

    # ----- Reads -----

    def _collect(self, searcher: Searcher, query: QueryDescriptor) -> List[RawHit]:
        translator = WhooshTranslator(searcher.schema, geo_field=self._geo_field)
        native = translator.translate(query)
        if native is wq.NullQuery:
            return []
        type_filter = query.type_filter
        results = searcher.search(
            native,
            limit=None,
            filter=wq.Term("type", type_filter) if type_filter else None,
            mask=self._expired(),
        )
        hits = []
        for hit in results:
            source = json.loads(hit[SYS_SOURCE])
            distance = None
            if query.shape is QueryShape.NEARBY:
                point = source.get(self._geo_field)
                if not isinstance(point, dict):
                    continue
                distance = haversine_km(query.lat, query.lng, point["lat"], point["lng"])
                if distance > query.radius_km + 1e-9:
                    continue
            hits.append(RawHit(source=source, score=hit.score, distance_km=distance))
        return hits

    def _run(self, namespace: str, query: QueryDescriptor) -> List[RawHit]:
        ix = self._open(namespace, create=False)
        if ix is None:
            return []
        try:
            with ix.searcher(weighting=scoring.BM25F()) as searcher:
                return self._collect(searcher, query)
        except OSError as exc:
            raise BackendUnavailable(f"Search in {namespace} failed: {exc}") from exc

    def search(self, namespace: str, query: QueryDescriptor, pager: Pager) -> SearchPage:
        hits = self._run(namespace, query)
        return paginate(hits, ordering_for(query, pager), pager)

    def get(self, namespace: str, id_: str) -> Optional[RawHit]:
        page = self.search(namespace, ById(id=id_), Pager(limit=1))
        return page.hits[0] if page.hits else None

    def count(self, namespace: str, query: QueryDescriptor) -> Optional[int]:
        return len(self._run(namespace, query))
