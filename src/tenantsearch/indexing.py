"""Indexing engine: writes domain objects into (and removes them from) a namespace.

Single-object operations surface backend failures to the caller. Batch
operations are best effort: they are chunked, chunks may run in parallel,
and every entry that could not be applied is reported individually in a
`BatchReport` instead of aborting the rest of the batch.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple, TypeVar

from tenantsearch.backends.base import BatchFailure, IndexDocument, SearchBackend, document_key
from tenantsearch.exceptions import (
    BackendUnavailable,
    PartialBatchFailure,
    SearchError,
    ValidationError,
)
from tenantsearch.models import Searchable, as_geo_point, is_valid_field_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class BatchReport:
    """Outcome of a batch operation: how many entries applied, and which did not."""

    namespace: str
    succeeded: int = 0
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_keys(self) -> List[str]:
        return [f.key for f in self.failures]

    def raise_for_failures(self) -> None:
        """Raise `PartialBatchFailure` if any entry failed."""
        if self.failures:
            raise PartialBatchFailure(self)


def _describe(obj: Any) -> str:
    return document_key(str(getattr(obj, "type", None)), str(getattr(obj, "id", None)))


class IndexingEngine:
    """Projects searchable objects into index documents and applies them to a backend."""

    def __init__(
        self,
        backend: SearchBackend,
        *,
        batch_size: int = 500,
        max_workers: int = 4,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._batch_size = max(1, batch_size)
        self._max_workers = max(1, max_workers)
        self._clock = clock

    # ----- Projection -----

    @staticmethod
    def _identity(obj: Any) -> Tuple[str, str]:
        if not isinstance(obj, Searchable):
            raise ValidationError(f"Object of type {type(obj).__name__} is not searchable")
        id_, type_ = obj.id, obj.type
        if id_ is None or not str(id_).strip():
            raise ValidationError(f"Cannot index {_describe(obj)}: missing id")
        if type_ is None or not str(type_).strip():
            raise ValidationError(f"Cannot index {_describe(obj)}: missing type")
        return str(id_), str(type_)

    def to_document(self, obj: Searchable, ttl_ms: int = 0) -> IndexDocument:
        """Build the index document for `obj`, validating identity and TTL."""
        id_, type_ = self._identity(obj)
        if ttl_ms is None:
            ttl_ms = 0
        if ttl_ms < 0:
            raise ValidationError(f"TTL must not be negative, got {ttl_ms}")
        fields: Dict[str, Any] = {}
        for name, value in obj.indexable_fields().items():
            if name in ("id", "type") or value is None:
                continue
            if not is_valid_field_name(name):
                logger.debug("Skipping field %r of %s: not a valid field name", name, type_)
                continue
            point = as_geo_point(value)
            fields[name] = point if point is not None else value
        fields["id"] = id_
        fields["type"] = type_
        expires_at = int(self._clock() * 1000) + int(ttl_ms) if ttl_ms > 0 else None
        return IndexDocument(id=id_, type=type_, fields=fields, expires_at=expires_at)

    # ----- Single operations -----

    def index(self, namespace: str, obj: Searchable, ttl_ms: int = 0) -> None:
        doc = self.to_document(obj, ttl_ms)
        failures = self._backend.upsert(namespace, [doc])
        if failures:
            _raise_single(failures[0])

    def unindex(self, namespace: str, obj: Searchable) -> None:
        id_, type_ = self._identity(obj)
        failures = self._backend.delete(namespace, [document_key(type_, id_)])
        if failures:
            _raise_single(failures[0])

    # ----- Batch operations -----

    def index_all(
        self, namespace: str, objects: Iterable[Searchable], ttl_ms: int = 0
    ) -> BatchReport:
        report = BatchReport(namespace=namespace)
        docs: List[Tuple[str, IndexDocument]] = []
        for obj in objects:
            try:
                doc = self.to_document(obj, ttl_ms)
            except ValidationError as exc:
                report.failures.append(BatchFailure(_describe(obj), str(exc)))
                continue
            docs.append((doc.key, doc))
        return self._run_batch(namespace, docs, self._backend.upsert, report)

    def unindex_all(self, namespace: str, objects: Iterable[Searchable]) -> BatchReport:
        report = BatchReport(namespace=namespace)
        keys: List[Tuple[str, str]] = []
        for obj in objects:
            try:
                id_, type_ = self._identity(obj)
            except ValidationError as exc:
                report.failures.append(BatchFailure(_describe(obj), str(exc)))
                continue
            key = document_key(type_, id_)
            keys.append((key, key))
        return self._run_batch(namespace, keys, self._backend.delete, report)

    def _run_batch(
        self,
        namespace: str,
        entries: List[Tuple[str, T]],
        op: Callable[[str, Sequence[T]], List[BatchFailure]],
        report: BatchReport,
    ) -> BatchReport:
        chunks = [
            entries[i : i + self._batch_size] for i in range(0, len(entries), self._batch_size)
        ]

        def apply(chunk: List[Tuple[str, T]]) -> List[BatchFailure]:
            try:
                return op(namespace, [payload for _, payload in chunk])
            except BackendUnavailable as exc:
                return [BatchFailure(key, str(exc), retryable=True) for key, _ in chunk]
            except SearchError as exc:
                return [BatchFailure(key, str(exc)) for key, _ in chunk]

        if len(chunks) > 1 and self._max_workers > 1:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(chunks))) as pool:
                results = list(pool.map(apply, chunks))
        else:
            results = [apply(chunk) for chunk in chunks]

        for failures in results:
            report.failures.extend(failures)
        report.succeeded = len(entries) - sum(len(f) for f in results)
        if report.failures:
            logger.warning(
                "Batch operation on %s: %d of %d entries failed",
                namespace,
                len(report.failures),
                len(report.failures) + report.succeeded,
                extra={
                    "namespace": namespace,
                    "failed": len(report.failures),
                    "keys": report.failed_keys[:50],
                },
            )
        return report


def _raise_single(failure: BatchFailure) -> None:
    if failure.retryable:
        raise BackendUnavailable(f"{failure.key}: {failure.reason}")
    raise SearchError(f"{failure.key}: {failure.reason}")
