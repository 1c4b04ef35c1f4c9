"""Search backends and the factory that builds one from settings."""

from __future__ import annotations

import time
from typing import Callable

from tenantsearch.backends.base import (
    BatchFailure,
    IndexDocument,
    RawHit,
    SearchBackend,
    SearchPage,
)
from tenantsearch.config import Settings
from tenantsearch.exceptions import ConfigurationError


def create_backend(settings: Settings, *, clock: Callable[[], float] = time.time) -> SearchBackend:
    """Instantiate the backend named by ``settings.search.backend``."""
    name = settings.search.backend
    if name == "whoosh":
        from tenantsearch.backends.whoosh_backend import WhooshBackend

        return WhooshBackend(
            settings.whoosh.index_dir, geo_field=settings.search.geo_field, clock=clock
        )
    if name == "elasticsearch":
        from tenantsearch.backends.elasticsearch import ElasticsearchBackend

        cfg = settings.elasticsearch
        if not cfg.url:
            raise ConfigurationError("Elasticsearch backend selected but no URL configured")
        return ElasticsearchBackend(
            base_url=cfg.url,
            username=cfg.username,
            password=cfg.password,
            timeout=cfg.timeout,
            verify_ssl=cfg.verify_ssl,
            refresh=cfg.refresh,
            shards=cfg.shards,
            replicas=cfg.replicas,
            purge_interval=cfg.purge_interval,
            geo_field=settings.search.geo_field,
            clock=clock,
        )
    raise ConfigurationError(f"Unknown search backend: {name!r}")


__all__ = [
    "BatchFailure",
    "IndexDocument",
    "RawHit",
    "SearchBackend",
    "SearchPage",
    "create_backend",
]
