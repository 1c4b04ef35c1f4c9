"""Multi-tenant search indexing and query layer."""

from tenantsearch.config import Settings, load_settings
from tenantsearch.exceptions import (
    BackendUnavailable,
    ConfigurationError,
    HydrationFailure,
    PartialBatchFailure,
    SearchError,
    TenantSearchError,
    ValidationError,
)
from tenantsearch.facade import SearchFacade
from tenantsearch.indexing import BatchReport
from tenantsearch.models import GeoPoint, ResultSet, Searchable, SearchableModel, Tag, indexed
from tenantsearch.pager import Pager

__all__ = [
    "BackendUnavailable",
    "BatchReport",
    "ConfigurationError",
    "GeoPoint",
    "HydrationFailure",
    "Pager",
    "PartialBatchFailure",
    "ResultSet",
    "SearchError",
    "SearchFacade",
    "Searchable",
    "SearchableModel",
    "Settings",
    "Tag",
    "TenantSearchError",
    "ValidationError",
    "indexed",
    "load_settings",
]
