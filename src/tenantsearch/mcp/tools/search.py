"""Search tools for FastMCP.

Thin wrappers over `SearchFacade`: objects travel as plain JSON dicts and are
indexed through `SearchableModel`, so any ``id``/``type`` record with extra
properties can be stored and searched.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from fastmcp import FastMCP

from tenantsearch.facade import SearchFacade
from tenantsearch.indexing import BatchReport
from tenantsearch.models import ResultSet, SearchableModel
from tenantsearch.pager import Pager
from tenantsearch.queries import build_query


def _dump(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, SearchableModel):
        return obj.model_dump(mode="json", exclude_none=True)
    return dict(vars(obj))


def _pager_dict(pager: Pager) -> Dict[str, Any]:
    return {
        "page": pager.page,
        "limit": pager.limit,
        "count": pager.count,
        "sort_field": pager.sort_field,
        "sort_ascending": pager.sort_ascending,
        "next_cursor": pager.next_cursor,
    }


def _result_dict(result: ResultSet[Any]) -> Dict[str, Any]:
    assert result.pager is not None
    return {
        "items": [_dump(item) for item in result.items],
        "pager": _pager_dict(result.pager),
        "dropped": result.dropped,
    }


def _report_dict(report: BatchReport) -> Dict[str, Any]:
    return {
        "namespace": report.namespace,
        "succeeded": report.succeeded,
        "failures": [
            {"key": f.key, "reason": f.reason, "retryable": f.retryable} for f in report.failures
        ],
    }


def register_search_tools(mcp: FastMCP, get_state: Callable[[], Any]) -> None:
    """Register search tools on the given FastMCP instance.

    Uses state.facade, built from state.settings at startup.
    """

    async def _call(method: str, *args: Any, **kwargs: Any) -> Any:
        # The facade blocks on backend I/O; keep it off the event loop
        facade = _facade()
        return await asyncio.to_thread(partial(getattr(facade, method), *args, **kwargs))

    def _facade() -> SearchFacade:
        state = get_state()
        facade = getattr(state, "facade", None)
        if facade is None:
            raise RuntimeError("Search is not configured. Check the TENANTSEARCH_SEARCH__* settings.")
        return facade

    @mcp.tool
    async def index_object(
        obj: Dict[str, Any], *, appid: Optional[str] = None, ttl_ms: int = 0
    ) -> Dict[str, Any]:
        """Index (or reindex) one object.

        Parameters
        ----------
        obj: dict
            The object; must carry "id" and "type". Other keys become searchable fields.
        appid: str | None
            Tenant to write to; the default tenant when omitted.
        ttl_ms: int
            When > 0, the object disappears from search after this many milliseconds.
        """
        model = SearchableModel.model_validate(obj)
        await _call("index", model, ttl_ms, appid=appid)
        return {"indexed": True, "id": model.id, "type": model.type}

    @mcp.tool
    async def index_objects(
        objects: List[Dict[str, Any]], *, appid: Optional[str] = None, ttl_ms: int = 0
    ) -> Dict[str, Any]:
        """Index many objects; failures are reported per object instead of aborting."""
        models = [SearchableModel.model_validate(o) for o in objects]
        report = await _call("index_all", models, ttl_ms, appid=appid)
        return _report_dict(report)

    @mcp.tool
    async def unindex_object(id: str, type: str, *, appid: Optional[str] = None) -> Dict[str, Any]:
        """Remove an object from the index. Removing an absent object is not an error."""
        await _call("unindex", SearchableModel(id=id, type=type), appid=appid)
        return {"unindexed": True, "id": id, "type": type}

    @mcp.tool
    async def find_by_id(id: str, *, appid: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Fetch an indexed object by id, or null when it is not indexed."""
        found = await _call("find_by_id", id, appid=appid)
        return _dump(found) if found is not None else None

    @mcp.tool
    async def find_objects(
        shape: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        type: Optional[str] = None,
        appid: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort_field: Optional[str] = None,
        sort_ascending: bool = True,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run a search and return one page of results.

        Parameters
        ----------
        shape: str
            One of: by_id, full_text, prefix, wildcard, terms, term_in_list,
            tagged, similar, nearby, tags.
        params: dict | None
            Shape parameters, e.g. {"query": "foo"} for full_text,
            {"field": "name", "prefix": "al"} for prefix,
            {"lat": 0, "lng": 0, "radius_km": 5} for nearby.
        cursor: str | None
            The "next_cursor" of a previous page; takes precedence over page.
        """
        query = build_query(shape, params or {}, type)
        pager = Pager(
            page=page,
            limit=limit,
            sort_field=sort_field,
            sort_ascending=sort_ascending,
            cursor=cursor,
        )
        return _result_dict(await _call("find", query, pager, appid=appid))

    @mcp.tool
    async def get_count(
        type: Optional[str] = None,
        terms: Optional[Dict[str, Any]] = None,
        *,
        appid: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Count indexed objects of a type (all types when omitted) matching every term.

        "count" is null when the backend could not compute it.
        """
        return {"count": await _call("get_count", type, terms, appid=appid)}
