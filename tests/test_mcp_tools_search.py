import json
from typing import Any, Dict, List, Optional, Union

import pytest
from fastmcp import Client, FastMCP

from tenantsearch.backends.whoosh_backend import WhooshBackend
from tenantsearch.config import Settings
from tenantsearch.facade import SearchFacade
from tenantsearch.mcp.tools.search import register_search_tools


class DummyState:
    def __init__(self, configured: bool = True) -> None:
        self.settings = Settings()
        self.settings.search.default_app_id = "acme"
        self.facade: Optional[SearchFacade] = None
        if configured:
            self.facade = SearchFacade.from_settings(self.settings, backend=WhooshBackend())


def _extract_json_payload(result: Any) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
    if isinstance(result, (dict, list)):
        return result
    content = getattr(result, "content", None)
    if isinstance(content, list) and content:
        for item in content:
            text = getattr(item, "text", None)
            if isinstance(text, str):
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    continue
    raise AssertionError("Unable to extract JSON payload from tool result")


@pytest.mark.asyncio
async def test_index_find_and_count_via_tools() -> None:
    mcp = FastMCP("test")
    state = DummyState()
    register_search_tools(mcp, get_state=lambda: state)

    client = Client(mcp)
    async with client:
        res_index = await client.call_tool(
            "index_object", {"obj": {"id": "u1", "type": "user", "name": "Alice", "city": "Sofia"}}
        )
        res_batch = await client.call_tool(
            "index_objects",
            {
                "objects": [
                    {"id": "u2", "type": "user", "name": "Bob", "city": "Sofia"},
                    {"type": "user", "name": "no id"},
                ]
            },
        )
        res_find = await client.call_tool(
            "find_objects",
            {"shape": "terms", "params": {"terms": {"city": "sofia"}}, "type": "user", "limit": 1},
        )
        res_by_id = await client.call_tool("find_by_id", {"id": "u2"})
        res_count = await client.call_tool("get_count", {"type": "user"})
        res_other_tenant = await client.call_tool("get_count", {"type": "user", "appid": "other"})

    indexed = _extract_json_payload(res_index)
    assert isinstance(indexed, dict) and indexed["id"] == "u1"

    report = _extract_json_payload(res_batch)
    assert isinstance(report, dict)
    assert report["succeeded"] == 1
    assert len(report["failures"]) == 1

    page = _extract_json_payload(res_find)
    assert isinstance(page, dict)
    assert [item["id"] for item in page["items"]] == ["u1"]
    assert page["pager"]["count"] == 2
    assert page["pager"]["next_cursor"]

    found = _extract_json_payload(res_by_id)
    assert isinstance(found, dict) and found["name"] == "Bob"

    count = _extract_json_payload(res_count)
    assert isinstance(count, dict) and count["count"] == 2
    other = _extract_json_payload(res_other_tenant)
    assert isinstance(other, dict) and other["count"] == 0


@pytest.mark.asyncio
async def test_nearby_finds_objects_indexed_from_json() -> None:
    mcp = FastMCP("test")
    state = DummyState()
    register_search_tools(mcp, get_state=lambda: state)

    client = Client(mcp)
    async with client:
        await client.call_tool(
            "index_objects",
            {
                "objects": [
                    {"id": "near", "type": "venue", "latlng": {"lat": 0.001, "lng": 0.0}},
                    {"id": "far", "type": "venue", "latlng": {"lat": 1.0, "lng": 0.0}},
                ]
            },
        )
        res = await client.call_tool(
            "find_objects",
            {"shape": "nearby", "params": {"lat": 0.0, "lng": 0.0, "radius_km": 5}, "type": "venue"},
        )

    page = _extract_json_payload(res)
    assert isinstance(page, dict)
    assert [item["id"] for item in page["items"]] == ["near"]
    assert page["items"][0]["latlng"] == {"lat": 0.001, "lng": 0.0}


@pytest.mark.asyncio
async def test_unindex_and_cursor_paging_via_tools() -> None:
    mcp = FastMCP("test")
    state = DummyState()
    register_search_tools(mcp, get_state=lambda: state)

    client = Client(mcp)
    async with client:
        for i in range(3):
            await client.call_tool("index_object", {"obj": {"id": f"n{i}", "type": "note", "text": "hello"}})
        await client.call_tool("unindex_object", {"id": "n1", "type": "note"})
        first = _extract_json_payload(
            await client.call_tool("find_objects", {"shape": "prefix", "params": {"field": "id", "prefix": "n"}, "limit": 1})
        )
        assert isinstance(first, dict)
        second = _extract_json_payload(
            await client.call_tool(
                "find_objects",
                {
                    "shape": "prefix",
                    "params": {"field": "id", "prefix": "n"},
                    "limit": 1,
                    "cursor": first["pager"]["next_cursor"],
                },
            )
        )

    assert isinstance(second, dict)
    assert [item["id"] for item in first["items"]] == ["n0"]
    assert [item["id"] for item in second["items"]] == ["n2"]
    assert second["pager"]["next_cursor"] is None


@pytest.mark.asyncio
async def test_unknown_shape_is_rejected() -> None:
    mcp = FastMCP("test")
    state = DummyState()
    register_search_tools(mcp, get_state=lambda: state)

    client = Client(mcp)
    async with client:
        with pytest.raises(Exception):
            await client.call_tool("find_objects", {"shape": "fuzzy", "params": {}})


@pytest.mark.asyncio
async def test_tools_require_configured_search() -> None:
    mcp = FastMCP("test")
    state = DummyState(configured=False)
    register_search_tools(mcp, get_state=lambda: state)

    client = Client(mcp)
    async with client:
        with pytest.raises(Exception):
            await client.call_tool("get_count", {"type": "user"})


@pytest.mark.asyncio
async def test_server_is_named_from_settings() -> None:
    from tenantsearch.mcp.server import create_server

    settings = Settings()
    settings.app.name = "Search for tests"
    mcp = create_server(settings)
    assert mcp.name == "Search for tests"

    client = Client(mcp)
    async with client:
        tools = {tool.name for tool in await client.list_tools()}
        res_health = await client.call_tool("health", {})

    assert {"health", "find_objects", "index_object", "get_count"} <= tools
    assert any(getattr(item, "text", None) == "ok" for item in res_health.content)


@pytest.mark.asyncio
async def test_facade_runs_off_the_event_loop_thread() -> None:
    import threading

    class RecordingFacade:
        def __init__(self) -> None:
            self.threads: List[int] = []

        def get_count(self, type_: Any, terms: Any, *, appid: Any = None) -> int:
            self.threads.append(threading.get_ident())
            return 3

    state = DummyState(configured=False)
    facade = RecordingFacade()
    state.facade = facade  # type: ignore[assignment]
    mcp = FastMCP("test")
    register_search_tools(mcp, get_state=lambda: state)

    client = Client(mcp)
    async with client:
        res = await client.call_tool("get_count", {"type": "user"})

    count = _extract_json_payload(res)
    assert isinstance(count, dict) and count["count"] == 3
    assert facade.threads and facade.threads[0] != threading.get_ident()
