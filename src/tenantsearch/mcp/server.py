"""TenantSearch MCP server entrypoint using FastMCP.

Exposes indexing, search and count tools built atop the search facade.
Run with:
  - tenantsearch-mcp
  - or: python -m tenantsearch.mcp.server (ensure PYTHONPATH includes ./src)
"""
from __future__ import annotations

import logging
from typing import Optional

from fastmcp import FastMCP

from tenantsearch.config import Settings, load_settings
from tenantsearch.facade import SearchFacade
from tenantsearch.mcp.tools import register_search_tools

logger = logging.getLogger(__name__)


class AppState:
    """Application state shared by MCP tools."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.facade: Optional[SearchFacade] = None

    def init_search(self) -> None:
        """Build the search facade and its backend from configuration."""
        self.facade = SearchFacade.from_settings(self.settings)
        logger.info(
            "Search backend %s ready (default tenant: %s)",
            self.settings.search.backend,
            self.settings.search.default_app_id or "<none>",
        )

    def close(self) -> None:
        if self.facade is not None:
            self.facade.close()
            self.facade = None


# Global state
_state: Optional[AppState] = None


# ----- Tools -----

def health() -> str:
    """Simple health check tool."""
    return "ok"


def create_server(settings: Settings) -> FastMCP:
    """Build the FastMCP server named after `app.name` with all tools registered."""
    mcp = FastMCP(settings.app.name)
    mcp.tool(health)
    register_search_tools(mcp, get_state=lambda: _state)
    return mcp


# ----- Entrypoint -----

def main() -> None:
    """Initialize state and run the MCP server."""
    global _state
    settings = load_settings()
    logging.basicConfig(
        level=settings.app.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state = AppState(settings)
    _state.init_search()
    mcp = create_server(settings)
    # Choose transport based on configuration: stdio (default), http, or sse
    transport = settings.app.transport
    try:
        if transport in ("http", "sse"):
            mcp.run(transport=transport, host=settings.app.host, port=settings.app.port)
        else:
            mcp.run()
    finally:
        _state.close()


if __name__ == "__main__":  # pragma: no cover
    main()
