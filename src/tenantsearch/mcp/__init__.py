"""MCP server and tools exposing the search facade."""
