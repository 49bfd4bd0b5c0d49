"""MCP server exposing location previews and import history."""
