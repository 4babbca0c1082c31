"""MCP server exposing strata archaeology tools."""
