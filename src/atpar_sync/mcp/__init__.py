"""MCP server exposing the sync service over stdio."""
