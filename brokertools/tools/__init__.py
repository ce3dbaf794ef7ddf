"""Broker tools exposed over MCP."""
