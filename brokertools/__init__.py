"""
brokertools: Interactive Brokers quote/trade tools served over MCP.

One quote session and one trade session are established per process and shared
by every tool call, whether the server runs over stdio or SSE.
"""

__version__ = "0.1.0"
