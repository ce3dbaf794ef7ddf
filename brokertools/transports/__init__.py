"""Transport adapters: stdio (one client) and SSE (many clients)."""
