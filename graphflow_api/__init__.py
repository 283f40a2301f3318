"""HTTP API, SQL persistence and SSE streaming for the graphflow engine."""
