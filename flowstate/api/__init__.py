"""HTTP API for the flow engine."""
