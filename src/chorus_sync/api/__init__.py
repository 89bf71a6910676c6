"""HTTP API for a local sync node."""
