"""Source ingest adapters."""
