"""Output enrichment and writers."""
