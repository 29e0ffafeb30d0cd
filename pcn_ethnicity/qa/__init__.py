"""Quality gates for the apportioned and aggregated tables."""
