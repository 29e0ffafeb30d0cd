"""Input vintage tracking."""
