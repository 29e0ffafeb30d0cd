"""Census 2021 ethnicity re-mapped to 2011 LSOAs and rolled up to GP practices and PCNs."""

__version__ = "1.0.0"
