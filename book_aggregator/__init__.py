"""Book metadata aggregation: canonical records, tiered lookup and archive migration."""

__version__ = "0.4.0"

__all__ = ["__version__"]
