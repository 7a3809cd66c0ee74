"""Command line interface for book-aggregator."""

from .main import main, run_cli

__all__ = ["main", "run_cli"]
