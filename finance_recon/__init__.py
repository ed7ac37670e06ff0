"""Bank reconciliation matching and duplicate detection service."""

__version__ = "0.1.0"
