"""API routers package."""

from finance_recon.routers import duplicates, reconciliation

__all__ = [
    "duplicates",
    "reconciliation",
]
