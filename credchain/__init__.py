"""Credchain - document custody and verification core."""

__version__ = "1.0.0"
