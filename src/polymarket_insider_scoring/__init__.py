"""Polymarket insider scoring core - in-memory suspicion scoring engine."""

__version__ = "0.1.0"
