"""Escrow token discovery - finds tokens held by monitored escrows and ranks unaccounted value."""

__version__ = "0.1.0"
