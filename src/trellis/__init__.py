"""Trellis — expression engine and staleness propagation for computed properties."""

__version__ = "0.1.0"
