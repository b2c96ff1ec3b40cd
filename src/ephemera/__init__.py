"""Ephemera: ephemeral blob store with use-count and time-based expiry."""

__version__ = "0.1.0"
