"""Database models for Ephemera."""

from ephemera.models.base import Base
from ephemera.models.entry import Entry

__all__ = [
    "Base",
    "Entry",
]
