"""Entry model: metadata for one stored blob."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CHAR, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ephemera.models.base import Base


class Entry(Base):
    """Index row describing a blob on disk.

    The primary key doubles as the blob's file name in the storage
    directory. ``uses`` is only ever changed by a server-side increment;
    ``max_uses`` and ``expires_at`` are NULL when unlimited.
    """

    __tablename__ = "entries"

    entry_id: Mapped[str] = mapped_column(CHAR(36), primary_key=True)
    content_type: Mapped[str | None] = mapped_column(String(255))
    uses: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    max_uses: Mapped[int | None] = mapped_column(Integer)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
