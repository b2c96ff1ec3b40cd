"""Metadata index over the ``entries`` table.

Every query that decides whether an entry is still usable is evaluated by
the database, never as read-then-compare in Python:

- eviction eligibility is a single ``EXISTS`` predicate;
- use counting is ``uses = uses + 1`` guarded by the same predicate, so two
  concurrent fetches of a single-use entry cannot both succeed;
- sweeping enumerates and deletes with the same predicate.

The index never opens or commits transactions itself. It runs inside the
session it is given, so the blob engine decides the transaction boundaries.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import ColumnElement, and_, delete, exists, insert, not_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ephemera.errors import ConflictError, NotFoundError
from ephemera.models import Entry


def as_utc(value: datetime) -> datetime:
    """Normalise a timestamp to UTC; naive values are taken to be UTC.

    SQLite keeps only the wall-clock part of a timestamp, so every value
    written or compared must share one offset.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def evictable(now: datetime) -> ColumnElement[bool]:
    """SQL predicate matching entries that are expired or used up.

    ``max_uses`` of NULL means unlimited, so exhaustion is only checked for
    rows that carry a limit. Each branch is NULL-guarded so the predicate is
    never NULL and can be safely negated.
    """
    return or_(
        and_(Entry.expires_at.is_not(None), Entry.expires_at < as_utc(now)),
        and_(Entry.max_uses.is_not(None), Entry.uses == Entry.max_uses),
    )


class MetadataIndex:
    """Index operations bound to one session (and thus one transaction).

    Usage:
        async with session_factory() as session, session.begin():
            index = MetadataIndex(session)
            if not await index.is_eligible_for_eviction(entry_id, now):
                await index.mark_used(entry_id, now)
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        entry_id: str,
        content_type: str | None,
        max_uses: int | None,
        expires_at: datetime | None,
    ) -> None:
        """Insert a new entry.

        Raises:
            ConflictError: An entry with this id already exists.
        """
        stmt = insert(Entry).values(
            entry_id=entry_id,
            content_type=content_type or None,
            uses=0,
            max_uses=max_uses or None,
            expires_at=as_utc(expires_at) if expires_at is not None else None,
        )
        try:
            await self._session.execute(stmt)
        except IntegrityError as exc:
            raise ConflictError(entry_id) from exc

    async def remove(self, entry_id: str) -> bool:
        """Delete an entry. Returns False if it was already absent."""
        result = await self._session.execute(delete(Entry).where(Entry.entry_id == entry_id))
        return result.rowcount > 0

    async def exists(self, entry_id: str) -> bool:
        stmt = select(exists().where(Entry.entry_id == entry_id))
        return bool(await self._session.scalar(stmt))

    async def content_type(self, entry_id: str) -> str | None:
        """Return the stored content type (None if none was given).

        Raises:
            NotFoundError: No entry with this id.
        """
        result = await self._session.execute(
            select(Entry.content_type).where(Entry.entry_id == entry_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError(entry_id)
        return row.content_type

    async def is_eligible_for_eviction(self, entry_id: str, now: datetime) -> bool:
        stmt = select(exists().where(Entry.entry_id == entry_id, evictable(now)))
        return bool(await self._session.scalar(stmt))

    async def mark_used(self, entry_id: str, now: datetime) -> bool:
        """Count one use of an entry.

        The increment only applies to a row that is not yet evictable.
        Returns False when nothing was incremented, i.e. the entry is absent
        or became evictable since it was last checked.
        """
        stmt = (
            update(Entry)
            .where(Entry.entry_id == entry_id, not_(evictable(now)))
            .values(uses=Entry.uses + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def expired_ids(self, now: datetime) -> list[str]:
        result = await self._session.scalars(select(Entry.entry_id).where(evictable(now)))
        return list(result)

    async def remove_expired(self, now: datetime) -> None:
        """Delete every evictable entry in one statement."""
        await self._session.execute(
            delete(Entry).where(evictable(now)).execution_options(synchronize_session=False)
        )
