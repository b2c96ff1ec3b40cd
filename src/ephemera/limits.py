"""Global upload limits and per-file limit resolution."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ephemera.errors import LimitExceededError


@dataclass(frozen=True)
class Limits:
    """Server-wide limits. Zero means unlimited."""

    max_uses: int = 0
    max_store_secs: int = 0
    max_blob_size: int = 0

    def resolve(
        self,
        max_uses: int | None,
        store_secs: int | None,
        now: datetime,
    ) -> tuple[int | None, datetime | None]:
        """Combine per-file limits with the global ones.

        A missing per-file value falls back to the global value. A per-file
        value may tighten a global limit but never loosen it.

        Returns:
            Tuple of (max_uses, expires_at), either of which may be None
            for "unlimited".

        Raises:
            LimitExceededError: A value is negative or above the global limit.
        """
        uses = _resolve_one("max-uses", max_uses, self.max_uses)
        secs = _resolve_one("store-secs", store_secs, self.max_store_secs)
        expires_at = now + timedelta(seconds=secs) if secs else None
        return uses or None, expires_at


def _resolve_one(name: str, requested: int | None, limit: int) -> int:
    if requested is None:
        return limit
    if requested < 0:
        raise LimitExceededError(f"{name} must not be negative")
    if limit and (requested == 0 or requested > limit):
        raise LimitExceededError(f"{name} must be between 1 and {limit}")
    return requested
