"""Usage metering.

Records one ``usage_events`` row per metered action (currently ``scan``,
emitted when a receipt has been processed) and mirrors it as a Sentry
counter.  Metering is fire-and-forget: ``track`` logs and swallows every
failure so it can never affect a receipt's persisted state.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.observability import sentry_metric_inc
from receiptflow.models.enums import UsageEventType
from receiptflow.models.tables import UsageEvent

logger = logging.getLogger(__name__)


class UsageMeter:
    """Usage-metering sink backed by the ``usage_events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def track(self, event: UsageEventType | str, owner_id: str, receipt_id: Optional[str] = None) -> bool:
        """Record ``event`` for ``owner_id``.  Returns False when recording failed."""
        try:
            kind = UsageEventType(event)
            async with self._sessions() as session:
                session.add(UsageEvent(owner_id=owner_id, event=kind, receipt_id=receipt_id))
                await session.commit()
            sentry_metric_inc(f"usage.{kind.value}", tags={"owner": owner_id})
            return True
        except Exception as exc:
            logger.error("[usage] failed to track event=%s owner=%s: %s", event, owner_id, exc)
            return False

    async def count(self, owner_id: str, event: UsageEventType = UsageEventType.SCAN, since: Optional[dt.datetime] = None) -> int:
        """Number of ``event`` rows for ``owner_id`` (optionally since a date)."""
        q = select(func.count(UsageEvent.id)).where(UsageEvent.owner_id == owner_id, UsageEvent.event == event)
        if since is not None:
            q = q.where(UsageEvent.created_at >= since)
        async with self._sessions() as session:
            result = await session.execute(q)
            return int(result.scalar() or 0)

    async def monthly_count(self, owner_id: str, when: Optional[dt.datetime] = None) -> int:
        when = when or dt.datetime.now(dt.timezone.utc)
        start = dt.datetime(when.year, when.month, 1, tzinfo=dt.timezone.utc)
        return await self.count(owner_id, since=start)
