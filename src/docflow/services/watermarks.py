"""Per-stream watermark checkpointing."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.models import utcnow
from docflow.db.models import Watermark
from docflow.services import messages

logger = logging.getLogger(__name__)


class WatermarkManager:
    """Durable checkpoint of processing progress, one row per stream.

    The watermark is the inclusive start of the next batch window. It only
    moves forward and never past the current time.
    """

    def __init__(
        self,
        lookback: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.lookback = lookback
        self.clock = clock

    async def initialize(self, session: AsyncSession, stream_id: str) -> Watermark:
        """Get the stream's watermark, creating it on first use.

        A new watermark is seeded from the earliest PENDING message of the
        stream, or from ``now - lookback`` when the stream has none.

        Args:
            session: Database session.
            stream_id: Stream id.

        Returns:
            The existing or newly created Watermark.
        """
        watermark = await session.get(Watermark, stream_id)
        if watermark is not None:
            return watermark

        now = self.clock()
        seed = await messages.earliest_pending_timestamp(session, stream_id)
        if seed is None:
            seed = now - self.lookback
        seed = min(seed, now)

        watermark = Watermark(stream_id=stream_id, watermark_time=seed)
        session.add(watermark)
        await session.flush()
        logger.info("Initialized watermark for stream %s at %s", stream_id, seed.isoformat())
        return watermark

    async def advance(self, session: AsyncSession, stream_id: str, time: datetime) -> Watermark:
        """Move the watermark forward to ``time``.

        Idempotent: a time at or behind the current watermark leaves it
        unchanged. Times in the future are capped at now.

        Args:
            session: Database session.
            stream_id: Stream id.
            time: New watermark time.

        Returns:
            The updated Watermark.
        """
        now = self.clock()
        target = min(time, now)

        watermark = await session.get(Watermark, stream_id)
        if watermark is None:
            watermark = Watermark(stream_id=stream_id, watermark_time=target, last_batch_at=now)
            session.add(watermark)
            await session.flush()
            return watermark

        if target <= watermark.watermark_time:
            logger.debug(
                "Watermark for %s already at %s, not moving to %s",
                stream_id,
                watermark.watermark_time.isoformat(),
                target.isoformat(),
            )
            return watermark

        watermark.watermark_time = target
        watermark.last_batch_at = now
        await session.flush()
        logger.debug("Advanced watermark for %s to %s", stream_id, target.isoformat())
        return watermark


async def get_watermark(session: AsyncSession, stream_id: str) -> Watermark | None:
    return await session.get(Watermark, stream_id)


async def list_watermarks(session: AsyncSession) -> list[Watermark]:
    stmt = select(Watermark).order_by(Watermark.stream_id)
    return list(await session.scalars(stmt))
