"""Tests for the watermark manager."""

from __future__ import annotations

from datetime import timedelta


def _manager(now):
    from docflow.services.watermarks import WatermarkManager

    return WatermarkManager(lookback=timedelta(days=7), clock=lambda: now)


class TestInitialize:
    """Tests for watermark seeding."""

    async def test_seeds_from_earliest_pending(self, session_factory, add_messages, t0):
        from docflow.db.engine import session_scope

        await add_messages([(30, "help", "later"), (10, "help", "earliest")])
        manager = _manager(t0 + timedelta(days=1))

        async with session_scope(session_factory) as session:
            watermark = await manager.initialize(session, "discord")

        assert watermark.watermark_time == t0 + timedelta(minutes=10)

    async def test_seeds_from_lookback_without_messages(self, session_factory, t0):
        from docflow.db.engine import session_scope

        now = t0 + timedelta(days=30)
        async with session_scope(session_factory) as session:
            watermark = await _manager(now).initialize(session, "empty")

        assert watermark.watermark_time == now - timedelta(days=7)

    async def test_seed_never_in_future(self, session_factory, add_messages, t0):
        from docflow.db.engine import session_scope

        await add_messages([(60, "help", "from the future")])
        async with session_scope(session_factory) as session:
            watermark = await _manager(t0).initialize(session, "discord")

        assert watermark.watermark_time == t0

    async def test_returns_existing(self, session_factory, add_messages, t0):
        from docflow.db.engine import session_scope

        manager = _manager(t0 + timedelta(days=1))
        async with session_scope(session_factory) as session:
            first = await manager.initialize(session, "discord")
            seeded = first.watermark_time

        await add_messages([(-600, "help", "older message arriving late")])
        async with session_scope(session_factory) as session:
            second = await manager.initialize(session, "discord")

        assert second.watermark_time == seeded


class TestAdvance:
    """Tests for monotonic advance."""

    async def test_moves_forward(self, session_factory, t0):
        from docflow.db.engine import session_scope

        now = t0 + timedelta(days=10)
        manager = _manager(now)
        async with session_scope(session_factory) as session:
            await manager.initialize(session, "s")
            watermark = await manager.advance(session, "s", now - timedelta(days=1))

        assert watermark.watermark_time == now - timedelta(days=1)
        assert watermark.last_batch_at == now

    async def test_never_regresses(self, session_factory, t0):
        from docflow.db.engine import session_scope

        now = t0 + timedelta(days=10)
        manager = _manager(now)
        async with session_scope(session_factory) as session:
            await manager.initialize(session, "s")
            await manager.advance(session, "s", now - timedelta(days=1))
            watermark = await manager.advance(session, "s", now - timedelta(days=5))

        assert watermark.watermark_time == now - timedelta(days=1)

    async def test_idempotent(self, session_factory, t0):
        from docflow.db.engine import session_scope
        from docflow.services.watermarks import get_watermark

        now = t0 + timedelta(days=10)
        manager = _manager(now)
        target = now - timedelta(hours=3)
        async with session_scope(session_factory) as session:
            await manager.initialize(session, "s")
            await manager.advance(session, "s", target)
            await manager.advance(session, "s", target)

        async with session_scope(session_factory) as session:
            watermark = await get_watermark(session, "s")

        assert watermark is not None
        assert watermark.watermark_time == target

    async def test_capped_at_now(self, session_factory, t0):
        from docflow.db.engine import session_scope

        now = t0 + timedelta(days=10)
        manager = _manager(now)
        async with session_scope(session_factory) as session:
            await manager.initialize(session, "s")
            watermark = await manager.advance(session, "s", now + timedelta(days=3))

        assert watermark.watermark_time == now
