"""Stream descriptor operations.

Descriptors are owned by ingestion; the pipeline only reads the enabled flag.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.db.models import StreamDescriptor


async def register_stream(
    session: AsyncSession,
    stream_id: str,
    connector_type: str,
    config: dict[str, Any] | None = None,
    enabled: bool = True,
) -> StreamDescriptor:
    """Create or update a stream descriptor."""
    descriptor = await session.get(StreamDescriptor, stream_id)
    if descriptor is None:
        descriptor = StreamDescriptor(stream_id=stream_id, connector_type=connector_type)
        session.add(descriptor)
    descriptor.connector_type = connector_type
    descriptor.config = config or {}
    descriptor.enabled = enabled
    await session.flush()
    return descriptor


async def get_stream(session: AsyncSession, stream_id: str) -> StreamDescriptor | None:
    return await session.get(StreamDescriptor, stream_id)


async def disabled_stream_ids(session: AsyncSession) -> set[str]:
    """Get ids of streams whose descriptor is disabled.

    Streams without a descriptor are treated as enabled.
    """
    stmt = select(StreamDescriptor.stream_id).where(StreamDescriptor.enabled.is_(False))
    return set(await session.scalars(stmt))


async def list_streams(session: AsyncSession) -> list[StreamDescriptor]:
    stmt = select(StreamDescriptor).order_by(StreamDescriptor.stream_id)
    return list(await session.scalars(stmt))
