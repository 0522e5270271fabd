"""Resolve the destination channels for a source.

Union of the source's own active mappings and the active mappings of every
active group listing it, deduplicated by channel (first occurrence wins),
inactive channels dropped.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from feedrank.storage.models import Channel, Mapping
from feedrank.storage.repository import (
    get_active_group_mappings,
    get_active_groups_for_source,
    get_active_source_mappings,
)

logger = logging.getLogger(__name__)


def dedupe_channels(mappings: list[Mapping]) -> list[Channel]:
    channels: list[Channel] = []
    seen: set[int] = set()
    for mapping in mappings:
        channel = mapping.channel
        if channel is None or channel.id in seen:
            continue
        seen.add(channel.id)
        if channel.active:
            channels.append(channel)
    return channels


async def resolve_channels(session: AsyncSession, source_id: int) -> list[Channel]:
    direct = await get_active_source_mappings(session, source_id)
    groups = await get_active_groups_for_source(session, source_id)
    via_groups = await get_active_group_mappings(session, [g.id for g in groups])

    channels = dedupe_channels(direct + via_groups)
    logger.debug(
        "Source %d resolves to %d channel(s) (%d direct, %d via %d group(s))",
        source_id, len(channels), len(direct), len(via_groups), len(groups),
    )
    return channels
