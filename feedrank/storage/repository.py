from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from feedrank.errors import PersistenceConflict
from feedrank.storage.models import (
    Channel,
    Delivery,
    Mapping,
    Post,
    Setting,
    Source,
    SourceGroup,
    ViewHistory,
    source_group_members,
)

STOP_WORDS_KEY = "stop_words"


# --- Sources ---


async def get_source(session: AsyncSession, source_id: int) -> Source | None:
    return await session.get(Source, source_id)


async def get_active_sources(session: AsyncSession) -> list[Source]:
    stmt = select(Source).where(Source.active.is_(True)).order_by(Source.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_high_dynamics_sources(session: AsyncSession) -> list[Source]:
    stmt = (
        select(Source)
        .where(
            Source.active.is_(True),
            Source.experimental_tracking_enabled.is_(True),
            Source.hd_enabled.is_(True),
        )
        .order_by(Source.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def source_exists_for_external_id(session: AsyncSession, external_id: str) -> bool:
    stmt = select(Source.id).where(Source.external_id == external_id).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def save_source(session: AsyncSession, source: Source) -> Source:
    session.add(source)
    await session.commit()
    await session.refresh(source)
    return source


# --- Groups & mappings ---


async def get_active_groups_for_source(
    session: AsyncSession, source_id: int
) -> list[SourceGroup]:
    stmt = (
        select(SourceGroup)
        .join(source_group_members, source_group_members.c.group_id == SourceGroup.id)
        .where(
            source_group_members.c.source_id == source_id,
            SourceGroup.active.is_(True),
        )
        .order_by(SourceGroup.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().unique().all())


async def get_active_source_mappings(
    session: AsyncSession, source_id: int
) -> list[Mapping]:
    stmt = (
        select(Mapping)
        .where(Mapping.source_id == source_id, Mapping.active.is_(True))
        .order_by(Mapping.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_active_group_mappings(
    session: AsyncSession, group_ids: list[int]
) -> list[Mapping]:
    if not group_ids:
        return []
    stmt = (
        select(Mapping)
        .where(Mapping.group_id.in_(group_ids), Mapping.active.is_(True))
        .order_by(Mapping.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def save_mapping(session: AsyncSession, mapping: Mapping) -> Mapping:
    session.add(mapping)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise PersistenceConflict(
            f"Mapping to channel {mapping.channel_id} already exists"
        ) from exc
    await session.refresh(mapping)
    return mapping


# --- Channels ---


async def get_channel_by_chat_id(session: AsyncSession, chat_id: str) -> Channel | None:
    stmt = select(Channel).where(Channel.chat_id == chat_id).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def save_channel(session: AsyncSession, channel: Channel) -> Channel:
    session.add(channel)
    await session.commit()
    await session.refresh(channel)
    return channel


# --- Posts ---


async def get_post(session: AsyncSession, post_id: int) -> Post | None:
    return await session.get(Post, post_id)


async def get_post_by_external_id(
    session: AsyncSession, source_id: int, external_post_id: str
) -> Post | None:
    stmt = select(Post).where(
        Post.source_id == source_id, Post.external_post_id == external_post_id
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def save_post(session: AsyncSession, post: Post) -> Post:
    """Commit a new or modified post; a duplicate (source, external id) raises PersistenceConflict."""
    session.add(post)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise PersistenceConflict(
            f"Post {post.external_post_id} already exists for source {post.source_id}"
        ) from exc
    await session.refresh(post)
    return post


async def get_forwardable_posts(session: AsyncSession) -> list[Post]:
    """Viral posts still waiting for delivery (pending or admin-approved)."""
    stmt = (
        select(Post)
        .where(Post.is_viral.is_(True), Post.status.in_(("pending", "approved")))
        .order_by(Post.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_high_dynamics_candidates(
    session: AsyncSession, source_id: int, since: datetime
) -> list[Post]:
    stmt = (
        select(Post)
        .where(
            Post.source_id == source_id,
            Post.created_at >= since,
            Post.is_viral.is_(False),
            Post.was_high_dynamics.is_(False),
        )
        .order_by(Post.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_deliveries(session: AsyncSession, post_id: int) -> list[Delivery]:
    stmt = (
        select(Delivery)
        .where(Delivery.post_id == post_id)
        .order_by(Delivery.delivered_at, Delivery.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# --- View history ---


async def get_latest_view_entry(session: AsyncSession, post_id: int) -> ViewHistory | None:
    stmt = (
        select(ViewHistory)
        .where(ViewHistory.post_id == post_id)
        .order_by(ViewHistory.timestamp.desc(), ViewHistory.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_recent_view_entries(
    session: AsyncSession, post_id: int, limit: int
) -> list[ViewHistory]:
    """Newest first."""
    stmt = (
        select(ViewHistory)
        .where(ViewHistory.post_id == post_id)
        .order_by(ViewHistory.timestamp.desc(), ViewHistory.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def save_view_entry(session: AsyncSession, entry: ViewHistory) -> ViewHistory:
    session.add(entry)
    await session.commit()
    return entry


async def prune_view_history(session: AsyncSession, older_than: datetime) -> int:
    result = await session.execute(
        delete(ViewHistory).where(ViewHistory.timestamp < older_than)
    )
    await session.commit()
    return result.rowcount or 0


# --- Settings ---


async def get_setting(session: AsyncSession, key: str) -> Any:
    row = await session.get(Setting, key)
    return row.value if row is not None else None


async def set_setting(session: AsyncSession, key: str, value: Any) -> None:
    row = await session.get(Setting, key)
    if row is None:
        session.add(Setting(key=key, value=value))
    else:
        row.value = value
    await session.commit()
