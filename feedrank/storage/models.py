from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from feedrank.errors import StatusTransitionError
from feedrank.storage.schemas import HighDynamicsConfig


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# pending -> approved/rejected/forwarded, approved/rejected -> forwarded.
# forwarded is terminal.
POST_STATUSES = ("pending", "approved", "rejected", "forwarded")
_ALLOWED_TRANSITIONS = {
    "pending": {"approved", "rejected", "forwarded"},
    "approved": {"forwarded"},
    "rejected": {"forwarded"},
    "forwarded": set(),
}


source_group_members = Table(
    "source_group_members",
    Base.metadata,
    Column("group_id", ForeignKey("source_groups.id", ondelete="CASCADE"), primary_key=True),
    Column("source_id", ForeignKey("sources.id", ondelete="CASCADE"), primary_key=True),
)


class Source(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    url: Mapped[str] = mapped_column(String(512), default="")
    threshold_type: Mapped[str] = mapped_column(String(16), default="auto")  # auto / manual
    threshold_method: Mapped[str] = mapped_column(
        String(16), default="statistical"
    )  # average / statistical
    statistical_multiplier: Mapped[float] = mapped_column(Float, default=1.5)
    manual_threshold: Mapped[int] = mapped_column(Integer, default=0)
    calculated_threshold: Mapped[int] = mapped_column(Integer, default=0)
    check_frequency_minutes: Mapped[int] = mapped_column(Integer, default=60)
    posts_to_check: Mapped[int] = mapped_column(Integer, default=50)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    experimental_tracking_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    hd_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    hd_growth_rate_threshold: Mapped[float] = mapped_column(Float, default=30.0)  # views/min
    hd_min_data_points: Mapped[int] = mapped_column(Integer, default=4)
    threshold_stats: Mapped[dict] = mapped_column(JSON, default=dict)
    threshold_calculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_sources_active", "active"),)

    @property
    def high_dynamics(self) -> HighDynamicsConfig:
        return HighDynamicsConfig(
            enabled=self.hd_enabled,
            growth_rate_threshold=self.hd_growth_rate_threshold,
            min_data_points=self.hd_min_data_points,
        )

    @high_dynamics.setter
    def high_dynamics(self, config: HighDynamicsConfig) -> None:
        self.hd_enabled = config.enabled
        self.hd_growth_rate_threshold = config.growth_rate_threshold
        self.hd_min_data_points = config.min_data_points

    @property
    def effective_threshold(self) -> int:
        if self.threshold_type == "manual":
            return self.manual_threshold or 0
        return self.calculated_threshold or 0


class SourceGroup(Base):
    __tablename__ = "source_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    stop_words: Mapped[list] = mapped_column(JSON, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    sources: Mapped[list[Source]] = relationship(
        secondary=source_group_members, lazy="selectin"
    )


class Channel(Base):
    __tablename__ = "channels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(256), default="")
    username: Mapped[str] = mapped_column(String(128), default="")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    forwarded_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Mapping(Base):
    __tablename__ = "mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int | None] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), nullable=True
    )
    group_id: Mapped[int | None] = mapped_column(
        ForeignKey("source_groups.id", ondelete="CASCADE"), nullable=True
    )
    channel_id: Mapped[int] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    channel: Mapped[Channel] = relationship(lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "(source_id IS NULL) <> (group_id IS NULL)", name="ck_mapping_one_subject"
        ),
        Index(
            "uq_mapping_source_channel",
            "source_id",
            "channel_id",
            unique=True,
            sqlite_where=text("source_id IS NOT NULL"),
            postgresql_where=text("source_id IS NOT NULL"),
        ),
        Index(
            "uq_mapping_group_channel",
            "group_id",
            "channel_id",
            unique=True,
            sqlite_where=text("group_id IS NOT NULL"),
            postgresql_where=text("group_id IS NOT NULL"),
        ),
    )


class Delivery(Base):
    __tablename__ = "deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[int] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[str] = mapped_column(String(64), default="")
    strategy: Mapped[str] = mapped_column(String(32), default="")
    delivered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_deliveries_post_id", "post_id"),)


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), nullable=False
    )
    external_post_id: Mapped[str] = mapped_column(String(64), nullable=False)
    text: Mapped[str] = mapped_column(Text, default="")
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    like_count: Mapped[int] = mapped_column(Integer, default=0)
    repost_count: Mapped[int] = mapped_column(Integer, default=0)
    attachments: Mapped[list] = mapped_column(JSON, default=list)
    is_viral: Mapped[bool] = mapped_column(Boolean, default=False)
    threshold_used: Mapped[int] = mapped_column(Integer, default=0)
    was_high_dynamics: Mapped[bool] = mapped_column(Boolean, default=False)
    high_dynamics_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    original_url: Mapped[str] = mapped_column(String(512), default="")
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    deliveries: Mapped[list[Delivery]] = relationship(
        lazy="selectin", order_by=Delivery.delivered_at, cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("source_id", "external_post_id", name="uq_posts_source_external"),
        Index("ix_posts_viral_status", "is_viral", "status"),
        Index("ix_posts_created", "created_at"),
    )

    def transition_to(self, status: str) -> bool:
        """Move the post to `status`. Returns False when it already had it."""
        if status not in POST_STATUSES:
            raise StatusTransitionError(f"Unknown post status {status!r}")
        if status == self.status:
            return False
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise StatusTransitionError(
                f"Post {self.id} cannot move from {self.status!r} to {status!r}"
            )
        self.status = status
        return True


class ViewHistory(Base):
    __tablename__ = "view_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    source_id: Mapped[int] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), nullable=False
    )
    external_post_id: Mapped[str] = mapped_column(String(64), nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    view_delta: Mapped[int] = mapped_column(Integer, default=0)
    time_delta_minutes: Mapped[float] = mapped_column(Float, default=0.0)
    growth_rate: Mapped[float] = mapped_column(Float, default=0.0)  # views/min

    __table_args__ = (
        Index("ix_view_history_post_ts", "post_id", "timestamp"),
        Index("ix_view_history_ts", "timestamp"),
    )


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
