from datetime import timedelta
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from feedrank.delivery.base import ChannelTransport
from feedrank.delivery.engine import DeliveryEngine
from feedrank.delivery.models import ChannelInfo, DeliveryHandle
from feedrank.errors import DeliveryError, UpstreamNotFoundError
from feedrank.ingestion.base import FeedSource
from feedrank.ingestion.models import Attachment, FeedItem, VideoInfo
from feedrank.service import FeedRankCore
from feedrank.storage.database import init_db, make_session_factory
from feedrank.storage.models import (
    Channel,
    Mapping,
    Post,
    Source,
    SourceGroup,
    ViewHistory,
    utcnow,
)


class FakeFeed(FeedSource):
    def __init__(self) -> None:
        self.items: list[FeedItem] = []
        self.sample: list[FeedItem] | None = None  # used for large threshold samples
        self.videos: dict[tuple[str, str], VideoInfo] = {}
        self.names: dict[str, str] = {}
        self.fetch_calls: list[tuple[str, int]] = []
        self.error: Exception | None = None

    async def resolve_identifier(self, name: str) -> str:
        if name not in self.names:
            raise UpstreamNotFoundError(f"{name} not found")
        return self.names[name]

    async def fetch_items(self, external_id: str, count: int) -> list[FeedItem]:
        self.fetch_calls.append((external_id, count))
        if self.error is not None:
            raise self.error
        pool = self.sample if self.sample is not None and count > len(self.items) else self.items
        return list(pool[:count])

    async def get_video_info(self, owner_id: str, video_id: str) -> VideoInfo:
        try:
            return self.videos[(owner_id, video_id)]
        except KeyError:
            raise UpstreamNotFoundError(f"video {owner_id}_{video_id}") from None


class FakeTransport(ChannelTransport):
    """Records sends; methods listed in `failing` raise DeliveryError."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.failing: set[str] = set()
        self.failing_chats: set[str] = set()
        self.channels: dict[str, ChannelInfo] = {}

    def _record(self, method: str, chat_id: str, **payload) -> DeliveryHandle:
        if method in self.failing or chat_id in self.failing_chats:
            raise DeliveryError(f"{method} to {chat_id} failed")
        self.sent.append((method, chat_id, payload))
        return DeliveryHandle(chat_id=chat_id, message_id=str(len(self.sent)))

    async def send_text(self, chat_id, text, disable_preview=False):
        return self._record("send_text", chat_id, text=text)

    async def send_photo(self, chat_id, photo, caption=""):
        return self._record("send_photo", chat_id, photo=photo, caption=caption)

    async def send_media_group(self, chat_id, photos, caption=""):
        return self._record("send_media_group", chat_id, photos=list(photos), caption=caption)

    async def send_video(self, chat_id, video, caption="", duration=None):
        payload = {"video": video, "caption": caption, "duration": duration}
        if isinstance(video, Path):
            payload["exists"] = video.exists()
            payload["content"] = video.read_bytes() if video.exists() else b""
        return self._record("send_video", chat_id, **payload)

    async def resolve_channel_info(self, identifier):
        if identifier not in self.channels:
            raise UpstreamNotFoundError(identifier)
        return self.channels[identifier]

    def methods(self) -> list[str]:
        return [method for method, _, _ in self.sent]


def feed_item(external_id: str, views: int, text: str = "", **kwargs) -> FeedItem:
    return FeedItem(
        external_id=external_id,
        text=text,
        view_count=views,
        url=f"https://vk.com/wall-1_{external_id}",
        **kwargs,
    )


def photo(url: str) -> Attachment:
    return Attachment(type="photo", url=url, thumbnail_url=url)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def http_handler():
    """Swap `.handler` in a test to control what the shared HTTP client returns."""

    class Router:
        def __init__(self) -> None:
            self.handler = lambda request: httpx.Response(404)
            self.requests: list[httpx.Request] = []

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

    return Router()


@pytest_asyncio.fixture
async def http_client(http_handler):
    async with httpx.AsyncClient(transport=httpx.MockTransport(http_handler)) as client:
        yield client


@pytest.fixture
def delivery(transport, feed, http_client):
    return DeliveryEngine(transport, feed, http_client)


@pytest_asyncio.fixture
async def core(session_factory, feed, transport, http_client):
    core = FeedRankCore(session_factory, feed, transport, http_client)
    yield core
    await core.scheduler.stop()


@pytest.fixture
def add_source(session):
    async def _add(**fields) -> Source:
        fields.setdefault("external_id", "1")
        fields.setdefault("name", f"source-{fields['external_id']}")
        source = Source(**fields)
        session.add(source)
        await session.commit()
        return source

    return _add


@pytest.fixture
def add_channel(session):
    async def _add(chat_id: str = "@news", active: bool = True) -> Channel:
        channel = Channel(chat_id=chat_id, title=chat_id, active=active)
        session.add(channel)
        await session.commit()
        return channel

    return _add


@pytest.fixture
def add_mapping(session):
    async def _add(
        channel: Channel,
        source: Source | None = None,
        group: SourceGroup | None = None,
        active: bool = True,
    ) -> Mapping:
        mapping = Mapping(
            channel_id=channel.id,
            source_id=source.id if source else None,
            group_id=group.id if group else None,
            active=active,
        )
        session.add(mapping)
        await session.commit()
        return mapping

    return _add


@pytest.fixture
def add_group(session):
    async def _add(
        name: str, sources: list[Source], stop_words=None, active: bool = True
    ) -> SourceGroup:
        group = SourceGroup(name=name, stop_words=stop_words or [], active=active)
        group.sources = list(sources)
        session.add(group)
        await session.commit()
        return group

    return _add


@pytest.fixture
def add_post(session):
    async def _add(source: Source, external_id: str = "1", **fields) -> Post:
        fields.setdefault("view_count", 100)
        fields.setdefault("original_url", f"https://vk.com/wall-1_{external_id}")
        post = Post(source_id=source.id, external_post_id=external_id, **fields)
        session.add(post)
        await session.commit()
        return post

    return _add


@pytest.fixture
def add_views(session):
    """Append view samples `minutes_ago -> growth_rate` for a post."""

    async def _add(post: Post, samples: list[tuple[float, float]]) -> None:
        now = utcnow()
        for minutes_ago, rate in samples:
            session.add(
                ViewHistory(
                    post_id=post.id,
                    source_id=post.source_id,
                    external_post_id=post.external_post_id,
                    view_count=post.view_count,
                    timestamp=now - timedelta(minutes=minutes_ago),
                    growth_rate=rate,
                )
            )
        await session.commit()

    return _add
