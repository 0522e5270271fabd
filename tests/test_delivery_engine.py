from pathlib import Path

import httpx

from feedrank.delivery.engine import DeliveryEngine
from feedrank.delivery.formatter import CAPTION_LIMIT
from feedrank.delivery.models import DeliveryOptions
from feedrank.ingestion.models import Attachment, VideoInfo
from feedrank.ingestion.vk import VkFeedSource
from feedrank.storage.models import Channel, Post, Source
from feedrank.storage.repository import get_deliveries


def video(**fields) -> dict:
    fields.setdefault("url", "https://vk.com/video-1_77")
    fields.setdefault("owner_id", "-1")
    fields.setdefault("media_id", "77")
    return Attachment(type="video", **fields).model_dump()


def photos(*urls: str) -> list[dict]:
    return [Attachment(type="photo", url=u).model_dump() for u in urls]


async def test_plain_text_post(session, delivery, transport, add_source, add_channel, add_post):
    source = await add_source()
    channel = await add_channel("@c")
    post = await add_post(source, text="hello <world>")

    outcome = await delivery.deliver(session, post, channel, DeliveryOptions())

    assert outcome.ok and outcome.strategy == "text"
    method, chat_id, payload = transport.sent[0]
    assert (method, chat_id) == ("send_text", "@c")
    assert "hello &lt;world&gt;" in payload["text"]
    assert "Original post" in payload["text"]
    assert channel.forwarded_count == 1
    records = await get_deliveries(session, post.id)
    assert [(r.channel_id, r.strategy, r.message_id) for r in records] == [(channel.id, "text", "1")]


async def test_photo_fallback_reaches_links_text(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, attachments=photos("https://p/1.jpg", "https://p/2.jpg"))
    transport.failing = {"send_media_group", "send_photo"}

    outcome = await delivery.deliver(session, post, channel)

    assert outcome.ok and outcome.strategy == "photo_links"
    assert transport.methods() == ["send_text"]
    assert "https://p/2.jpg" in transport.sent[0][2]["text"]
    records = await get_deliveries(session, post.id)
    assert len(records) == 1 and records[0].strategy == "photo_links"


async def test_album_caption_and_single_photo(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    album = await add_post(source, "1", attachments=photos("https://p/1.jpg", "https://p/2.jpg"))
    single = await add_post(source, "2", attachments=photos("https://p/3.jpg"))

    await delivery.deliver(session, album, channel)
    await delivery.deliver(session, single, channel)

    assert transport.methods() == ["send_media_group", "send_photo"]
    assert transport.sent[0][2]["photos"] == ["https://p/1.jpg", "https://p/2.jpg"]
    assert transport.sent[1][2]["photo"] == "https://p/3.jpg"


async def test_failure_of_every_tier_is_reported_not_recorded(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, attachments=photos("https://p/1.jpg"))
    transport.failing = {"send_photo", "send_text"}

    outcome = await delivery.deliver(session, post, channel)

    assert not outcome.ok
    assert "send_text" in outcome.error
    assert await get_deliveries(session, post.id) == []
    assert channel.forwarded_count == 0


async def test_direct_video_url_is_sent_as_is(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(
        source, attachments=[video(direct_url="https://cdn/clip.MP4?sig=1", duration=12)]
    )

    outcome = await delivery.deliver(session, post, channel)

    assert outcome.strategy == "video_url"
    assert transport.sent[0][2]["video"] == "https://cdn/clip.MP4?sig=1"
    assert transport.sent[0][2]["duration"] == 12


async def test_video_is_staged_and_temp_file_removed(
    session, delivery, transport, feed, http_handler, add_source, add_channel, add_post
):
    feed.videos[("-1", "77")] = VideoInfo(playable_urls=["https://cdn/stream?id=77"], duration_seconds=30)
    http_handler.handler = lambda request: httpx.Response(200, content=b"video-bytes")
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, attachments=[video(direct_url="https://cdn/no-extension")])

    outcome = await delivery.deliver(session, post, channel)

    assert outcome.strategy == "video_upload"
    payload = transport.sent[0][2]
    assert isinstance(payload["video"], Path)
    assert payload["content"] == b"video-bytes"
    assert payload["duration"] == 30
    assert not payload["video"].exists()
    assert str(http_handler.requests[0].url) == "https://cdn/stream?id=77"


async def test_temp_file_removed_when_upload_fails(
    session, delivery, transport, feed, http_handler, add_source, add_channel, add_post
):
    feed.videos[("-1", "77")] = VideoInfo(playable_urls=["https://cdn/stream"])
    http_handler.handler = lambda request: httpx.Response(200, content=b"data")
    transport.failing = {"send_video"}
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, attachments=[video(thumbnail_url="https://cdn/thumb.jpg")])

    staged: list[Path] = []
    original = transport.send_video

    async def spy(chat_id, video, caption="", duration=None):
        staged.append(video)
        return await original(chat_id, video, caption, duration)

    transport.send_video = spy
    outcome = await delivery.deliver(session, post, channel)

    assert outcome.strategy == "video_link_photo"
    assert staged and not staged[0].exists()
    method, _, payload = transport.sent[0]
    assert method == "send_photo"
    assert payload["photo"] == "https://cdn/thumb.jpg"
    assert "Watch video" in payload["caption"]


async def test_unresolvable_video_falls_back_to_watch_link_text(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, attachments=[video()])

    outcome = await delivery.deliver(session, post, channel)

    assert outcome.strategy == "video_link"
    assert "https://vk.com/video-1_77" in transport.sent[0][2]["text"]


async def test_long_text_caption_fits_limit(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, text="&" * 5000, attachments=photos("https://p/1.jpg"))

    await delivery.deliver(session, post, channel)

    assert len(transport.sent[0][2]["caption"]) <= CAPTION_LIMIT


async def test_high_dynamics_annotation(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source, text="fast")
    options = DeliveryOptions(kind="high_dynamics", growth_rate=42.5, window_minutes=15)

    await delivery.deliver(session, post, channel, options)

    text = transport.sent[0][2]["text"]
    assert "+42.5 views/min" in text
    assert "over 15 min" in text


async def test_fanout_marks_forwarded_on_first_success(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    broken = await add_channel("@broken")
    first = await add_channel("@first")
    second = await add_channel("@second")
    post = await add_post(source)
    transport.failing_chats = {"@broken"}

    result = await delivery.fanout(session, post, [broken, first, second], DeliveryOptions())

    assert [o.channel_id for o in result.delivered] == [first.id, second.id]
    assert [o.channel_id for o in result.failed] == [broken.id]
    assert post.status == "forwarded"
    await session.refresh(source)
    assert source.last_checked_at is not None
    assert len(await get_deliveries(session, post.id)) == 2
    assert (first.forwarded_count, second.forwarded_count, broken.forwarded_count) == (1, 1, 0)


async def test_fanout_without_success_keeps_status(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source)
    transport.failing = {"send_text"}

    result = await delivery.fanout(session, post, [channel])

    assert not result.any_delivered
    assert post.status == "pending"


async def test_fanout_can_leave_status_untouched(
    session, delivery, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source)

    result = await delivery.fanout(
        session, post, [channel], DeliveryOptions(kind="high_dynamics", mark_forwarded=False)
    )

    assert result.any_delivered
    assert post.status == "pending"


async def test_stored_status_survives_reload(
    session_factory, delivery, add_source, add_channel, add_post
):
    source = await add_source()
    channel = await add_channel()
    post = await add_post(source)

    async with session_factory() as other:
        fresh = await other.get(Post, post.id)
        target = await other.get(Channel, channel.id)
        await delivery.fanout(other, fresh, [target])

    async with session_factory() as check:
        assert (await check.get(Post, post.id)).status == "forwarded"
        assert (await check.get(Channel, channel.id)).forwarded_count == 1
        assert (await check.get(Source, source.id)).last_checked_at is not None


async def test_garbled_video_lookup_still_sends_watch_links(
    session, transport, add_source, add_channel, add_post
):
    def html_page(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(html_page)) as client:
        engine = DeliveryEngine(transport, VkFeedSource(access_token="token", client=client), client)
        source = await add_source()
        first = await add_channel("@a")
        second = await add_channel("@b")
        post = await add_post(source, attachments=[video()])

        result = await engine.fanout(session, post, [first, second])

    assert [o.strategy for o in result.delivered] == ["video_link", "video_link"]
    assert [chat for _, chat, _ in transport.sent] == ["@a", "@b"]
    assert post.status == "forwarded"


async def test_fanout_continues_past_unexpected_transport_error(
    session, delivery, transport, add_source, add_channel, add_post
):
    source = await add_source()
    broken = await add_channel("@broken")
    healthy = await add_channel("@healthy")
    post = await add_post(source)
    original = transport.send_text

    async def send_text(chat_id, text, disable_preview=False):
        if chat_id == "@broken":
            raise RuntimeError("connection reset")
        return await original(chat_id, text, disable_preview)

    transport.send_text = send_text

    result = await delivery.fanout(session, post, [broken, healthy])

    assert [o.channel_id for o in result.failed] == [broken.id]
    assert "connection reset" in result.failed[0].error
    assert [o.channel_id for o in result.delivered] == [healthy.id]
    assert post.status == "forwarded"
