import pytest

from conftest import feed_item
from feedrank.delivery.models import ChannelInfo
from feedrank.errors import (
    PostNotFoundError,
    SourceNotFoundError,
    StatusTransitionError,
    UpstreamNotFoundError,
    ValidationError,
)
from feedrank.storage.models import Post, Source
from feedrank.storage.repository import get_deliveries

SAMPLE = [feed_item(str(i), v) for i, v in enumerate([100, 200, 300, 400, 500])]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"method": "median"},
        {"sample_size": 10},
        {"sample_size": 5000},
        {"multiplier": 0.1},
        {"multiplier": 3.5},
    ],
)
async def test_recalculate_threshold_validates_input(core, add_source, kwargs):
    source = await add_source()
    with pytest.raises(ValidationError):
        await core.recalculate_threshold(source.id, **kwargs)


async def test_recalculate_and_report(core, feed, add_source):
    source = await add_source()
    feed.items = SAMPLE

    stats = await core.recalculate_threshold(source.id, "statistical", 50, 1.5)
    report = await core.get_threshold_stats(source.id)

    assert stats.threshold == 512
    assert feed.fetch_calls == [("1", 50)]
    assert report.calculated_threshold == 512
    assert report.effective_threshold == 512
    assert report.statistical_multiplier == 1.5
    assert report.stats.std_dev == 141  # persisted snapshot is rounded
    assert report.stats.percentiles.p50 == 300


async def test_manual_threshold_report(core, add_source):
    source = await add_source(threshold_type="manual", manual_threshold=777)
    report = await core.get_threshold_stats(source.id)
    assert (report.effective_threshold, report.stats) == (777, None)


async def test_unknown_source(core):
    with pytest.raises(SourceNotFoundError):
        await core.get_threshold_stats(42)
    with pytest.raises(SourceNotFoundError):
        await core.recalculate_threshold(42)
    with pytest.raises(SourceNotFoundError):
        await core.trigger_immediate_sweep(42)


async def test_trigger_immediate_sweep(core, feed, add_source):
    source = await add_source(threshold_type="manual", manual_threshold=250)
    feed.items = SAMPLE

    result = await core.trigger_immediate_sweep(source.id)

    assert (result.source_id, result.created, result.viral) == (source.id, 5, 3)


async def test_approving_forwards_the_post(
    session_factory, core, transport, add_source, add_channel, add_mapping, add_post
):
    source = await add_source()
    await add_mapping(await add_channel("@out"), source=source)
    post = await add_post(source, is_viral=False)

    change = await core.set_post_status(post.id, "approved")

    assert change.changed and change.forwarded
    assert change.status == "forwarded"
    assert transport.methods() == ["send_text"]
    async with session_factory() as s:
        assert (await s.get(Post, post.id)).status == "forwarded"
        assert len(await get_deliveries(s, post.id)) == 1


async def test_rejecting_and_terminal_state(core, add_source, add_post):
    source = await add_source()
    post = await add_post(source)

    change = await core.set_post_status(post.id, "rejected")
    assert (change.status, change.forwarded) == ("rejected", False)

    done = await add_post(source, "2", status="forwarded")
    with pytest.raises(StatusTransitionError):
        await core.set_post_status(done.id, "pending")
    with pytest.raises(PostNotFoundError):
        await core.set_post_status(999, "approved")


async def test_add_source_validates(core, session_factory):
    with pytest.raises(ValidationError):
        await core.add_source({"external_id": "1", "name": "x", "check_frequency_minutes": 3})
    with pytest.raises(ValidationError):
        await core.add_source({"external_id": "1", "name": "x", "statistical_multiplier": 4})

    source = await core.add_source(
        {"external_id": "1", "name": "x", "high_dynamics": {"growth_rate_threshold": 12}}
    )
    async with session_factory() as s:
        stored = await s.get(Source, source.id)
        assert stored.hd_growth_rate_threshold == 12
        assert stored.check_frequency_minutes == 60

    with pytest.raises(ValidationError):
        await core.add_source({"external_id": "1", "name": "again"})


async def test_add_mapping_requires_one_subject(core, add_source, add_channel):
    source = await add_source()
    channel = await add_channel()

    with pytest.raises(ValidationError):
        await core.add_mapping({"channel_id": channel.id})
    with pytest.raises(ValidationError):
        await core.add_mapping({"channel_id": channel.id, "source_id": source.id, "group_id": 1})

    mapping = await core.add_mapping({"channel_id": channel.id, "source_id": source.id})
    assert mapping.group_id is None


async def test_resolve_channel_upserts(core, transport):
    transport.channels["@news"] = ChannelInfo(id="-1001", title="News", username="@news")

    created = await core.resolve_channel("@news")
    transport.channels["@news"] = ChannelInfo(id="-1001", title="Renamed", username="@news")
    updated = await core.resolve_channel("@news")

    assert created.id == updated.id
    assert updated.title == "Renamed"
    with pytest.raises(UpstreamNotFoundError):
        await core.resolve_channel("@missing")


async def test_resolve_source(core, feed):
    feed.names["durov"] = "1"
    assert await core.resolve_source("durov") == "1"
    with pytest.raises(UpstreamNotFoundError):
        await core.resolve_source("nobody")


async def test_stop_words(core):
    assert await core.set_global_stop_words("A, b") == ["a", "b"]
    assert await core.get_global_stop_words() == ["a", "b"]


async def test_on_demand_system_sweeps(core, add_source, add_post):
    source = await add_source()
    await add_post(source, is_viral=True)

    pending = await core.run_pending_sweep()
    high_dynamics = await core.run_high_dynamics_sweep()

    assert (pending.processed, pending.forwarded) == (1, 0)
    assert high_dynamics.checked == 0


async def test_lifecycle_without_scheduler(core, http_client):
    await core.start(run_scheduler=False)
    assert not core.scheduler.running
    await core.shutdown()
    assert http_client.is_closed
