import pytest

from feedrank.errors import PersistenceConflict, StatusTransitionError
from feedrank.storage.models import Post, Source
from feedrank.storage.repository import save_post
from feedrank.storage.schemas import HighDynamicsConfig


@pytest.mark.parametrize(
    "start, target",
    [
        ("pending", "approved"),
        ("pending", "rejected"),
        ("pending", "forwarded"),
        ("approved", "forwarded"),
        ("rejected", "forwarded"),
    ],
)
def test_forward_transitions_are_allowed(start, target):
    post = Post(status=start)
    assert post.transition_to(target) is True
    assert post.status == target


@pytest.mark.parametrize("target", ["pending", "approved", "rejected"])
def test_forwarded_is_terminal(target):
    post = Post(status="forwarded")
    with pytest.raises(StatusTransitionError):
        post.transition_to(target)
    assert post.status == "forwarded"


def test_backward_and_unknown_transitions_are_rejected():
    with pytest.raises(StatusTransitionError):
        Post(status="approved").transition_to("pending")
    with pytest.raises(StatusTransitionError):
        Post(status="pending").transition_to("archived")


def test_same_status_is_a_no_op():
    post = Post(status="forwarded")
    assert post.transition_to("forwarded") is False


def test_effective_threshold():
    source = Source(threshold_type="manual", manual_threshold=900, calculated_threshold=10)
    assert source.effective_threshold == 900
    source.threshold_type = "auto"
    assert source.effective_threshold == 10


def test_high_dynamics_sub_record():
    source = Source()
    source.high_dynamics = HighDynamicsConfig(growth_rate_threshold=12.5, min_data_points=6)
    assert source.hd_growth_rate_threshold == 12.5
    assert source.high_dynamics.min_data_points == 6
    assert source.high_dynamics.enabled is True


async def test_post_is_unique_per_source_and_external_id(session, add_source):
    source = await add_source()
    await save_post(session, Post(source_id=source.id, external_post_id="5"))

    with pytest.raises(PersistenceConflict):
        await save_post(session, Post(source_id=source.id, external_post_id="5"))
