import pytest

from catalog.models import ImageStatus, Platform, PriceTier, ScrapeTask, TaskState


def _task() -> ScrapeTask:
    return ScrapeTask(url="https://www.indiamart.com/proddetail/pump-1.html", platform=Platform.INDIAMART)


def test_happy_path_transitions():
    task = _task()
    for state in (
        TaskState.FETCHING,
        TaskState.PARSED,
        TaskState.CLASSIFIED,
        TaskState.IMAGE_RESOLVED,
        TaskState.STORED,
    ):
        task.advance(state)
    assert task.state == TaskState.STORED
    assert task.state.is_terminal
    assert task.attempts == 1
    assert task.history[0] == TaskState.PENDING


def test_retry_cycle_counts_attempts():
    task = _task()
    task.advance(TaskState.FETCHING)
    task.advance(TaskState.RETRY_PENDING)
    task.advance(TaskState.FETCHING)
    assert task.attempts == 2


@pytest.mark.parametrize(
    "path",
    [
        [TaskState.PARSED],
        [TaskState.STORED],
        [TaskState.FETCHING, TaskState.STORED],
        [TaskState.FETCHING, TaskState.PARSED, TaskState.IMAGE_RESOLVED],
    ],
)
def test_illegal_transition_raises(path):
    task = _task()
    with pytest.raises(ValueError):
        for state in path:
            task.advance(state)


def test_terminal_states_do_not_advance():
    task = _task()
    task.advance(TaskState.BREAKER_OPEN)
    assert task.state.is_terminal
    assert not task.can_advance(TaskState.FETCHING)


def test_fail_records_error_kind():
    task = _task()
    task.advance(TaskState.FETCHING)
    task.fail("network")
    assert task.state == TaskState.FAILED
    assert task.to_dict()["last_error_kind"] == "network"


def test_price_tier_labels():
    assert PriceTier(min_qty=10, max_qty=99, price_text="$2").label == "10 - 99"
    assert PriceTier(min_qty=100, price_text="$1").label == "≥ 100"
    assert PriceTier().label == ""


def test_cached_image_requires_path(make_listing):
    assert not make_listing(image_status=ImageStatus.CACHED).has_cached_image
    assert make_listing(image="/cache/abc.jpg", image_status=ImageStatus.CACHED).has_cached_image
    assert not make_listing(image="/static/seed.jpg", image_status=ImageStatus.PLACEHOLDER).has_cached_image
