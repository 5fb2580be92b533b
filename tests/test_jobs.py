import pytest

from jobs import (
    COMPLETE,
    FAILED,
    PENDING,
    RUNNING,
    InMemoryJobStore,
    InvalidTransition,
    JobNotFound,
)


def test_create_inserts_pending_job(store) -> None:
    job_id = store.create("https://www.youtube.com/watch?v=abc", "720p")
    job = store.get(job_id)

    assert job.id == job_id
    assert job.status == PENDING
    assert job.source_url == "https://www.youtube.com/watch?v=abc"
    assert job.requested_quality == "720p"
    assert job.file_path is None
    assert job.error is None
    assert job.created_at > 0


def test_ids_are_unique_for_same_url(store) -> None:
    ids = {store.create("https://www.youtube.com/watch?v=abc", None) for _ in range(50)}
    assert len(ids) == 50
    assert len(store) == 50


def test_get_unknown_id_raises_not_found(store) -> None:
    with pytest.raises(JobNotFound):
        store.get("never-issued")


def test_get_returns_snapshot(store) -> None:
    job_id = store.create("https://www.youtube.com/watch?v=abc", None)
    snapshot = store.get(job_id)
    snapshot.status = COMPLETE
    assert store.get(job_id).status == PENDING


def test_forward_transitions(store) -> None:
    job_id = store.create("u", None)
    store.update(job_id, status=RUNNING)
    job = store.update(job_id, status=COMPLETE, progress=100, file_path="/tmp/x.mp4", file_name="x.mp4")
    assert job.status == COMPLETE
    assert job.progress == 100
    assert job.file_name == "x.mp4"


def test_pending_can_fail_directly(store) -> None:
    job_id = store.create("u", None)
    job = store.update(job_id, status=FAILED, error="cancelled")
    assert job.status == FAILED
    assert job.error == "cancelled"


@pytest.mark.parametrize(
    "path",
    [
        [COMPLETE],
        [RUNNING, PENDING],
        [RUNNING, COMPLETE, RUNNING],
        [RUNNING, FAILED, COMPLETE],
    ],
)
def test_backward_or_skipping_transitions_rejected(store, path) -> None:
    job_id = store.create("u", None)
    with pytest.raises(InvalidTransition):
        for status in path:
            store.update(job_id, status=status)


def test_terminal_job_fields_are_frozen(store) -> None:
    job_id = store.create("u", None)
    store.update(job_id, status=FAILED, error="boom")
    with pytest.raises(InvalidTransition):
        store.update(job_id, error="something else")
    assert store.get(job_id).error == "boom"


def test_progress_never_decreases_and_is_clamped(store) -> None:
    job_id = store.create("u", None)
    store.update(job_id, status=RUNNING)
    store.update(job_id, progress=40)
    assert store.update(job_id, progress=10).progress == 40
    assert store.update(job_id, progress=250).progress == 100


def test_unknown_field_rejected(store) -> None:
    job_id = store.create("u", None)
    with pytest.raises(AttributeError):
        store.update(job_id, colour="blue")


def test_update_unknown_id_raises_not_found(store) -> None:
    with pytest.raises(JobNotFound):
        store.update("missing", progress=5)


def test_delete_then_get_is_not_found(store) -> None:
    job_id = store.create("u", None)
    deleted = store.delete(job_id)
    assert deleted.id == job_id
    with pytest.raises(JobNotFound):
        store.get(job_id)
    with pytest.raises(JobNotFound):
        store.delete(job_id)


def test_live_and_recently_deleted_ids_are_not_reissued() -> None:
    tokens = iter(["a", "a", "b", "a", "b", "c"])
    store = InMemoryJobStore(id_factory=lambda: next(tokens))

    first = store.create("u", None)
    second = store.create("u", None)
    store.delete(first)
    third = store.create("u", None)

    assert (first, second, third) == ("a", "b", "c")


def test_deleted_ids_are_forgotten_after_guard_window() -> None:
    now = [1000.0]
    tokens = iter(["a", "a", "b", "a"])
    store = InMemoryJobStore(id_factory=lambda: next(tokens), reuse_guard_seconds=60, clock=lambda: now[0])

    first = store.create("u", None)
    store.delete(first)
    now[0] += 30
    second = store.create("u", None)
    store.delete(second)
    now[0] += 31
    third = store.create("u", None)

    assert (first, second, third) == ("a", "b", "a")
    assert list(store._retired) == ["b"]


def test_list_jobs_returns_all_records(store) -> None:
    ids = [store.create("u", None) for _ in range(3)]
    assert sorted(job.id for job in store.list_jobs()) == sorted(ids)
