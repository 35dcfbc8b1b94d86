import threading

import numpy as np
import pytest

from conftest import FakeEmbedder, SimulatedCrash
from facepeople import db
from facepeople.errors import ConcurrentJobConflict, InvalidJobTransition
from facepeople.models import JobKind, JobStatus
from facepeople.pipeline import SqlPhotoStore
from facepeople.regeneration import RegenerationJobManager


def path(i):
    return f"/photos/f{i}.jpg"


@pytest.fixture
def pending_faces(make_face):
    """Create ``n`` faces without embeddings, photo ``/photos/f<i>.jpg`` for face i."""
    def _make(n):
        return [make_face(photo_path=path(i)) for i in range(1, n + 1)]
    return _make


def embedded(engine):
    with engine.connect() as conn:
        return {f.id for f in db.list_faces(conn, with_embedding=True)}


def test_single_failure_does_not_stop_the_job(engine, manager, embedder, pending_faces):
    ids = pending_faces(100)
    embedder.fail_paths.add(path(47))
    job = manager.start()
    assert job.status is JobStatus.COMPLETED
    assert (job.processed, job.success_count, job.failed_count) == (100, 99, 1)
    assert [e.item_id for e in job.errors] == [ids[46]]
    assert embedded(engine) == set(ids) - {ids[46]}


def test_pause_then_resume_continues_after_last_item(manager, embedder, pending_faces, job_store):
    pending_faces(20)

    def pause_at_ten(n):
        if n == 10:
            manager.pause()

    embedder.on_call = pause_at_ten
    job = manager.start()
    assert job.status is JobStatus.PAUSED
    assert job.processed == 10
    assert job_store.get(job.id).status is JobStatus.PAUSED

    embedder.on_call = None
    job = manager.start()
    assert job.status is JobStatus.COMPLETED
    assert job.processed == 20
    assert embedder.calls[10] == path(11)
    assert embedder.calls == [path(i) for i in range(1, 21)]


def test_pause_when_not_running_is_rejected(manager):
    with pytest.raises(InvalidJobTransition):
        manager.pause()


def test_crash_resume_skips_finished_items(engine, matcher, job_store, events, embedder, clock, pending_faces):
    pending_faces(30)
    embedder.crash_after = 12
    with pytest.raises(SimulatedCrash):
        RegenerationJobManager(engine, SqlPhotoStore(engine), embedder, matcher, job_store,
                               events=events).start()
    crashed = job_store.latest(JobKind.REGENERATE)
    assert crashed.status is JobStatus.RUNNING
    assert crashed.processed == 12

    restarted = FakeEmbedder()
    manager = RegenerationJobManager(engine, SqlPhotoStore(engine), restarted, matcher, job_store,
                                     events=events)
    # the heartbeat is fresh, so the job may still belong to a live process
    with pytest.raises(ConcurrentJobConflict) as excinfo:
        manager.start()
    assert not excinfo.value.stalled
    clock.advance(31)
    assert manager.reset_queue().processed == 12
    job = manager.start()
    assert job.id == crashed.id
    assert job.status is JobStatus.COMPLETED
    assert job.processed == 30
    assert restarted.calls == [path(i) for i in range(13, 31)]


def test_second_manager_cannot_take_over_running_job(engine, manager, matcher, job_store, embedder,
                                                     pending_faces):
    pending_faces(3)
    gate = threading.Event()
    entered = threading.Event()

    def hold(n):
        entered.set()
        gate.wait(5)

    embedder.on_call = hold
    manager.start_background()
    assert entered.wait(5)
    other_embedder = FakeEmbedder()
    other = RegenerationJobManager(engine, SqlPhotoStore(engine), other_embedder, matcher, job_store)
    try:
        with pytest.raises(ConcurrentJobConflict) as excinfo:
            other.start()
        assert not excinfo.value.stalled
        with pytest.raises(ConcurrentJobConflict):
            other.reset_queue()
    finally:
        gate.set()
        manager.join(5)
    assert other_embedder.calls == []
    job = job_store.latest(JobKind.REGENERATE)
    assert job.status is JobStatus.COMPLETED
    assert (job.processed, job.success_count) == (3, 3)


def test_reset_queue_abandons_hung_loop(engine, manager, embedder, clock, job_store, pending_faces):
    ids = pending_faces(3)
    gate = threading.Event()
    entered = threading.Event()

    def hang(n):
        entered.set()
        gate.wait(5)

    embedder.on_call = hang
    manager.start_background()
    assert entered.wait(5)
    try:
        clock.advance(60)
        assert manager.diagnose()["stalled"] is True
        job = manager.reset_queue()
        assert job.status is JobStatus.IDLE
        assert not manager.is_running

        embedder.on_call = None
        job = manager.start()
        assert job.status is JobStatus.COMPLETED
        assert job.processed == 3
    finally:
        gate.set()
        manager.join(5)
    # the hung call returned late; its result is dropped
    job = job_store.latest(JobKind.REGENERATE)
    assert job.status is JobStatus.COMPLETED
    assert (job.processed, job.success_count, job.failed_count) == (3, 3, 0)
    assert embedded(engine) == set(ids)



def test_stalled_job_needs_queue_reset(manager, embedder, clock, pending_faces):
    pending_faces(10)
    embedder.crash_after = 4
    with pytest.raises(SimulatedCrash):
        manager.start()
    embedder.crash_after = None

    clock.advance(31)
    report = manager.diagnose()
    assert report["stalled"] is True
    assert report["status"] == "stalled"
    assert report["remaining"] == 6

    with pytest.raises(ConcurrentJobConflict) as excinfo:
        manager.start()
    assert excinfo.value.stalled

    job = manager.reset_queue()
    assert job.status is JobStatus.IDLE
    assert job.success_count == 4

    job = manager.start()
    assert job.status is JobStatus.COMPLETED
    assert job.success_count == 10
    assert len(embedder.calls) == 10


def test_recent_heartbeat_is_not_stalled(manager, embedder, clock, pending_faces):
    pending_faces(5)
    embedder.crash_after = 2
    with pytest.raises(SimulatedCrash):
        manager.start()
    clock.advance(10)
    assert manager.diagnose()["stalled"] is False


def test_second_start_while_running_conflicts(manager, embedder, pending_faces):
    pending_faces(3)
    gate = threading.Event()
    entered = threading.Event()

    def hold(n):
        entered.set()
        gate.wait(5)

    embedder.on_call = hold
    snapshot = manager.start_background()
    assert snapshot.status is JobStatus.RUNNING
    assert entered.wait(5)
    try:
        with pytest.raises(ConcurrentJobConflict):
            manager.start()
        with pytest.raises(ConcurrentJobConflict):
            manager.reset()
    finally:
        gate.set()
        manager.join(5)
    assert manager.get_progress()["status"] == "completed"


def test_unavailable_embedder_fails_the_job(manager, embedder, pending_faces):
    pending_faces(3)
    embedder.unavailable = True
    job = manager.start()
    assert job.status is JobStatus.FAILED
    assert job.processed == 0
    assert "model server is down" in job.message


def test_wrong_dimension_is_a_per_item_failure(engine, manager, embedder, pending_faces):
    ids = pending_faces(3)
    embedder.vectors[path(2)] = [1.0, 0.0, 0.0]
    job = manager.start()
    assert job.status is JobStatus.COMPLETED
    assert job.failed_count == 1
    assert job.errors[0].item_id == ids[1]
    assert embedded(engine) == {ids[0], ids[2]}


def test_reset_clears_counters_but_keeps_embeddings(engine, manager, pending_faces):
    ids = pending_faces(4)
    manager.start()
    job = manager.reset()
    assert job.status is JobStatus.IDLE
    assert (job.total, job.processed, job.success_count, job.errors) == (0, 0, 0, [])
    assert embedded(engine) == set(ids)
    # nothing is left without an embedding
    assert manager.start().total == 0


def test_completion_reclusters_new_faces(engine, manager, embedder, pending_faces):
    a, b = pending_faces(2)
    embedder.vectors[path(1)] = np.eye(8)[0]
    embedder.vectors[path(2)] = np.eye(8)[0]
    manager.start()
    with engine.connect() as conn:
        owners = {db.get_face(conn, f).person_id for f in (a, b)}
    assert len(owners) == 1 and None not in owners


def test_forced_run_keeps_manual_assignments(engine, manager, embedder, make_person, make_face,
                                             assert_counts_consistent):
    named = make_person("Named")
    manual = make_face(np.eye(8)[0], person_id=named, photo_path="/photos/manual.jpg", is_manual=True)
    auto = make_face(np.eye(8)[1], person_id=named, photo_path="/photos/auto.jpg")
    embedder.vectors["/photos/manual.jpg"] = np.eye(8)[0]
    embedder.vectors["/photos/auto.jpg"] = np.eye(8)[1]
    job = manager.start(force=True)
    assert job.force and job.processed == 2
    with engine.connect() as conn:
        assert db.get_face(conn, manual).person_id == named
        assert db.get_face(conn, auto).person_id not in (None, named)
    assert_counts_consistent()


def test_progress_and_events(manager, pending_faces, events):
    pending_faces(2)
    assert manager.get_progress()["job_id"] is None
    manager.start()
    progress = manager.get_progress()
    assert progress["status"] == "completed"
    assert progress["processed"] == progress["total"] == 2
    topics = [t for t, _ in events.received]
    assert topics.count("job.progress") == 2
    assert topics[0] == "job.status"
    assert "job.status" in topics[3:]


def test_forced_failure_drops_vector_of_old_model(engine, manager, embedder, make_face):
    # faces embedded by an older 4-dim model, regenerated by the 8-dim one
    ids = [make_face(np.eye(4)[0], photo_path=path(i)) for i in range(1, 4)]
    embedder.fail_paths.add(path(2))
    job = manager.start(force=True)
    assert job.status is JobStatus.COMPLETED
    assert (job.success_count, job.failed_count) == (2, 1)
    with engine.connect() as conn:
        faces = [db.get_face(conn, f) for f in ids]
    assert faces[1].embedding is None
    assert [f.embedding.shape[0] for f in (faces[0], faces[2])] == [8, 8]
    assert embedded(engine) == {ids[0], ids[2]}
