"""
Resumable embedding regeneration.

:class:`RegenerationJobManager` drives a ``regenerate`` job over every face
lacking an embedding (or every face when forced).  Faces are processed one at
a time in ascending id order and the job row is checkpointed in the same
transaction as each embedding write, so a crash loses at most the item in
flight and a restart neither repeats nor skips work.

The job can be paused between items, reset, and diagnosed.  A job reported
``running`` whose heartbeat is older than ``stall_timeout`` while items
remain is *stalled*.  A running job is never taken over by another
:meth:`RegenerationJobManager.start`: a healthy one conflicts, a stalled one
conflicts until :meth:`RegenerationJobManager.reset_queue` moves it back to
``idle``.  Resetting a stalled queue also abandons a loop of this manager that
hangs inside the embedder; each loop carries a generation number and a loop
whose generation is no longer current writes nothing.

When the queue is finished the job completes and the matcher reclusters.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import numpy as np
from loguru import logger
from sqlalchemy.engine import Engine

from . import db
from .clustering import ClusterMatcher
from .embedders import FaceEmbedder
from .errors import (
    ConcurrentJobConflict, DimensionMismatch, EmbedderUnavailable, EmbeddingFailure, InvalidJobTransition,
)
from .events import JOB_PROGRESS, JOB_STATUS, EventBus
from .jobs import JobStore, is_stalled, transition
from .models import Job, JobError, JobKind, JobStatus

if TYPE_CHECKING:
    from .pipeline import PhotoStore

KIND = JobKind.REGENERATE


class RegenerationJobManager:
    """Run, pause, diagnose and recover the embedding regeneration job.

    Parameters
    ----------
    engine: sqlalchemy.Engine
        Store engine.
    photos: PhotoStore
        Resolves a photo id to its file path.
    embedder: FaceEmbedder
        Produces one vector per face box.
    matcher: ClusterMatcher
        Reclusters once the job completes.
    jobs: JobStore
        Persistence for the job row (its clock is used for heartbeats).
    events: EventBus, optional
        Receives ``job.progress`` and ``job.status``.
    stall_timeout: float
        Seconds without a heartbeat after which a running job is stalled.
    """

    def __init__(self, engine: Engine, photos: PhotoStore, embedder: FaceEmbedder, matcher: ClusterMatcher,
                 jobs: JobStore, events: Optional[EventBus] = None, stall_timeout: float = 30.0) -> None:
        self.engine = engine
        self.photos = photos
        self.embedder = embedder
        self.matcher = matcher
        self.jobs = jobs
        self.events = events
        self.stall_timeout = stall_timeout
        # guards _generation/_active; checkpoints are written while holding it
        self._state_lock = threading.Lock()
        self._generation = 0
        self._active: Optional[int] = None
        self._pause = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        """Whether a processing loop of this manager currently owns the job."""
        return self._active is not None

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.publish(topic, payload)

    def _publish_status(self, job: Job) -> None:
        self._publish(JOB_STATUS, {"job_id": job.id, "kind": job.kind.value, "status": job.status.value})

    # -- loop ownership ------------------------------------------------------

    def _acquire(self) -> int:
        with self._state_lock:
            if self._active is not None:
                active = self.jobs.active(KIND)
                stalled = is_stalled(active, self.jobs.clock(), self.stall_timeout)
                raise ConcurrentJobConflict(KIND.value, active.id if active else None, stalled=stalled)
            self._generation += 1
            self._active = self._generation
            return self._generation

    def _release(self, generation: int) -> None:
        with self._state_lock:
            if self._active == generation:
                self._active = None

    def _abandon_loop(self) -> None:
        """Detach the current loop; it stops writing once it notices."""
        with self._state_lock:
            self._generation += 1
            self._active = None

    def _owns(self, generation: int) -> bool:
        """Call with ``_state_lock`` held."""
        return self._active == generation

    # -- starting ----------------------------------------------------------

    def _claim(self, force: bool) -> Job:
        """Pick the job to run and mark it ``running``."""
        with self.engine.begin() as conn:
            now = self.jobs.clock()
            job = db.latest_job(conn, KIND)
            if job is not None and job.status is JobStatus.RUNNING:
                # owned by another loop, here or in another process
                raise ConcurrentJobConflict(
                    KIND.value, job.id, stalled=is_stalled(job, now, self.stall_timeout)
                )
            if job is not None and (job.status is JobStatus.PAUSED
                                    or (job.status is JobStatus.IDLE and job.processed > 0)):
                if force != job.force:
                    logger.info(f"Resuming job {job.id} with its original force={job.force}")
                logger.info(f"Resuming regeneration job {job.id} at {job.processed}/{job.total}")
                transition(job, JobStatus.RUNNING, now)
            else:
                if job is None or job.status.is_terminal:
                    job = self.jobs.create(KIND, force=force, conn=conn)
                job.force = force
                job.total = len(db.regeneration_candidates(conn, force))
                job.max_item_id = db.max_face_id(conn)
                job.cursor = None
                transition(job, JobStatus.RUNNING, now)
                logger.info(f"Starting regeneration job {job.id}: {job.total} faces (force={force})")
            db.save_job(conn, job)
        self._publish_status(job)
        return job

    def _prepare(self, force: bool) -> tuple:
        generation = self._acquire()
        try:
            self._pause.clear()
            return self._claim(force), generation
        except BaseException:
            self._release(generation)
            raise

    def start(self, force: bool = False) -> Job:
        """Run (or resume) the regeneration job on the calling thread.

        Returns the job once it is paused, completed or failed.
        """
        job, generation = self._prepare(force)
        try:
            return self._run(job, generation)
        finally:
            self._release(generation)

    def start_background(self, force: bool = False) -> Job:
        """Like :meth:`start` but runs the loop on a worker thread.

        Conflicts are raised here, before the thread starts.  Returns a
        snapshot of the job in the ``running`` state.
        """
        job, generation = self._prepare(force)
        snapshot = dataclasses.replace(job, errors=list(job.errors))
        self._thread = threading.Thread(
            target=self._run_and_release, args=(job, generation), name="facepeople-regenerate", daemon=True
        )
        self._thread.start()
        return snapshot

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for a background run to finish."""
        if self._thread is not None:
            self._thread.join(timeout)

    def _run_and_release(self, job: Job, generation: int) -> None:
        try:
            self._run(job, generation)
        except Exception:
            logger.exception(f"Regeneration job {job.id} crashed")
            job.message = "Processing loop crashed; see log"
            with self._state_lock:
                if self._owns(generation):
                    try:
                        self.jobs.move(job, JobStatus.FAILED)
                    except Exception as exc:
                        logger.error(f"Could not mark job {job.id} failed: {exc}")
                    else:
                        self._publish_status(job)
        finally:
            self._release(generation)

    # -- processing loop ---------------------------------------------------

    def _embed_face(self, face_id: int) -> np.ndarray:
        with self.engine.connect() as conn:
            face = db.get_face(conn, face_id)
        if face is None:
            raise EmbeddingFailure(face_id, "Face no longer exists")
        photo = self.photos.get_by_id(face.photo_id)
        if photo is None:
            raise EmbeddingFailure(face_id, f"Photo {face.photo_id} not found")
        vector = np.asarray(self.embedder.embed(photo.file_path, face.box), dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.embedder.dimension:
            raise DimensionMismatch(self.embedder.dimension, vector.shape[0])
        return vector

    def _finish(self, job: Job, generation: int, status: JobStatus, message: Optional[str] = None) -> bool:
        """Move the job unless this loop was abandoned; returns whether it moved."""
        with self._state_lock:
            if not self._owns(generation):
                logger.warning(f"Abandoned loop of job {job.id} stopped; not moving it to {status.value}")
                return False
            self.jobs.move(job, status, message=message)
        self._publish_status(job)
        return True

    def _run(self, job: Job, generation: int) -> Job:
        with self.engine.connect() as conn:
            queue: List[int] = db.regeneration_candidates(conn, job.force, job.cursor, job.max_item_id)
        for face_id in queue:
            if self._pause.is_set() or job.pause_requested:
                self._finish(job, generation, JobStatus.PAUSED)
                return job
            try:
                vector = self._embed_face(face_id)
                error = None
            except EmbedderUnavailable as exc:
                logger.error(f"Embedder unavailable, failing job {job.id}: {exc}")
                self._finish(job, generation, JobStatus.FAILED, message=str(exc))
                return job
            except Exception as exc:
                vector = None
                error = str(exc) or type(exc).__name__
                logger.warning(f"Face {face_id}: embedding failed: {error}")
            with self._state_lock:
                if not self._owns(generation):
                    logger.warning(f"Discarding late result for face {face_id}; job {job.id} was reset")
                    return job
                with self.engine.begin() as conn:
                    if vector is not None:
                        db.set_face_embedding(conn, face_id, vector)
                        job.success_count += 1
                    else:
                        if job.force:
                            # the old vector belongs to the previous embedding space
                            db.clear_face_embedding(conn, face_id)
                        job.errors.append(JobError(face_id, error))
                        job.failed_count += 1
                    job.processed += 1
                    job.cursor = face_id
                    job.last_heartbeat = self.jobs.clock()
                    job.pause_requested = db.job_pause_requested(conn, job.id)
                    db.save_job(conn, job)
            self._publish(JOB_PROGRESS, {
                "job_id": job.id,
                "kind": job.kind.value,
                "processed": job.processed,
                "total": job.total,
                "success_count": job.success_count,
                "failed_count": job.failed_count,
            })
        if job.processed < job.total:
            logger.warning(
                f"Job {job.id}: queue exhausted at {job.processed}/{job.total}; faces were removed meanwhile"
            )
            job.total = job.processed
        if not self._finish(job, generation, JobStatus.COMPLETED):
            return job
        logger.info(
            f"Regeneration job {job.id} completed: {job.success_count} succeeded, {job.failed_count} failed"
        )
        self.matcher.recluster(reset_automatic=job.force)
        return job

    # -- control -----------------------------------------------------------

    def pause(self) -> Job:
        """Ask the running job to stop before its next item."""
        job = self.jobs.latest(KIND)
        if job is None or job.status is not JobStatus.RUNNING:
            raise InvalidJobTransition(job.status.value if job else JobStatus.IDLE.value, JobStatus.PAUSED.value)
        self._pause.set()
        self.jobs.request_pause(job.id)
        logger.info(f"Pause requested for regeneration job {job.id}")
        return job

    def reset(self) -> Optional[Job]:
        """Clear counters, errors and position and return to ``idle``.

        Embeddings already written are kept.
        """
        if self.is_running:
            raise ConcurrentJobConflict(KIND.value, None)
        job = self.jobs.latest(KIND)
        if job is None:
            return None
        job.total = job.processed = job.success_count = job.failed_count = 0
        job.errors = []
        job.cursor = None
        job.message = None
        job.started_at = None
        self.jobs.move(job, JobStatus.IDLE)
        self._publish_status(job)
        return job

    def get_progress(self) -> Dict[str, Any]:
        job = self.jobs.latest(KIND)
        if job is None:
            return Job(id=0, kind=KIND).to_dict() | {"job_id": None}
        return job.to_dict()

    def diagnose(self) -> Dict[str, Any]:
        """Report the job state, with ``stalled`` when the loop stopped heartbeating."""
        job = self.jobs.latest(KIND)
        now = self.jobs.clock()
        if job is None:
            return {"job_id": None, "status": JobStatus.IDLE.value, "stalled": False,
                    "processed": 0, "total": 0, "remaining": 0,
                    "seconds_since_heartbeat": None, "loop_active": self.is_running}
        stalled = is_stalled(job, now, self.stall_timeout)
        beat = job.last_heartbeat
        return {
            "job_id": job.id,
            "status": "stalled" if stalled else job.status.value,
            "stalled": stalled,
            "processed": job.processed,
            "total": job.total,
            "remaining": job.remaining,
            "seconds_since_heartbeat": (now - beat).total_seconds() if beat else None,
            "loop_active": self.is_running,
        }

    def reset_queue(self) -> Optional[Job]:
        """Force a stuck job back to ``idle``, keeping counters and position.

        A following :meth:`start` continues after the last processed face.
        A ``running`` job that still heartbeats raises
        :class:`ConcurrentJobConflict`, whichever process owns it.  A stalled
        loop of this manager is abandoned.
        """
        job = self.jobs.latest(KIND)
        if job is not None and job.status is JobStatus.RUNNING \
                and not is_stalled(job, self.jobs.clock(), self.stall_timeout):
            raise ConcurrentJobConflict(KIND.value, job.id)
        if self.is_running:
            logger.warning(f"Abandoning stalled loop of regeneration job {job.id if job else None}")
            self._abandon_loop()
            # re-read: the loop may have checkpointed before it was detached
            job = self.jobs.latest(KIND)
        if job is None:
            return None
        self.jobs.move(job, JobStatus.IDLE)
        self._publish_status(job)
        return job
