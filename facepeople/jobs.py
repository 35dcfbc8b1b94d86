"""
Persisted background jobs.

A :class:`~facepeople.models.Job` row is the checkpoint of a scan or
regeneration run.  This module owns the allowed status transitions, stall
diagnosis and :class:`JobStore`, the thin persistence wrapper used by the job
drivers.  The store enforces that at most one job per kind is running or
paused at a time.
"""

from __future__ import annotations

import datetime as _dt
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.engine import Connection, Engine

from . import db
from .errors import ConcurrentJobConflict, InvalidJobTransition
from .models import Job, JobKind, JobStatus

Clock = Callable[[], _dt.datetime]

# Allowed moves; a reset back to ``idle`` is allowed from every state
TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.IDLE: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    return requested is JobStatus.IDLE or requested in TRANSITIONS[current]


def transition(job: Job, status: JobStatus, now: _dt.datetime) -> Job:
    """Move ``job`` to ``status`` in place, maintaining its timestamps.

    Raises :class:`InvalidJobTransition` for a move the state machine does
    not allow.  The caller persists the job.
    """
    if not can_transition(job.status, status):
        raise InvalidJobTransition(job.status.value, status.value)
    job.status = status
    if status is JobStatus.RUNNING:
        if job.started_at is None:
            job.started_at = now
        job.ended_at = None
        job.last_heartbeat = now
        job.pause_requested = False
    elif status.is_terminal:
        job.ended_at = now
    elif status is JobStatus.IDLE:
        job.ended_at = None
        job.pause_requested = False
    return job


def is_stalled(job: Optional[Job], now: _dt.datetime, timeout: float) -> bool:
    """True when a running job has stopped heartbeating before finishing.

    A job is stalled if it is ``running``, has items left, and its last
    heartbeat is older than ``timeout`` seconds.
    """
    if job is None or job.status is not JobStatus.RUNNING or job.processed >= job.total:
        return False
    beat = job.last_heartbeat or job.started_at
    if beat is None:
        return True
    return (now - beat).total_seconds() > timeout


class JobStore:
    """Load and save :class:`Job` rows.

    Parameters
    ----------
    engine: sqlalchemy.Engine
        Engine returned by :func:`facepeople.db.init_db`.
    clock: callable, optional
        Returns the current naive UTC time; injectable for tests.
    """

    def __init__(self, engine: Engine, clock: Optional[Clock] = None) -> None:
        self.engine = engine
        self.clock: Clock = clock or db.utcnow

    def create(self, kind: JobKind, force: bool = False, total: int = 0,
               max_item_id: Optional[int] = None, conn: Optional[Connection] = None) -> Job:
        """Insert a new ``idle`` job, refusing if one of the kind is active."""
        if conn is None:
            with self.engine.begin() as conn:
                return self.create(kind, force, total, max_item_id, conn=conn)
        active = db.latest_job(conn, kind, [JobStatus.RUNNING, JobStatus.PAUSED])
        if active is not None:
            raise ConcurrentJobConflict(kind.value, active.id)
        job = Job(id=0, kind=kind, force=force, total=total, max_item_id=max_item_id)
        job.id = db.insert_job(conn, job)
        logger.debug(f"Created {kind.value} job {job.id} (total={total}, force={force})")
        return job

    def get(self, job_id: int) -> Optional[Job]:
        with self.engine.connect() as conn:
            return db.get_job(conn, job_id)

    def latest(self, kind: JobKind) -> Optional[Job]:
        with self.engine.connect() as conn:
            return db.latest_job(conn, kind)

    def active(self, kind: JobKind) -> Optional[Job]:
        """The running or paused job of a kind, if any."""
        with self.engine.connect() as conn:
            return db.latest_job(conn, kind, [JobStatus.RUNNING, JobStatus.PAUSED])

    def save(self, job: Job, conn: Optional[Connection] = None) -> None:
        if conn is None:
            with self.engine.begin() as conn:
                db.save_job(conn, job)
        else:
            db.save_job(conn, job)

    def move(self, job: Job, status: JobStatus, message: Optional[str] = None,
             conn: Optional[Connection] = None) -> Job:
        """Transition and persist ``job`` in one step."""
        previous = job.status
        transition(job, status, self.clock())
        if message is not None:
            job.message = message
        self.save(job, conn=conn)
        logger.info(f"{job.kind.value} job {job.id}: {previous.value} -> {status.value}")
        return job

    def fail_stale(self, kind: JobKind, timeout: float) -> Optional[Job]:
        """Fail a ``running`` job of ``kind`` that stopped heartbeating.

        Unlike :func:`is_stalled` this ignores the item counters: a driver
        that died after its last item never got to finish the job either.
        Returns the failed job, or ``None`` when there was nothing stale.
        """
        now = self.clock()
        with self.engine.begin() as conn:
            job = db.latest_job(conn, kind, [JobStatus.RUNNING])
            if job is None:
                return None
            beat = job.last_heartbeat or job.started_at
            if beat is not None and (now - beat).total_seconds() <= timeout:
                return None
            self.move(job, JobStatus.FAILED, message="No heartbeat; the job's process is gone", conn=conn)
        logger.warning(f"Failed stale {kind.value} job {job.id} (processed {job.processed}/{job.total})")
        return job

    def list(self, kind: Optional[JobKind] = None, limit: int = 100) -> List[Job]:
        with self.engine.connect() as conn:
            return db.list_jobs(conn, kind, limit)

    def stats(self) -> Dict[str, int]:
        """Number of jobs per status, plus ``total``."""
        with self.engine.connect() as conn:
            counts = db.count_jobs_by_status(conn)
        result = {status.value: counts.get(status.value, 0) for status in JobStatus}
        result["total"] = sum(counts.values())
        return result

    def cleanup_old(self, days: int = 7) -> int:
        """Delete finished jobs that started more than ``days`` days ago."""
        cutoff = self.clock() - _dt.timedelta(days=days)
        with self.engine.begin() as conn:
            removed = db.delete_jobs_before(conn, cutoff)
        if removed:
            logger.info(f"Removed {removed} finished jobs older than {days} days")
        return removed

    def request_pause(self, job_id: int) -> None:
        with self.engine.begin() as conn:
            db.set_job_pause_requested(conn, job_id, True)

    def clear_pause(self, job_id: int) -> None:
        with self.engine.begin() as conn:
            db.set_job_pause_requested(conn, job_id, False)

    def pause_requested(self, job_id: int) -> bool:
        with self.engine.connect() as conn:
            return db.job_pause_requested(conn, job_id)
