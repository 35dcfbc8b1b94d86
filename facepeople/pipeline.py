"""
High-level orchestration of the identity pipeline.

This module ties together the lower-level components: detection, the
regeneration job, matching and the person registry.  :class:`FacePipeline`
builds all of them from a :class:`~facepeople.config.PipelineConfig` and is
the single object front ends (the CLI, an application shell) talk to.

Scan jobs run face detection over a list of photos and record their progress
in a ``scan`` job row, like regeneration does, so the history of both kinds
of work can be inspected with the same tools.
"""

from __future__ import annotations

import datetime as _dt
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy.engine import Engine

from . import db
from .clustering import AutoMatchResult, ClusterMatcher
from .config import PipelineConfig
from .detection import FaceDetector, ProgressCallback
from .embedders import DetectorBackend, FaceEmbedder, LazyEmbedder, get_detector_backend, get_embedder
from .errors import DetectionFailure
from .events import JOB_PROGRESS, JOB_STATUS, PEOPLE_UPDATED, EventBus
from .jobs import JobStore
from .models import Face, FaceInfo, Job, JobError, JobKind, JobStatus, Photo
from .regeneration import RegenerationJobManager
from .registry import PersonRegistry
from .similarity import ScoredCandidate


class PhotoStore:
    """Read access to the external photo library."""

    def get_by_id(self, photo_id: int) -> Optional[Photo]:
        raise NotImplementedError


class SqlPhotoStore(PhotoStore):
    """Photo lookups against the ``photos`` table of the pipeline database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_id(self, photo_id: int) -> Optional[Photo]:
        with self.engine.connect() as conn:
            return db.get_photo(conn, photo_id)

    def add(self, file_paths: Iterable[str]) -> List[int]:
        """Register photo files; returns their new ids."""
        with self.engine.begin() as conn:
            return db.insert_photos(conn, file_paths)


class ScanJobRunner:
    """Detect faces in photos as a persisted ``scan`` job.

    Each photo is one item: success means its faces were detected and saved,
    failure records the photo id and reason.  The job ends ``cancelled`` on a
    cancel request, ``failed`` when every photo failed and ``completed``
    otherwise.  A run that raises is moved to ``failed`` before the error
    propagates, and a ``running`` scan job silent for longer than
    ``stall_timeout`` is failed before a new scan starts.
    """

    def __init__(self, engine: Engine, photos: PhotoStore, detector: FaceDetector, jobs: JobStore,
                 events: Optional[EventBus] = None, stall_timeout: float = 30.0) -> None:
        self.engine = engine
        self.photos = photos
        self.detector = detector
        self.jobs = jobs
        self.events = events
        self.stall_timeout = stall_timeout

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.publish(topic, payload)

    def _publish_status(self, job: Job) -> None:
        self._publish(JOB_STATUS, {"job_id": job.id, "kind": job.kind.value, "status": job.status.value})

    def _record(self, job: Job, photo_id: int, faces: Optional[List[FaceInfo]], error: Optional[str]) -> None:
        """Checkpoint one photo; faces and job row are written together."""
        with self.engine.begin() as conn:
            if error is None:
                db.insert_faces(conn, photo_id, faces or [])
                job.success_count += 1
            else:
                job.errors.append(JobError(photo_id, error))
                job.failed_count += 1
            job.processed += 1
            job.cursor = photo_id
            job.last_heartbeat = self.jobs.clock()
            db.save_job(conn, job)
        self._publish(JOB_PROGRESS, {
            "job_id": job.id,
            "kind": job.kind.value,
            "processed": job.processed,
            "total": job.total,
            "success_count": job.success_count,
            "failed_count": job.failed_count,
        })

    def scan(self, photo_ids: Sequence[int], on_progress: Optional[ProgressCallback] = None) -> Job:
        self.jobs.fail_stale(JobKind.SCAN, self.stall_timeout)
        job = self.jobs.create(JobKind.SCAN, total=len(photo_ids))
        self.jobs.move(job, JobStatus.RUNNING)
        self._publish_status(job)
        try:
            return self._scan(job, photo_ids, on_progress)
        except BaseException as exc:
            logger.error(f"Scan job {job.id} aborted: {exc!r}")
            if job.status is JobStatus.RUNNING:
                self.jobs.move(job, JobStatus.FAILED, message=f"Aborted: {exc!r}")
                self._publish_status(job)
            raise

    def _scan(self, job: Job, photo_ids: Sequence[int], on_progress: Optional[ProgressCallback]) -> Job:
        photos: List[Photo] = []
        for pid in photo_ids:
            photo = self.photos.get_by_id(pid)
            if photo is None:
                logger.warning(f"Photo {pid} not found; skipping")
                self._record(job, pid, None, "Photo not found")
            else:
                photos.append(photo)

        result = self.detector.detect_batch(
            photos,
            on_progress=on_progress,
            on_detected=lambda photo, faces: self._record(job, photo.id, faces, None),
            on_failed=lambda photo, message: self._record(job, photo.id, None, message),
        )
        if result.cancelled:
            status = JobStatus.CANCELLED
        elif job.total > 0 and job.failed_count == job.total:
            status = JobStatus.FAILED
        else:
            status = JobStatus.COMPLETED
        self.jobs.move(job, status, message=f"{result.total_faces} faces detected")
        self._publish_status(job)
        return job


class FacePipeline:
    """Facade over the whole identity pipeline.

    Detector and embedder backends are built lazily from the configuration
    the first time they are needed, so bookkeeping commands never load a
    model.  Tests pass fakes for both.
    """

    def __init__(self, config: PipelineConfig, engine: Optional[Engine] = None,
                 detector_backend: Optional[DetectorBackend] = None, embedder: Optional[FaceEmbedder] = None,
                 photos: Optional[PhotoStore] = None, events: Optional[EventBus] = None,
                 clock: Optional[Callable[[], _dt.datetime]] = None) -> None:
        self.config = config
        self.engine = engine if engine is not None else db.init_db(config.db_path)
        self.events = events if events is not None else EventBus()
        self.photos = photos if photos is not None else SqlPhotoStore(self.engine)
        self.jobs = JobStore(self.engine, clock)
        self.people = PersonRegistry(self.engine, self.events)
        self.matcher = ClusterMatcher(
            self.engine, self.people,
            match_threshold=config.match_threshold,
            min_cluster_size=config.min_cluster_size,
            cannot_link_same_photo=config.cannot_link_same_photo,
            embedding_dim=embedder.dimension if embedder is not None else config.embedding_dim,
            events=self.events,
        )
        self._detector_backend = detector_backend
        self._embedder = embedder
        self._detector: Optional[FaceDetector] = None
        self._regeneration: Optional[RegenerationJobManager] = None

    # -- lazily built components -------------------------------------------

    @property
    def detector(self) -> FaceDetector:
        if self._detector is None:
            backend = self._detector_backend
            if backend is None:
                logger.info(f"Loading detector {self.config.model_name}")
                backend = get_detector_backend(self.config.model_name, use_gpu=self.config.use_gpu)
            self._detector = FaceDetector(
                backend,
                min_confidence=self.config.min_confidence,
                min_face_size=self.config.min_face_size,
                max_faces=self.config.max_faces,
                events=self.events,
            )
        return self._detector

    @property
    def regeneration(self) -> RegenerationJobManager:
        if self._regeneration is None:
            self._regeneration = RegenerationJobManager(
                self.engine, self.photos, self._make_embedder(), self.matcher, self.jobs,
                events=self.events, stall_timeout=self.config.stall_timeout,
            )
        return self._regeneration

    def _make_embedder(self) -> FaceEmbedder:
        if self._embedder is not None:
            return self._embedder
        config = self.config
        return LazyEmbedder(
            lambda: get_embedder(config.model_name, use_gpu=config.use_gpu, dimension=config.embedding_dim),
            dimension=config.embedding_dim,
        )

    # -- detection -----------------------------------------------------------

    def detect(self, photo_id: int) -> List[int]:
        """Detect and save the faces of one photo; returns the new face ids."""
        photo = self.photos.get_by_id(photo_id)
        if photo is None:
            raise DetectionFailure(str(photo_id), "Photo not found")
        with self.engine.begin() as conn:
            return self.detector.detect_and_save(photo, conn)

    def detect_batch(self, photo_ids: Sequence[int], on_progress: Optional[ProgressCallback] = None) -> Job:
        runner = ScanJobRunner(self.engine, self.photos, self.detector, self.jobs, self.events,
                               stall_timeout=self.config.stall_timeout)
        return runner.scan(photo_ids, on_progress=on_progress)

    def cancel_detection(self) -> None:
        self.detector.cancel()

    def undetect_photo(self, photo_id: int) -> int:
        """Delete the faces of a photo; returns how many were removed.

        Persons that lose faces are recounted but not deleted; run
        :meth:`cleanup_empty_persons` to drop the ones left empty.
        """
        with self.engine.begin() as conn:
            removed = len(db.list_faces(conn, photo_id=photo_id))
            affected = db.delete_faces_for_photo(conn, photo_id)
            for pid in sorted(affected):
                self.people.recount(conn, pid)
                self.people.refresh_avatar(pid, conn=conn)
        logger.info(f"Removed {removed} faces of photo {photo_id}")
        if affected:
            self.events.publish(PEOPLE_UPDATED, {"reason": "undetect", "person_ids": sorted(affected)})
        return removed

    # -- matching ------------------------------------------------------------

    def auto_match(self) -> AutoMatchResult:
        return self.matcher.auto_match()

    def find_similar(self, face_id: int, k: Optional[int] = None, min_score: float = 0.0) -> List[ScoredCandidate]:
        return self.matcher.find_similar(face_id, k if k is not None else self.config.similar_k, min_score)

    def assign(self, face_ids: Sequence[int], person_id: int) -> int:
        return self.matcher.assign(face_ids, person_id)

    def unmatch(self, face_id: int) -> Optional[int]:
        return self.matcher.unmatch(face_id)

    def merge_persons(self, source_id: int, target_id: int) -> int:
        return self.matcher.merge_persons(source_id, target_id)

    def split_face(self, face_id: int, from_person_id: int, new_name: Optional[str] = None,
                   to_person_id: Optional[int] = None) -> int:
        return self.matcher.split_face(face_id, from_person_id, new_name=new_name, to_person_id=to_person_id)

    def cleanup_empty_persons(self) -> List[int]:
        return self.matcher.cleanup_empty_persons()

    def get_person_faces(self, person_id: int) -> List[Face]:
        return self.matcher.get_person_faces(person_id)

    # -- regeneration --------------------------------------------------------

    def regenerate_start(self, force: bool = False, background: bool = False) -> Job:
        if background:
            return self.regeneration.start_background(force)
        return self.regeneration.start(force)

    def regenerate_pause(self) -> Job:
        return self.regeneration.pause()

    def regenerate_reset(self) -> Optional[Job]:
        return self.regeneration.reset()

    def regenerate_progress(self) -> Dict[str, Any]:
        return self.regeneration.get_progress()

    def queue_status(self) -> Dict[str, Any]:
        return self.regeneration.diagnose()

    def queue_reset(self) -> Optional[Job]:
        return self.regeneration.reset_queue()

    # -- housekeeping --------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        return {
            "faces": self.matcher.stats(),
            "people": self.people.stats(),
            "jobs": self.jobs.stats(),
        }

    def close(self) -> None:
        if self._regeneration is not None:
            self._regeneration.join()
        self.events.close()
        self.engine.dispose()
