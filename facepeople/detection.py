"""
Face detection over photo files.

:class:`FaceDetector` wraps a :class:`~facepeople.embedders.DetectorBackend`
and applies the acceptance rules before any candidate can become a Face row:
a minimum confidence, a minimum box side and a per-photo cap on the number
of faces (highest confidence first).

Batches are processed strictly one photo at a time.  A photo that fails is
recorded and skipped; a cancel request is honoured between photos.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from loguru import logger
from sqlalchemy.engine import Connection

from . import db
from .embedders import DetectorBackend, load_image
from .errors import DetectionFailure
from .events import DETECT_PROGRESS, EventBus
from .models import FaceInfo, Photo

ProgressCallback = Callable[[Dict[str, Any]], None]
DetectedCallback = Callable[[Photo, List[FaceInfo]], None]
FailedCallback = Callable[[Photo, str], None]


@dataclass
class BatchDetectionResult:
    total: int
    processed: int = 0
    detected: Dict[int, List[FaceInfo]] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def total_faces(self) -> int:
        return sum(len(v) for v in self.detected.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "total_faces": self.total_faces,
            "faces_per_photo": {pid: len(v) for pid, v in self.detected.items()},
            "failures": dict(self.failures),
            "cancelled": self.cancelled,
        }


class FaceDetector:
    """Detect faces in photos with an injected backend.

    Parameters
    ----------
    backend: DetectorBackend
        Produces raw candidates for a BGR image.
    min_confidence: float
        Candidates scoring below this are discarded.
    min_face_size: int
        Minimum box side length in pixels.
    max_faces: int
        Maximum number of faces kept per photo.
    events: EventBus, optional
        Receives ``detect.progress`` during batches.
    """

    def __init__(self, backend: DetectorBackend, min_confidence: float = 0.5, min_face_size: int = 20,
                 max_faces: int = 10, events: Optional[EventBus] = None) -> None:
        self.backend = backend
        self.min_confidence = min_confidence
        self.min_face_size = min_face_size
        self.max_faces = max_faces
        self.events = events
        self._cancel = threading.Event()

    def accept(self, candidates: Sequence[FaceInfo]) -> List[FaceInfo]:
        """Apply the confidence, size and count rules to raw candidates."""
        kept = [
            c for c in candidates
            if c.confidence >= self.min_confidence
            and min(c.box.width, c.box.height) >= self.min_face_size
        ]
        kept.sort(key=lambda c: c.confidence, reverse=True)
        return kept[: self.max_faces]

    def detect(self, image_path: Union[str, Path]) -> List[FaceInfo]:
        """Detect faces in one image file; raises :class:`DetectionFailure`."""
        try:
            img = load_image(image_path)
        except OSError as exc:
            raise DetectionFailure(str(image_path), str(exc)) from exc
        try:
            candidates = self.backend.detect(img)
        except Exception as exc:
            raise DetectionFailure(str(image_path), f"{type(exc).__name__}: {exc}") from exc
        faces = self.accept(candidates)
        logger.debug(f"{image_path}: {len(faces)} of {len(candidates)} candidates kept")
        return faces

    def detect_and_save(self, photo: Photo, conn: Connection) -> List[int]:
        """Detect faces in ``photo`` and insert them as rows without embeddings."""
        infos = self.detect(photo.file_path)
        return db.insert_faces(conn, photo.id, infos)

    def cancel(self) -> None:
        """Ask a running batch to stop before its next photo."""
        self._cancel.set()

    def _progress(self, on_progress: Optional[ProgressCallback], payload: Dict[str, Any]) -> None:
        if on_progress is not None:
            on_progress(payload)
        if self.events is not None:
            self.events.publish(DETECT_PROGRESS, payload)

    def detect_batch(self, photos: Sequence[Photo], on_progress: Optional[ProgressCallback] = None,
                     on_detected: Optional[DetectedCallback] = None,
                     on_failed: Optional[FailedCallback] = None) -> BatchDetectionResult:
        """Detect faces in each photo in order.

        ``on_detected`` is called with the accepted faces of every photo that
        succeeded (the scan job uses it to save rows).  ``on_failed`` receives
        each photo that failed with the reason.  Failures are recorded in the
        result and never abort the batch.
        """
        self._cancel.clear()
        result = BatchDetectionResult(total=len(photos))
        for index, photo in enumerate(photos, start=1):
            if self._cancel.is_set():
                result.cancelled = True
                logger.info(f"Detection cancelled after {result.processed} of {result.total} photos")
                break
            try:
                faces = self.detect(photo.file_path)
            except DetectionFailure as exc:
                logger.warning(str(exc))
                result.failures[photo.id] = exc.message
                faces = None
                if on_failed is not None:
                    on_failed(photo, exc.message)
            else:
                result.detected[photo.id] = faces
                if on_detected is not None:
                    on_detected(photo, faces)
            result.processed += 1
            self._progress(on_progress, {
                "current": index,
                "total": result.total,
                "photo_id": photo.id,
                "detected_faces": len(faces) if faces is not None else 0,
                "status": "detecting",
            })
        self._progress(on_progress, {
            "current": result.processed,
            "total": result.total,
            "photo_id": None,
            "detected_faces": result.total_faces,
            "status": "cancelled" if result.cancelled else "completed",
        })
        return result
