"""
Domain records shared by the pipeline components.

These are plain dataclasses with one canonical field set.  Conversion from
and to database rows lives in :mod:`facepeople.db`; nothing else knows about
column names.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned face box in image pixels."""
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        return cls(float(x1), float(y1), float(x2 - x1), float(y2 - y1))

    def corners(self) -> Tuple[float, float, float, float]:
        return self.x, self.y, self.x + self.width, self.y + self.height

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def iou(self, other: "BoundingBox") -> float:
        """Intersection over union of two boxes (0 when disjoint)."""
        ax1, ay1, ax2, ay2 = self.corners()
        bx1, by1, bx2, by2 = other.corners()
        inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
        inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
        intersection = inter_w * inter_h
        union = self.area + other.area - intersection
        return intersection / union if union > 0 else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class FaceInfo:
    """A candidate face returned by detection, before it becomes a row."""
    box: BoundingBox
    confidence: float
    landmarks: Optional[Dict[str, List[Point]]] = None


@dataclass(frozen=True)
class Photo:
    """What the pipeline needs to know about a photo: where its file is."""
    id: int
    file_path: str


@dataclass
class Face:
    id: int
    photo_id: int
    box: BoundingBox
    confidence: float
    embedding: Optional[np.ndarray] = None
    person_id: Optional[int] = None
    is_manual: bool = False
    landmarks: Optional[Dict[str, List[Point]]] = None
    created_at: Optional[_dt.datetime] = None

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass
class Person:
    id: int
    name: Optional[str]
    display_name: Optional[str]
    face_count: int = 0
    avatar_path: Optional[str] = None
    is_manual: bool = False
    created_at: Optional[_dt.datetime] = None

    @property
    def label(self) -> str:
        """Human readable label; unnamed clusters get a numbered placeholder."""
        return self.display_name or self.name or f"Person #{self.id}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "face_count": self.face_count,
            "avatar_path": self.avatar_path,
            "is_manual": self.is_manual,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class JobKind(str, Enum):
    SCAN = "scan"
    REGENERATE = "regenerate"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        """Running and paused jobs hold the per-kind lock."""
        return self in (JobStatus.RUNNING, JobStatus.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class JobError:
    item_id: int
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"item_id": self.item_id, "message": self.message}


@dataclass
class Job:
    """Persisted state of a background scan or regeneration job.

    ``cursor`` is the id of the last item processed and ``max_item_id`` bounds
    the work queue to the items that existed when the job was initialised, so
    a resumed job neither repeats nor grows its queue.
    """
    id: int
    kind: JobKind
    status: JobStatus = JobStatus.IDLE
    force: bool = False
    total: int = 0
    processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    errors: List[JobError] = field(default_factory=list)
    cursor: Optional[int] = None
    max_item_id: Optional[int] = None
    pause_requested: bool = False
    started_at: Optional[_dt.datetime] = None
    ended_at: Optional[_dt.datetime] = None
    last_heartbeat: Optional[_dt.datetime] = None
    message: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed)

    def to_dict(self) -> Dict[str, object]:
        def _iso(value: Optional[_dt.datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "job_id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "force": self.force,
            "total": self.total,
            "processed": self.processed,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "errors": [e.to_dict() for e in self.errors],
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "last_heartbeat": _iso(self.last_heartbeat),
            "message": self.message,
        }
