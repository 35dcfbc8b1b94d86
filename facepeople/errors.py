"""
Error taxonomy for the identity pipeline.

Per-item failures (:class:`DetectionFailure`, :class:`EmbeddingFailure`) are
caught by the batch drivers, recorded and skipped.  Everything else is raised
to the caller.  Caller input errors derive from :class:`IdentityRequestError`
so front ends can react to the specific kind, e.g. offer "assign instead of
create" on :class:`ExistingPersonConflict`.
"""

from __future__ import annotations

from typing import Optional


class FacePeopleError(Exception):
    """Base class for all errors raised by this package."""


class DetectionFailure(FacePeopleError):
    """Face detection failed for a single photo."""

    def __init__(self, photo: str, message: str) -> None:
        super().__init__(f"Detection failed for {photo}: {message}")
        self.photo = photo
        self.message = message


class EmbeddingFailure(FacePeopleError):
    """The embedder could not produce a vector for a single face."""

    def __init__(self, face_id: Optional[int], message: str) -> None:
        super().__init__(message)
        self.face_id = face_id
        self.message = message


class EmbedderUnavailable(FacePeopleError):
    """The embedding backend itself is unavailable; fatal for a job."""


class DimensionMismatch(FacePeopleError, ValueError):
    """Two vectors that must share a dimensionality do not."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ResourceNotFoundError(FacePeopleError, LookupError):
    """Raised when a requested row does not exist."""


class FaceNotFoundError(ResourceNotFoundError):
    def __init__(self, face_id: int) -> None:
        super().__init__(f"Face {face_id} does not exist")
        self.face_id = face_id


class PersonNotFoundError(ResourceNotFoundError):
    def __init__(self, person_id: int) -> None:
        super().__init__(f"Person {person_id} does not exist")
        self.person_id = person_id


class IdentityRequestError(FacePeopleError):
    """A manual correction request was rejected."""


class InvalidMergeRequest(IdentityRequestError):
    pass


class AmbiguousSplitTarget(IdentityRequestError):
    pass


class FaceNotInPerson(IdentityRequestError):
    def __init__(self, face_id: int, person_id: int) -> None:
        super().__init__(f"Face {face_id} does not belong to person {person_id}")
        self.face_id = face_id
        self.person_id = person_id


class ExistingPersonConflict(IdentityRequestError):
    """A new person name collides with an existing person.

    ``person_id`` identifies the existing person so the caller can assign to
    it instead of creating a duplicate.
    """

    def __init__(self, person_id: int, name: str) -> None:
        super().__init__(f"Person {name!r} already exists (id={person_id})")
        self.person_id = person_id
        self.name = name


class ConcurrentJobConflict(FacePeopleError):
    """A job of the same kind is already running or paused."""

    def __init__(self, kind: str, job_id: Optional[int], stalled: bool = False) -> None:
        detail = " and appears stalled; call reset_queue() first" if stalled else ""
        super().__init__(f"A {kind} job (id={job_id}) is already active{detail}")
        self.kind = kind
        self.job_id = job_id
        self.stalled = stalled


class InvalidJobTransition(FacePeopleError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move job from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested
