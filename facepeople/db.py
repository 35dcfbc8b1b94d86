"""
Database layer for the identity pipeline.

We maintain a SQLite database with a small number of normalized tables for
photos, faces, persons and background jobs.  Every other module works with
the records in :mod:`facepeople.models`; this module is the only place that
knows column names, so storage naming never leaks into the pipeline.

The tables are created automatically if they do not exist when connecting.
All interactions are implemented using SQLAlchemy Core.  Functions take an
open :class:`~sqlalchemy.engine.Connection` and never commit on their own, so
callers can group several of them into one transaction with
``engine.begin()``.

Embedding vectors are stored as little-endian IEEE-754 float32 blobs together
with their length, so a row can be decoded without knowing the active
embedder.
"""

from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np
from sqlalchemy import (
    Table, Column, Integer, String, Float, DateTime, Boolean, JSON, LargeBinary, MetaData,
    ForeignKey, Index, create_engine, event, select, insert, update, delete, func, and_
)
from sqlalchemy.engine import Engine, Connection, RowMapping
from sqlalchemy.pool import StaticPool

from .models import BoundingBox, Face, FaceInfo, Job, JobError, JobKind, JobStatus, Person, Photo

_EMBEDDING_DTYPE = np.dtype("<f4")


def utcnow() -> _dt.datetime:
    """Naive UTC timestamp, the form SQLite ``DateTime`` columns round-trip."""
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    # Read model of the external photo store; the pipeline only reads file paths
    Table(
        "photos", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("file_path", String, nullable=False),
    )
    Table(
        "persons", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String, nullable=True, unique=True),
        Column("display_name", String, nullable=True),
        Column("face_count", Integer, nullable=False, default=0),
        Column("avatar_path", String, nullable=True),
        Column("is_manual", Boolean, nullable=False, default=False),
        Column("created_at", DateTime, nullable=False),
    )
    Table(
        "faces", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("photo_id", Integer, ForeignKey("photos.id"), nullable=False),
        Column("person_id", Integer, ForeignKey("persons.id"), nullable=True),
        Column("bbox_x", Float, nullable=False),
        Column("bbox_y", Float, nullable=False),
        Column("bbox_width", Float, nullable=False),
        Column("bbox_height", Float, nullable=False),
        Column("confidence", Float, nullable=False),
        Column("landmarks", JSON, nullable=True),
        Column("embedding", LargeBinary, nullable=True),
        Column("embedding_dim", Integer, nullable=True),
        Column("is_manual", Boolean, nullable=False, default=False),
        Column("created_at", DateTime, nullable=False),
        Index("idx_faces_person", "person_id"),
        Index("idx_faces_photo", "photo_id"),
    )
    Table(
        "jobs", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("kind", String, nullable=False),
        Column("status", String, nullable=False, default="idle"),
        Column("force", Boolean, nullable=False, default=False),
        Column("total", Integer, nullable=False, default=0),
        Column("processed", Integer, nullable=False, default=0),
        Column("success_count", Integer, nullable=False, default=0),
        Column("failed_count", Integer, nullable=False, default=0),
        Column("errors", JSON, nullable=False),  # list of {"item_id", "message"}
        Column("cursor", Integer, nullable=True),
        Column("max_item_id", Integer, nullable=True),
        Column("pause_requested", Boolean, nullable=False, default=False),
        Column("started_at", DateTime, nullable=True),
        Column("ended_at", DateTime, nullable=True),
        Column("last_heartbeat", DateTime, nullable=True),
        Column("message", String, nullable=True),
        Index("idx_jobs_kind_status", "kind", "status"),
    )
    return metadata


_METADATA = _make_metadata()
photos = _METADATA.tables["photos"]
persons = _METADATA.tables["persons"]
faces = _METADATA.tables["faces"]
jobs = _METADATA.tables["jobs"]


def _enable_foreign_keys(dbapi_conn: Any, connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def init_db(db_path: Union[Path, str]) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path or str
        Location of the SQLite database file, or ``":memory:"`` for a
        throwaway in-process database shared by all connections.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    if str(db_path) == ":memory:":
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )
    event.listen(engine, "connect", _enable_foreign_keys)
    _METADATA.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Embedding blobs


def encode_embedding(vector: Sequence[float]) -> bytes:
    """Serialise a vector as a float32 little-endian blob."""
    return np.asarray(vector, dtype=_EMBEDDING_DTYPE).tobytes()


def decode_embedding(blob: Optional[bytes], dim: Optional[int] = None) -> Optional[np.ndarray]:
    """Inverse of :func:`encode_embedding`; returns ``None`` for a missing blob."""
    if blob is None:
        return None
    vector = np.frombuffer(blob, dtype=_EMBEDDING_DTYPE).astype(np.float32)
    if dim is not None and vector.shape[0] != dim:
        raise ValueError(f"Stored embedding has {vector.shape[0]} values, expected {dim}")
    return vector


# ---------------------------------------------------------------------------
# Row mapping


def _row_to_face(row: RowMapping) -> Face:
    return Face(
        id=int(row["id"]),
        photo_id=int(row["photo_id"]),
        box=BoundingBox(row["bbox_x"], row["bbox_y"], row["bbox_width"], row["bbox_height"]),
        confidence=float(row["confidence"]),
        embedding=decode_embedding(row["embedding"], row["embedding_dim"]),
        person_id=row["person_id"],
        is_manual=bool(row["is_manual"]),
        landmarks=row["landmarks"],
        created_at=row["created_at"],
    )


def _row_to_person(row: RowMapping) -> Person:
    return Person(
        id=int(row["id"]),
        name=row["name"],
        display_name=row["display_name"],
        face_count=int(row["face_count"] or 0),
        avatar_path=row["avatar_path"],
        is_manual=bool(row["is_manual"]),
        created_at=row["created_at"],
    )


def _row_to_job(row: RowMapping) -> Job:
    return Job(
        id=int(row["id"]),
        kind=JobKind(row["kind"]),
        status=JobStatus(row["status"]),
        force=bool(row["force"]),
        total=int(row["total"]),
        processed=int(row["processed"]),
        success_count=int(row["success_count"]),
        failed_count=int(row["failed_count"]),
        errors=[JobError(int(e["item_id"]), str(e["message"])) for e in (row["errors"] or [])],
        cursor=row["cursor"],
        max_item_id=row["max_item_id"],
        pause_requested=bool(row["pause_requested"]),
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        last_heartbeat=row["last_heartbeat"],
        message=row["message"],
    )


def _job_to_values(job: Job) -> Dict[str, Any]:
    return {
        "kind": job.kind.value,
        "status": job.status.value,
        "force": job.force,
        "total": job.total,
        "processed": job.processed,
        "success_count": job.success_count,
        "failed_count": job.failed_count,
        "errors": [e.to_dict() for e in job.errors],
        "cursor": job.cursor,
        "max_item_id": job.max_item_id,
        "pause_requested": job.pause_requested,
        "started_at": job.started_at,
        "ended_at": job.ended_at,
        "last_heartbeat": job.last_heartbeat,
        "message": job.message,
    }


def _bulk_insert_with_ids(conn: Connection, table: Table, rows: List[Dict[str, Any]]) -> List[int]:
    """Insert many rows and return their primary keys in order."""
    inserted_ids: List[int] = []
    for row in rows:
        result = conn.execute(insert(table).values(**row))
        inserted_ids.append(int(result.inserted_primary_key[0]))
    return inserted_ids


# ---------------------------------------------------------------------------
# Photos


def insert_photos(conn: Connection, file_paths: Iterable[Union[str, Path]]) -> List[int]:
    """Register photo files and return their IDs."""
    return _bulk_insert_with_ids(conn, photos, [{"file_path": str(p)} for p in file_paths])


def get_photo(conn: Connection, photo_id: int) -> Optional[Photo]:
    row = conn.execute(select(photos).where(photos.c.id == photo_id)).mappings().first()
    return Photo(int(row["id"]), row["file_path"]) if row else None


# ---------------------------------------------------------------------------
# Faces


def insert_faces(conn: Connection, photo_id: int, face_infos: Iterable[FaceInfo]) -> List[int]:
    """Insert detected faces for a photo (no embedding, no person)."""
    now = utcnow()
    rows = []
    for info in face_infos:
        rows.append({
            "photo_id": photo_id,
            "person_id": None,
            "bbox_x": info.box.x,
            "bbox_y": info.box.y,
            "bbox_width": info.box.width,
            "bbox_height": info.box.height,
            "confidence": float(info.confidence),
            "landmarks": info.landmarks,
            "embedding": None,
            "embedding_dim": None,
            "is_manual": False,
            "created_at": now,
        })
    return _bulk_insert_with_ids(conn, faces, rows)


def get_face(conn: Connection, face_id: int) -> Optional[Face]:
    row = conn.execute(select(faces).where(faces.c.id == face_id)).mappings().first()
    return _row_to_face(row) if row else None


def list_faces(conn: Connection, person_id: Optional[int] = None, photo_id: Optional[int] = None,
               with_embedding: Optional[bool] = None, unassigned: bool = False,
               face_ids: Optional[Iterable[int]] = None) -> List[Face]:
    """Return faces matching the given filters, ordered by ID."""
    query = select(faces)
    if person_id is not None:
        query = query.where(faces.c.person_id == person_id)
    if photo_id is not None:
        query = query.where(faces.c.photo_id == photo_id)
    if with_embedding is True:
        query = query.where(faces.c.embedding.is_not(None))
    elif with_embedding is False:
        query = query.where(faces.c.embedding.is_(None))
    if unassigned:
        query = query.where(faces.c.person_id.is_(None))
    if face_ids is not None:
        query = query.where(faces.c.id.in_(list(face_ids)))
    rows = conn.execute(query.order_by(faces.c.id)).mappings().all()
    return [_row_to_face(row) for row in rows]


def count_faces(conn: Connection, person_id: Optional[int] = None, assigned: Optional[bool] = None) -> int:
    query = select(func.count()).select_from(faces)
    if person_id is not None:
        query = query.where(faces.c.person_id == person_id)
    if assigned is True:
        query = query.where(faces.c.person_id.is_not(None))
    elif assigned is False:
        query = query.where(faces.c.person_id.is_(None))
    return int(conn.execute(query).scalar_one())


def regeneration_candidates(conn: Connection, force: bool, after_id: Optional[int] = None,
                            max_id: Optional[int] = None) -> List[int]:
    """Face IDs a regeneration job should process, in ascending order.

    Without ``force`` only faces lacking an embedding are returned.  The
    optional bounds restrict the result to ``after_id < id <= max_id``.
    """
    query = select(faces.c.id)
    if not force:
        query = query.where(faces.c.embedding.is_(None))
    if after_id is not None:
        query = query.where(faces.c.id > after_id)
    if max_id is not None:
        query = query.where(faces.c.id <= max_id)
    return [int(r) for r in conn.execute(query.order_by(faces.c.id)).scalars()]


def max_face_id(conn: Connection) -> Optional[int]:
    value = conn.execute(select(func.max(faces.c.id))).scalar()
    return int(value) if value is not None else None


def set_face_embedding(conn: Connection, face_id: int, vector: np.ndarray) -> None:
    conn.execute(
        update(faces)
        .where(faces.c.id == face_id)
        .values(embedding=encode_embedding(vector), embedding_dim=int(vector.shape[0]))
    )


def clear_face_embedding(conn: Connection, face_id: int) -> None:
    conn.execute(update(faces).where(faces.c.id == face_id).values(embedding=None, embedding_dim=None))


def embedding_dim_counts(conn: Connection) -> Dict[int, int]:
    """Number of embedded faces per stored vector length."""
    query = (select(faces.c.embedding_dim, func.count())
             .where(faces.c.embedding.is_not(None))
             .group_by(faces.c.embedding_dim))
    return {int(dim): int(count) for dim, count in conn.execute(query) if dim is not None}


def set_face_person(conn: Connection, face_ids: Sequence[int], person_id: Optional[int],
                    is_manual: bool) -> int:
    """Point faces at a person (or none) and return the number of rows changed."""
    if not face_ids:
        return 0
    result = conn.execute(
        update(faces)
        .where(faces.c.id.in_(list(face_ids)))
        .values(person_id=person_id, is_manual=is_manual)
    )
    return int(result.rowcount)


def repoint_faces(conn: Connection, source_person_id: int, target_person_id: int) -> int:
    """Move every face of one person to another and return how many moved."""
    result = conn.execute(
        update(faces)
        .where(faces.c.person_id == source_person_id)
        .values(person_id=target_person_id)
    )
    return int(result.rowcount)


def clear_automatic_assignments(conn: Connection) -> Set[int]:
    """Unassign every face that was not placed manually.

    Returns the IDs of persons that lost faces so their counts can be refreshed.
    """
    condition = and_(faces.c.person_id.is_not(None), faces.c.is_manual == False)  # noqa: E712
    affected = {int(pid) for pid in conn.execute(
        select(faces.c.person_id).where(condition).distinct()
    ).scalars()}
    conn.execute(update(faces).where(condition).values(person_id=None))
    return affected


def delete_faces_for_photo(conn: Connection, photo_id: int) -> Set[int]:
    """Delete all faces of a photo; returns the IDs of persons that lost faces."""
    affected = {int(pid) for pid in conn.execute(
        select(faces.c.person_id)
        .where(and_(faces.c.photo_id == photo_id, faces.c.person_id.is_not(None)))
        .distinct()
    ).scalars()}
    conn.execute(delete(faces).where(faces.c.photo_id == photo_id))
    return affected


def load_embeddings(conn: Connection, assigned: Optional[bool] = None, dim: Optional[int] = None
                    ) -> Tuple[List[int], List[int], List[Optional[int]], np.ndarray]:
    """Load face embeddings as a matrix.

    Returns ``(face_ids, photo_ids, person_ids, matrix)`` ordered by face ID;
    ``matrix`` has shape ``(n_faces, dim)`` (``(0, 0)`` when empty).
    ``assigned`` filters on whether a face belongs to a person and ``dim``
    keeps only vectors of that length.
    """
    query = select(faces.c.id, faces.c.photo_id, faces.c.person_id,
                   faces.c.embedding, faces.c.embedding_dim).where(faces.c.embedding.is_not(None))
    if assigned is True:
        query = query.where(faces.c.person_id.is_not(None))
    elif assigned is False:
        query = query.where(faces.c.person_id.is_(None))
    if dim is not None:
        query = query.where(faces.c.embedding_dim == dim)
    rows = conn.execute(query.order_by(faces.c.id)).mappings().all()
    if not rows:
        return [], [], [], np.zeros((0, 0), dtype=np.float32)
    vectors = [decode_embedding(r["embedding"], r["embedding_dim"]) for r in rows]
    dims = {v.shape[0] for v in vectors}
    if len(dims) != 1:
        raise ValueError(f"Stored embeddings have mixed dimensions: {sorted(dims)}")
    return (
        [int(r["id"]) for r in rows],
        [int(r["photo_id"]) for r in rows],
        [r["person_id"] for r in rows],
        np.vstack(vectors).astype(np.float32),
    )


# ---------------------------------------------------------------------------
# Persons


def insert_person(conn: Connection, name: Optional[str], display_name: Optional[str],
                  is_manual: bool, avatar_path: Optional[str] = None) -> int:
    result = conn.execute(
        insert(persons).values(
            name=name,
            display_name=display_name,
            face_count=0,
            avatar_path=avatar_path,
            is_manual=is_manual,
            created_at=utcnow(),
        )
    )
    return int(result.inserted_primary_key[0])


def get_person(conn: Connection, person_id: int) -> Optional[Person]:
    row = conn.execute(select(persons).where(persons.c.id == person_id)).mappings().first()
    return _row_to_person(row) if row else None


def list_persons(conn: Connection, name_like: Optional[str] = None) -> List[Person]:
    query = select(persons)
    if name_like:
        pattern = f"%{name_like.lower()}%"
        query = query.where(
            func.lower(persons.c.name).like(pattern) | func.lower(persons.c.display_name).like(pattern)
        )
    rows = conn.execute(query.order_by(persons.c.face_count.desc(), persons.c.id)).mappings().all()
    return [_row_to_person(row) for row in rows]


def find_person_by_name(conn: Connection, name: str) -> Optional[Person]:
    """Case-insensitive, whitespace-trimmed lookup by name."""
    normalized = name.strip().lower()
    row = conn.execute(
        select(persons).where(func.lower(func.trim(persons.c.name)) == normalized)
        .order_by(persons.c.id)
    ).mappings().first()
    return _row_to_person(row) if row else None


def update_person(conn: Connection, person_id: int, **values: Any) -> bool:
    if not values:
        return get_person(conn, person_id) is not None
    result = conn.execute(update(persons).where(persons.c.id == person_id).values(**values))
    return result.rowcount > 0


def set_person_face_count(conn: Connection, person_id: int, face_count: int) -> None:
    conn.execute(update(persons).where(persons.c.id == person_id).values(face_count=face_count))


def delete_person(conn: Connection, person_id: int) -> bool:
    result = conn.execute(delete(persons).where(persons.c.id == person_id))
    return result.rowcount > 0


def person_ids(conn: Connection) -> List[int]:
    return [int(r) for r in conn.execute(select(persons.c.id).order_by(persons.c.id)).scalars()]


def empty_person_ids(conn: Connection) -> List[int]:
    """IDs of persons that no face references, counted from the faces table."""
    query = (
        select(persons.c.id)
        .select_from(persons.outerjoin(faces, faces.c.person_id == persons.c.id))
        .group_by(persons.c.id)
        .having(func.count(faces.c.id) == 0)
        .order_by(persons.c.id)
    )
    return [int(r) for r in conn.execute(query).scalars()]


def best_avatar_face(conn: Connection, person_id: int) -> Optional[Tuple[int, str]]:
    """Return ``(face_id, file_path)`` of the person's most confident face."""
    row = conn.execute(
        select(faces.c.id, photos.c.file_path)
        .select_from(faces.join(photos, photos.c.id == faces.c.photo_id))
        .where(faces.c.person_id == person_id)
        .order_by(faces.c.confidence.desc(), faces.c.id)
        .limit(1)
    ).first()
    return (int(row[0]), row[1]) if row else None


# ---------------------------------------------------------------------------
# Jobs


def insert_job(conn: Connection, job: Job) -> int:
    result = conn.execute(insert(jobs).values(**_job_to_values(job)))
    return int(result.inserted_primary_key[0])


def save_job(conn: Connection, job: Job) -> None:
    conn.execute(update(jobs).where(jobs.c.id == job.id).values(**_job_to_values(job)))


def get_job(conn: Connection, job_id: int) -> Optional[Job]:
    row = conn.execute(select(jobs).where(jobs.c.id == job_id)).mappings().first()
    return _row_to_job(row) if row else None


def latest_job(conn: Connection, kind: JobKind, statuses: Optional[Iterable[JobStatus]] = None) -> Optional[Job]:
    """Most recent job of a kind, optionally restricted to some statuses."""
    query = select(jobs).where(jobs.c.kind == kind.value)
    if statuses is not None:
        query = query.where(jobs.c.status.in_([s.value for s in statuses]))
    row = conn.execute(query.order_by(jobs.c.id.desc()).limit(1)).mappings().first()
    return _row_to_job(row) if row else None


def list_jobs(conn: Connection, kind: Optional[JobKind] = None, limit: int = 100) -> List[Job]:
    query = select(jobs)
    if kind is not None:
        query = query.where(jobs.c.kind == kind.value)
    rows = conn.execute(query.order_by(jobs.c.id.desc()).limit(limit)).mappings().all()
    return [_row_to_job(row) for row in rows]


def count_jobs_by_status(conn: Connection) -> Dict[str, int]:
    rows = conn.execute(select(jobs.c.status, func.count()).group_by(jobs.c.status)).all()
    return {str(status): int(count) for status, count in rows}


def set_job_pause_requested(conn: Connection, job_id: int, value: bool) -> None:
    conn.execute(update(jobs).where(jobs.c.id == job_id).values(pause_requested=value))


def job_pause_requested(conn: Connection, job_id: int) -> bool:
    value = conn.execute(select(jobs.c.pause_requested).where(jobs.c.id == job_id)).scalar()
    return bool(value)


def delete_jobs_before(conn: Connection, before: _dt.datetime) -> int:
    """Delete finished jobs started before ``before``; active jobs are kept."""
    result = conn.execute(
        delete(jobs).where(and_(
            jobs.c.started_at < before,
            jobs.c.status.in_([s.value for s in JobStatus if s.is_terminal]),
        ))
    )
    return int(result.rowcount)
