"""
Matching of face embeddings to person identities.

:class:`ClusterMatcher` assigns unmatched faces to existing persons by
nearest-member similarity, groups the rest into new unnamed persons with
connected components over a thresholded similarity graph, and applies the
manual corrections (assign, unmatch, merge, split).  Every operation runs in
a single transaction and refreshes the face counts of the persons it touched
through :class:`~facepeople.registry.PersonRegistry`.

Similar pairs are found with an exact faiss inner-product range search.
With ``cannot_link_same_photo`` edges between two faces of the same photo
are pruned before computing components.  Components are
transitive: if A matches B and B matches C, all three become one person even
when A and C are below the threshold.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np
from loguru import logger
from sqlalchemy.engine import Connection, Engine

from . import db
from .errors import (
    AmbiguousSplitTarget, ExistingPersonConflict, FaceNotFoundError, FaceNotInPerson,
    IdentityRequestError, InvalidMergeRequest, PersonNotFoundError,
)
from .events import PEOPLE_UPDATED, EventBus
from .models import Face
from .registry import PersonRegistry
from .similarity import ScoredCandidate, batch_similarity, normalize_rows, top_k


def connected_components(n_nodes: int, edges: Iterable[Tuple[int, int]]) -> Dict[int, List[int]]:
    """Compute connected components using a union–find structure.

    Returns a mapping from component representative to a list of member indices.
    """
    parent = list(range(n_nodes))

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a: int, b: int) -> None:
        ra, rb = find(a), find(b)
        if ra != rb:
            # smaller index becomes the root so representatives are stable
            if rb < ra:
                ra, rb = rb, ra
            parent[rb] = ra

    for a, b in edges:
        union(a, b)
    # Group by root
    comp: Dict[int, List[int]] = defaultdict(list)
    for i in range(n_nodes):
        comp[find(i)].append(i)
    return comp


def _range_search(base: np.ndarray, queries: np.ndarray, threshold: float,
                  block: int = 4096) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """All ``(query, base, score)`` triples with inner product at least ``threshold``.

    Exact search over a flat inner-product index; rows are expected to be
    L2-normalised.  Results are ordered by query row, then base row.
    """
    empty = (np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float32))
    if base.shape[0] == 0 or queries.shape[0] == 0:
        return empty
    index = faiss.IndexFlatIP(base.shape[1])
    index.add(np.ascontiguousarray(base, dtype=np.float32))
    # faiss keeps scores strictly above the radius
    radius = float(np.nextafter(np.float32(threshold), np.float32(-np.inf)))
    floor = np.float32(threshold)
    found_q, found_b, found_s = [], [], []
    for start in range(0, queries.shape[0], block):
        chunk = np.ascontiguousarray(queries[start:start + block], dtype=np.float32)
        lims, scores, ids = index.range_search(chunk, radius)
        rows = np.repeat(np.arange(chunk.shape[0], dtype=np.int64) + start, np.diff(lims).astype(np.int64))
        keep = scores >= floor
        found_q.append(rows[keep])
        found_b.append(ids[keep].astype(np.int64))
        found_s.append(scores[keep])
    q, b, s = np.concatenate(found_q), np.concatenate(found_b), np.concatenate(found_s)
    order = np.lexsort((b, q))
    return q[order], b[order], s[order]


def similarity_edges(embeddings: np.ndarray, photo_ids: Sequence[int], threshold: float,
                     cannot_link_same_photo: bool = False) -> List[Tuple[int, int]]:
    """Undirected edges ``(i, j)``, ``i < j``, between rows scoring at least ``threshold``."""
    if embeddings.shape[0] < 2:
        return []
    unit = normalize_rows(embeddings)
    rows, cols, _ = _range_search(unit, unit, threshold)
    edges = []
    for i, j in zip(rows.tolist(), cols.tolist()):
        if i >= j:
            continue
        if cannot_link_same_photo and photo_ids[i] == photo_ids[j]:
            continue
        edges.append((i, j))
    return edges


@dataclass
class AutoMatchResult:
    """Outcome of one :meth:`ClusterMatcher.auto_match` pass."""
    matched_existing: int = 0
    persons_created: List[int] = field(default_factory=list)
    clusters: List[List[int]] = field(default_factory=list)
    unclustered: List[int] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched_existing": self.matched_existing,
            "persons_created": list(self.persons_created),
            "clusters": [list(c) for c in self.clusters],
            "unclustered": list(self.unclustered),
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


class ClusterMatcher:
    """Clustering and manual identity corrections over the face store.

    Parameters
    ----------
    engine: sqlalchemy.Engine
        Store engine.
    registry: PersonRegistry
        Used to create, recount and delete persons.
    match_threshold: float
        Minimum cosine similarity for a face to join a person or another face.
    min_cluster_size: int
        Groups of unmatched faces smaller than this stay unassigned.
    cannot_link_same_photo: bool
        Forbid direct edges between faces detected in the same photo.  Off
        by default.
    embedding_dim: int, optional
        Vector length that takes part in matching.  When omitted the length
        held by most stored faces is used.  Faces of any other length are
        skipped with a warning.
    events: EventBus, optional
        Receives ``people.updated`` after each change.
    """

    def __init__(self, engine: Engine, registry: PersonRegistry, match_threshold: float = 0.5,
                 min_cluster_size: int = 1, cannot_link_same_photo: bool = False,
                 embedding_dim: Optional[int] = None, events: Optional[EventBus] = None) -> None:
        self.engine = engine
        self.registry = registry
        self.match_threshold = match_threshold
        self.min_cluster_size = max(1, int(min_cluster_size))
        self.cannot_link_same_photo = cannot_link_same_photo
        self.embedding_dim = embedding_dim
        self.events = events

    def _matching_dim(self, conn: Connection) -> Optional[int]:
        counts = db.embedding_dim_counts(conn)
        if not counts:
            return None
        dim = self.embedding_dim
        if dim is None:
            dim = max(counts, key=lambda d: (counts[d], d))
        skipped = sum(n for d, n in counts.items() if d != dim)
        if skipped:
            logger.warning(f"Skipping {skipped} faces whose embeddings are not {dim}-dimensional")
        return dim

    def _notify(self, reason: str, person_ids: Iterable[int]) -> None:
        if self.events is not None:
            self.events.publish(PEOPLE_UPDATED, {"reason": reason, "person_ids": sorted(set(person_ids))})

    def _recount(self, conn: Connection, person_ids: Iterable[Optional[int]]) -> None:
        for pid in sorted({p for p in person_ids if p is not None}):
            if db.get_person(conn, pid) is not None:
                self.registry.recount(conn, pid)
                self.registry.refresh_avatar(pid, conn=conn)

    # -- automatic matching ------------------------------------------------

    def auto_match(self) -> AutoMatchResult:
        """Assign or cluster every face that has an embedding but no person.

        Faces are first matched to the existing person holding their most
        similar member face.  The remaining faces are grouped into connected
        components; components of at least ``min_cluster_size`` faces become
        new unnamed persons.
        """
        started = time.perf_counter()
        result = AutoMatchResult()
        touched: Set[int] = set()
        with self.engine.begin() as conn:
            dim = self._matching_dim(conn)
            if dim is None:
                result.elapsed_ms = (time.perf_counter() - started) * 1000
                return result
            face_ids, photo_ids, person_ids, matrix = db.load_embeddings(conn, dim=dim)
            pending = [i for i, pid in enumerate(person_ids) if pid is None]
            members = [i for i, pid in enumerate(person_ids) if pid is not None]
            if not pending:
                result.elapsed_ms = (time.perf_counter() - started) * 1000
                return result

            leftover = list(pending)
            if members:
                # nearest member per person; ties resolve to the lowest person id
                unit = normalize_rows(matrix)
                rows, hits, scores = _range_search(unit[members], unit[pending], self.match_threshold)
                best: Dict[int, Tuple[float, int]] = {}
                for row, hit, score in zip(rows.tolist(), hits.tolist(), scores.tolist()):
                    pid = person_ids[members[hit]]
                    current = best.get(row)
                    if current is None or (-score, pid) < (-current[0], current[1]):
                        best[row] = (score, pid)
                by_person: Dict[int, List[int]] = defaultdict(list)
                leftover = []
                for row, idx in enumerate(pending):
                    if row in best:
                        by_person[best[row][1]].append(face_ids[idx])
                    else:
                        leftover.append(idx)
                for pid, fids in by_person.items():
                    db.set_face_person(conn, fids, pid, is_manual=False)
                    result.matched_existing += len(fids)
                    touched.add(pid)

            # group what is left
            if leftover:
                edges = similarity_edges(
                    matrix[leftover], [photo_ids[i] for i in leftover],
                    self.match_threshold, self.cannot_link_same_photo,
                )
                comps = connected_components(len(leftover), edges)
                groups = sorted(
                    (sorted(face_ids[leftover[k]] for k in component) for component in comps.values()),
                    key=lambda g: g[0],
                )
                for group in groups:
                    if len(group) >= self.min_cluster_size:
                        pid = self.registry.create_unnamed(conn)
                        db.set_face_person(conn, group, pid, is_manual=False)
                        result.persons_created.append(pid)
                        result.clusters.append(group)
                        touched.add(pid)
                    else:
                        result.unclustered.extend(group)
                result.unclustered.sort()
            self._recount(conn, touched)
        result.elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Auto match: {result.matched_existing} faces to existing persons, "
            f"{len(result.persons_created)} new persons, {len(result.unclustered)} unclustered "
            f"({result.elapsed_ms:.1f} ms)"
        )
        if touched:
            self._notify("auto_match", touched)
        return result

    def find_similar(self, face_id: int, k: int = 10, min_score: float = 0.0) -> List[ScoredCandidate]:
        """Faces most similar to ``face_id``, excluding itself.

        Returns an empty list when the face has no embedding yet.
        """
        with self.engine.connect() as conn:
            face = db.get_face(conn, face_id)
            if face is None:
                raise FaceNotFoundError(face_id)
            if face.embedding is None:
                return []
            ids, _, _, matrix = db.load_embeddings(conn, dim=face.embedding.shape[0])
        others = [(fid, matrix[i]) for i, fid in enumerate(ids) if fid != face_id]
        return top_k(batch_similarity(face.embedding, others), k, min_score)

    # -- manual corrections ------------------------------------------------

    def assign(self, face_ids: Sequence[int], person_id: int) -> int:
        """Manually assign faces to a person; returns how many were changed."""
        face_ids = list(dict.fromkeys(int(f) for f in face_ids))
        with self.engine.begin() as conn:
            if db.get_person(conn, person_id) is None:
                raise PersonNotFoundError(person_id)
            found = db.list_faces(conn, face_ids=face_ids)
            missing = set(face_ids) - {f.id for f in found}
            if missing:
                raise FaceNotFoundError(min(missing))
            previous = {f.person_id for f in found}
            changed = db.set_face_person(conn, face_ids, person_id, is_manual=True)
            self._recount(conn, previous | {person_id})
        logger.info(f"Assigned {changed} faces to person {person_id}")
        self._notify("assign", {p for p in previous if p is not None} | {person_id})
        return changed

    def unmatch(self, face_id: int) -> Optional[int]:
        """Detach a face from its person; returns the former person id."""
        with self.engine.begin() as conn:
            face = db.get_face(conn, face_id)
            if face is None:
                raise FaceNotFoundError(face_id)
            db.set_face_person(conn, [face_id], None, is_manual=False)
            self._recount(conn, [face.person_id])
        if face.person_id is not None:
            logger.info(f"Unmatched face {face_id} from person {face.person_id}")
            self._notify("unmatch", [face.person_id])
        return face.person_id

    def merge_persons(self, source_id: int, target_id: int) -> int:
        """Move every face of ``source_id`` to ``target_id`` and delete the source.

        Returns the number of faces moved.
        """
        if source_id == target_id:
            raise InvalidMergeRequest(f"Cannot merge person {source_id} into itself")
        with self.engine.begin() as conn:
            for pid in (source_id, target_id):
                if db.get_person(conn, pid) is None:
                    raise InvalidMergeRequest(f"Person {pid} does not exist")
            moved = db.repoint_faces(conn, source_id, target_id)
            db.delete_person(conn, source_id)
            self._recount(conn, [target_id])
        logger.info(f"Merged person {source_id} into {target_id} ({moved} faces)")
        self._notify("merge", [source_id, target_id])
        return moved

    def split_face(self, face_id: int, from_person_id: int, new_name: Optional[str] = None,
                   to_person_id: Optional[int] = None) -> int:
        """Move one face out of a person into a new named person or another person.

        Exactly one of ``new_name`` and ``to_person_id`` must be given.  A
        ``new_name`` matching an existing person raises
        :class:`ExistingPersonConflict` carrying that person's id.  Returns the
        id of the person now holding the face.
        """
        if (new_name is None) == (to_person_id is None):
            raise AmbiguousSplitTarget("Give exactly one of new_name or to_person_id")
        with self.engine.begin() as conn:
            face = db.get_face(conn, face_id)
            if face is None:
                raise FaceNotFoundError(face_id)
            if face.person_id != from_person_id:
                raise FaceNotInPerson(face_id, from_person_id)
            if new_name is not None:
                name = new_name.strip()
                if not name:
                    raise IdentityRequestError("Person name must not be empty")
                existing = db.find_person_by_name(conn, name)
                if existing is not None:
                    raise ExistingPersonConflict(existing.id, name)
                target = db.insert_person(conn, name=name, display_name=name, is_manual=True)
            else:
                if to_person_id == from_person_id:
                    raise IdentityRequestError(f"Face {face_id} already belongs to person {to_person_id}")
                if db.get_person(conn, to_person_id) is None:
                    raise PersonNotFoundError(to_person_id)
                target = to_person_id
            db.set_face_person(conn, [face_id], target, is_manual=True)
            self._recount(conn, [from_person_id, target])
        logger.info(f"Split face {face_id} from person {from_person_id} to {target}")
        self._notify("split", [from_person_id, target])
        return target

    def cleanup_empty_persons(self) -> List[int]:
        """Delete persons without faces; returns their ids."""
        with self.engine.begin() as conn:
            deleted = self.registry.delete_empty(conn)
        if deleted:
            logger.info(f"Removed {len(deleted)} empty persons")
            self._notify("cleanup", deleted)
        return deleted

    def recluster(self, reset_automatic: bool = False) -> Dict[str, Any]:
        """Re-run matching, optionally discarding automatic assignments first.

        Manual assignments always survive.  Used after regeneration, where a
        forced run changes the embedding space of every face.
        """
        released: Set[int] = set()
        if reset_automatic:
            with self.engine.begin() as conn:
                released = db.clear_automatic_assignments(conn)
                self._recount(conn, released)
            logger.info(f"Cleared automatic assignments of {len(released)} persons")
        result = self.auto_match()
        deleted = self.cleanup_empty_persons()
        return {"auto_match": result.to_dict(), "deleted_persons": deleted}

    # -- queries -----------------------------------------------------------

    def get_person_faces(self, person_id: int) -> List[Face]:
        with self.engine.connect() as conn:
            if db.get_person(conn, person_id) is None:
                raise PersonNotFoundError(person_id)
            return db.list_faces(conn, person_id=person_id)

    def stats(self) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            total = db.count_faces(conn)
            matched = db.count_faces(conn, assigned=True)
        return {
            "total_faces": total,
            "matched_faces": matched,
            "unmatched_faces": total - matched,
            "match_rate": matched / total if total else 0.0,
        }
