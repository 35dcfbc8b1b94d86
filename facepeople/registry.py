"""
Person aggregates.

:class:`PersonRegistry` is the only writer of ``Person.face_count``.  Every
membership change elsewhere calls :meth:`PersonRegistry.recount` on the same
connection, inside the same transaction, so the cached count can never drift
from the faces table.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy.engine import Connection, Engine

from . import db
from .errors import ExistingPersonConflict, IdentityRequestError, PersonNotFoundError
from .events import PEOPLE_UPDATED, EventBus
from .models import Person


def _clean_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    name = name.strip()
    if not name:
        raise IdentityRequestError("Person name must not be empty")
    return name


class PersonRegistry:
    def __init__(self, engine: Engine, events: Optional[EventBus] = None) -> None:
        self.engine = engine
        self.events = events

    def _notify(self, reason: str, person_ids: List[int]) -> None:
        if self.events is not None:
            self.events.publish(PEOPLE_UPDATED, {"reason": reason, "person_ids": sorted(person_ids)})

    # -- primitives used inside other components' transactions -------------

    def recount(self, conn: Connection, person_id: int) -> int:
        """Recompute and store the face count of one person."""
        count = db.count_faces(conn, person_id=person_id)
        db.set_person_face_count(conn, person_id, count)
        return count

    def recount_all(self, conn: Connection) -> Dict[int, int]:
        return {pid: self.recount(conn, pid) for pid in db.person_ids(conn)}

    def create_unnamed(self, conn: Connection) -> int:
        """Create an automatic person with no name; its label is ``Person #<id>``."""
        return db.insert_person(conn, name=None, display_name=None, is_manual=False)

    def delete_empty(self, conn: Connection) -> List[int]:
        """Delete every person no face references and return their IDs."""
        empty = db.empty_person_ids(conn)
        for pid in empty:
            db.delete_person(conn, pid)
        return empty

    def refresh_avatar(self, person_id: int, conn: Optional[Connection] = None) -> Optional[str]:
        """Use the photo of the person's most confident face as the avatar."""
        if conn is None:
            with self.engine.begin() as conn:
                return self.refresh_avatar(person_id, conn=conn)
        if db.get_person(conn, person_id) is None:
            raise PersonNotFoundError(person_id)
        best = db.best_avatar_face(conn, person_id)
        avatar = best[1] if best else None
        db.update_person(conn, person_id, avatar_path=avatar)
        return avatar

    # -- public operations -------------------------------------------------

    def get_all(self) -> List[Person]:
        with self.engine.connect() as conn:
            return db.list_persons(conn)

    def get(self, person_id: int) -> Person:
        with self.engine.connect() as conn:
            person = db.get_person(conn, person_id)
        if person is None:
            raise PersonNotFoundError(person_id)
        return person

    def find_by_name(self, name: str) -> Optional[Person]:
        with self.engine.connect() as conn:
            return db.find_person_by_name(conn, name)

    def search(self, query: str) -> List[Person]:
        """Persons whose name or display name contains ``query`` (case-insensitive)."""
        with self.engine.connect() as conn:
            return db.list_persons(conn, name_like=query.strip())

    def add(self, name: str, display_name: Optional[str] = None) -> Person:
        """Create a named person.

        Raises :class:`ExistingPersonConflict` if the name (compared trimmed
        and case-insensitively) is already taken.
        """
        name = _clean_name(name)
        with self.engine.begin() as conn:
            existing = db.find_person_by_name(conn, name)
            if existing is not None:
                raise ExistingPersonConflict(existing.id, name)
            pid = db.insert_person(conn, name=name, display_name=display_name or name, is_manual=True)
            person = db.get_person(conn, pid)
        logger.info(f"Added person {pid} ({name!r})")
        self._notify("add", [pid])
        return person

    def update(self, person_id: int, name: Optional[str] = None,
               display_name: Optional[str] = None) -> Person:
        values = {}
        if name is not None:
            values["name"] = _clean_name(name)
            values["is_manual"] = True
        if display_name is not None:
            values["display_name"] = display_name
        with self.engine.begin() as conn:
            if db.get_person(conn, person_id) is None:
                raise PersonNotFoundError(person_id)
            if "name" in values:
                existing = db.find_person_by_name(conn, values["name"])
                if existing is not None and existing.id != person_id:
                    raise ExistingPersonConflict(existing.id, values["name"])
            db.update_person(conn, person_id, **values)
            person = db.get_person(conn, person_id)
        self._notify("update", [person_id])
        return person

    def delete(self, person_id: int) -> int:
        """Delete a person, returning its faces to the unassigned pool.

        Returns the number of faces that were unassigned.
        """
        with self.engine.begin() as conn:
            if db.get_person(conn, person_id) is None:
                raise PersonNotFoundError(person_id)
            face_ids = [f.id for f in db.list_faces(conn, person_id=person_id)]
            released = db.set_face_person(conn, face_ids, None, is_manual=False)
            db.delete_person(conn, person_id)
        logger.info(f"Deleted person {person_id}; {released} faces unassigned")
        self._notify("delete", [person_id])
        return released

    def stats(self) -> Dict[str, int]:
        with self.engine.connect() as conn:
            return {
                "total_persons": len(db.person_ids(conn)),
                "total_faces": db.count_faces(conn),
            }
