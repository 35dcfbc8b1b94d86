import datetime as _dt
import itertools
import zlib

import cv2
import numpy as np
import pytest

from facepeople import db
from facepeople.clustering import ClusterMatcher
from facepeople.embedders import DetectorBackend, FaceEmbedder
from facepeople.errors import EmbedderUnavailable, EmbeddingFailure
from facepeople.events import EventBus
from facepeople.jobs import JobStore
from facepeople.models import BoundingBox, FaceInfo
from facepeople.pipeline import SqlPhotoStore
from facepeople.regeneration import RegenerationJobManager
from facepeople.registry import PersonRegistry


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-item."""


class FakeClock:
    def __init__(self, start=_dt.datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += _dt.timedelta(seconds=seconds)


class FakeEmbedder(FaceEmbedder):
    """Deterministic vectors keyed by image path.

    ``vectors`` overrides the vector for a path, ``fail_paths`` raise
    EmbeddingFailure, ``crash_after`` raises SimulatedCrash on that call and
    ``unavailable`` makes every call raise EmbedderUnavailable.
    """

    def __init__(self, dimension=8):
        self.dimension = dimension
        self.vectors = {}
        self.fail_paths = set()
        self.crash_after = None
        self.unavailable = False
        self.on_call = None
        self.calls = []

    def embed(self, image_path, box):
        path = str(image_path)
        if self.unavailable:
            raise EmbedderUnavailable("model server is down")
        if self.crash_after is not None and len(self.calls) == self.crash_after:
            raise SimulatedCrash()
        self.calls.append(path)
        if self.on_call is not None:
            self.on_call(len(self.calls))
        if path in self.fail_paths:
            raise EmbeddingFailure(None, f"no face found in {path}")
        if path in self.vectors:
            return np.asarray(self.vectors[path], dtype=np.float32)
        rng = np.random.default_rng(zlib.crc32(path.encode()))
        v = rng.normal(size=self.dimension).astype(np.float32)
        return v / np.linalg.norm(v)


class FakeDetectorBackend(DetectorBackend):
    """Returns canned candidates keyed by the fill value of the image.

    ``fail_values`` raise a backend error, ``crash_values`` raise SimulatedCrash.
    """

    def __init__(self):
        self.by_value = {}
        self.fail_values = set()
        self.crash_values = set()

    def detect(self, img):
        value = int(img[0, 0, 0])
        if value in self.fail_values:
            raise RuntimeError("backend crashed")
        if value in self.crash_values:
            raise SimulatedCrash()
        return list(self.by_value.get(value, []))


@pytest.fixture
def engine(tmp_path):
    engine = db.init_db(tmp_path / "faces.sqlite")
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    bus = EventBus(synchronous=True)
    bus.received = []
    bus.subscribe("*", lambda topic, payload: bus.received.append((topic, payload)))
    return bus


@pytest.fixture
def registry(engine, events):
    return PersonRegistry(engine, events)


@pytest.fixture
def matcher(engine, registry, events):
    return ClusterMatcher(engine, registry, match_threshold=0.5, events=events)


@pytest.fixture
def job_store(engine, clock):
    return JobStore(engine, clock)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def manager(engine, embedder, matcher, job_store, events):
    return RegenerationJobManager(
        engine, SqlPhotoStore(engine), embedder, matcher, job_store, events=events, stall_timeout=30.0
    )


@pytest.fixture
def detector_backend():
    return FakeDetectorBackend()


@pytest.fixture
def write_image(tmp_path):
    """Write a small PNG whose pixels all hold ``value``."""
    def _write(value, name=None):
        path = tmp_path / (name or f"img_{value}.png")
        cv2.imwrite(str(path), np.full((32, 32, 3), value, dtype=np.uint8))
        return str(path)
    return _write


@pytest.fixture
def make_person(engine):
    def _make(name=None):
        with engine.begin() as conn:
            return db.insert_person(conn, name=name, display_name=name, is_manual=name is not None)
    return _make


@pytest.fixture
def make_face(engine):
    """Insert a face (in its own photo unless ``photo_id`` is given)."""
    counter = itertools.count(1)
    registry = PersonRegistry(engine)

    def _make(vector=None, person_id=None, photo_id=None, photo_path=None, confidence=0.9,
              box=None, is_manual=False):
        with engine.begin() as conn:
            if photo_id is None:
                photo_id = db.insert_photos(conn, [photo_path or f"/photos/p{next(counter)}.jpg"])[0]
            info = FaceInfo(box or BoundingBox(10, 10, 60, 60), confidence)
            [face_id] = db.insert_faces(conn, photo_id, [info])
            if vector is not None:
                db.set_face_embedding(conn, face_id, np.asarray(vector, dtype=np.float32))
            if person_id is not None:
                db.set_face_person(conn, [face_id], person_id, is_manual=is_manual)
                registry.recount(conn, person_id)
        return face_id
    return _make


@pytest.fixture
def assert_counts_consistent(engine):
    """Check that every cached face_count matches the faces table."""
    def _check():
        with engine.connect() as conn:
            for person in db.list_persons(conn):
                assert person.face_count == db.count_faces(conn, person_id=person.id), person
    return _check
