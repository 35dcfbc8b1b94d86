import pytest

from facepeople import db
from facepeople.detection import FaceDetector
from facepeople.errors import DetectionFailure
from facepeople.models import BoundingBox, FaceInfo, Photo


def face(confidence, size=50, x=0):
    return FaceInfo(BoundingBox(x, 0, size, size), confidence)


@pytest.fixture
def detector(detector_backend, events):
    return FaceDetector(detector_backend, min_confidence=0.5, min_face_size=20, max_faces=3, events=events)


def test_low_confidence_and_small_faces_are_discarded(detector, detector_backend, write_image):
    detector_backend.by_value[10] = [face(0.9), face(0.49), face(0.8, size=10), face(0.5, x=100)]
    faces = detector.detect(write_image(10))
    assert [f.confidence for f in faces] == [0.9, 0.5]


def test_max_faces_keeps_most_confident(detector, detector_backend, write_image):
    detector_backend.by_value[20] = [face(c, x=i * 60) for i, c in enumerate([0.6, 0.95, 0.7, 0.99, 0.55])]
    faces = detector.detect(write_image(20))
    assert [f.confidence for f in faces] == [0.99, 0.95, 0.7]


def test_missing_file_raises_detection_failure(detector, tmp_path):
    with pytest.raises(DetectionFailure):
        detector.detect(tmp_path / "nope.jpg")


def test_backend_error_raises_detection_failure(detector, detector_backend, write_image):
    detector_backend.fail_values.add(30)
    with pytest.raises(DetectionFailure) as excinfo:
        detector.detect(write_image(30))
    assert "backend crashed" in str(excinfo.value)


def test_batch_isolates_failures(detector, detector_backend, write_image, tmp_path):
    detector_backend.by_value[1] = [face(0.9)]
    detector_backend.by_value[3] = [face(0.9), face(0.8, x=60)]
    detector_backend.fail_values.add(2)
    photos = [
        Photo(1, write_image(1)),
        Photo(2, write_image(2)),
        Photo(3, write_image(3)),
        Photo(4, str(tmp_path / "missing.jpg")),
    ]
    progress = []
    result = detector.detect_batch(photos, on_progress=progress.append)
    assert result.processed == 4
    assert set(result.detected) == {1, 3}
    assert set(result.failures) == {2, 4}
    assert result.total_faces == 3
    assert not result.cancelled
    assert [p["current"] for p in progress[:-1]] == [1, 2, 3, 4]
    assert progress[-1]["status"] == "completed"


def test_batch_cancel_between_photos(detector, detector_backend, write_image):
    detector_backend.by_value[1] = [face(0.9)]
    photos = [Photo(i, write_image(1, name=f"p{i}.png")) for i in range(1, 6)]
    progress = []

    def on_progress(event):
        progress.append(event)
        if event["current"] == 2 and event["status"] == "detecting":
            detector.cancel()

    result = detector.detect_batch(photos, on_progress=on_progress)
    assert result.cancelled
    assert result.processed == 2
    assert progress[-1]["status"] == "cancelled"


def test_batch_publishes_progress_events(detector, detector_backend, write_image, events):
    detector_backend.by_value[5] = [face(0.9)]
    detector.detect_batch([Photo(1, write_image(5))])
    topics = [t for t, _ in events.received]
    assert topics == ["detect.progress", "detect.progress"]


def test_detect_and_save_inserts_rows_without_embedding(engine, detector, detector_backend, write_image):
    detector_backend.by_value[7] = [face(0.9), face(0.7, x=60)]
    with engine.begin() as conn:
        [photo_id] = db.insert_photos(conn, [write_image(7)])
        photo = db.get_photo(conn, photo_id)
        ids = detector.detect_and_save(photo, conn)
    with engine.connect() as conn:
        rows = db.list_faces(conn, photo_id=photo_id)
    assert [r.id for r in rows] == ids
    assert all(r.embedding is None and r.person_id is None for r in rows)
