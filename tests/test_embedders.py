import numpy as np
import pytest

from facepeople.embedders import LazyEmbedder, load_image
from facepeople.errors import EmbedderUnavailable
from facepeople.models import BoundingBox

from conftest import FakeEmbedder


def test_lazy_embedder_builds_once():
    built = []

    def factory():
        built.append(1)
        return FakeEmbedder()

    lazy = LazyEmbedder(factory, dimension=8)
    assert built == []
    box = BoundingBox(0, 0, 10, 10)
    first = lazy.embed("/photos/a.jpg", box)
    second = lazy.embed("/photos/a.jpg", box)
    assert built == [1]
    np.testing.assert_allclose(first, second)
    assert first.shape == (8,)


def test_lazy_embedder_surfaces_load_failure():
    def factory():
        raise EmbedderUnavailable("no model files")

    lazy = LazyEmbedder(factory)
    with pytest.raises(EmbedderUnavailable):
        lazy.embed("/photos/a.jpg", BoundingBox(0, 0, 10, 10))


def test_load_image(tmp_path, write_image):
    img = load_image(write_image(9))
    assert img.shape == (32, 32, 3)
    with pytest.raises(FileNotFoundError):
        load_image(tmp_path / "missing.png")
    broken = tmp_path / "broken.png"
    broken.write_bytes(b"not an image")
    with pytest.raises(OSError):
        load_image(broken)


def test_bounding_box_iou():
    a = BoundingBox(0, 0, 10, 10)
    assert a.iou(a) == pytest.approx(1.0)
    assert a.iou(BoundingBox(5, 0, 10, 10)) == pytest.approx(50 / 150)
    assert a.iou(BoundingBox(20, 20, 5, 5)) == 0.0
    assert BoundingBox.from_corners(1, 2, 11, 22) == BoundingBox(1, 2, 10, 20)
