"""
Detection and embedding model wrappers.

This module abstracts away the details of loading and running the face
models.  Two small interfaces are consumed by the pipeline:

- :class:`DetectorBackend` – ``detect(img)`` takes a BGR image and returns raw
  :class:`~facepeople.models.FaceInfo` candidates (boxes, scores, landmarks).
- :class:`FaceEmbedder` – ``embed(image_path, box)`` returns a fixed-length,
  L2-normalised vector for the face inside ``box``.

Both are injected into :class:`~facepeople.detection.FaceDetector` and
:class:`~facepeople.regeneration.RegenerationJobManager`, so tests substitute
fakes and production code uses the InsightFace wrappers below.  InsightFace
itself is imported lazily when a wrapper is constructed.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import cv2
import numpy as np
from loguru import logger

from .errors import EmbedderUnavailable, EmbeddingFailure
from .models import BoundingBox, FaceInfo

# InsightFace returns five keypoints in this order
_KPS_NAMES = ("left_eye", "right_eye", "nose", "mouth_left", "mouth_right")

# Map our model names to InsightFace's model packages
_NAME_MAP = {
    "iresnet100": "buffalo_l",
}


class DetectorBackend:
    """Base class for face detectors."""

    def detect(self, img: np.ndarray) -> List[FaceInfo]:
        """Return every face candidate found in a BGR image."""
        raise NotImplementedError


class FaceEmbedder:
    """Base class for embedders.

    ``dimension`` is the length of every vector this embedder produces.
    Implementations raise :class:`EmbeddingFailure` for a face they cannot
    embed and :class:`EmbedderUnavailable` when the backend itself is gone.
    """

    dimension: int = 512

    def embed(self, image_path: Union[str, Path], box: BoundingBox) -> np.ndarray:
        raise NotImplementedError


def load_image(path: Union[str, Path]) -> np.ndarray:
    """Read an image with OpenCV (BGR); raises ``OSError`` if unreadable."""
    if not Path(path).exists():
        raise FileNotFoundError(f"Image file not found: {path}")
    img = cv2.imread(str(path))
    if img is None:
        raise OSError(f"Could not decode image: {path}")
    return img


def _providers(use_gpu: bool) -> List[str]:
    """ONNX Runtime execution providers, CUDA first when requested and importable."""
    if use_gpu:
        try:
            import onnxruntime  # noqa: F401
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        except ImportError:
            pass
    return ["CPUExecutionProvider"]


def _face_analysis(model_name: str, use_gpu: bool, allowed_modules: Optional[List[str]],
                   det_size: int):
    """Construct and prepare an InsightFace ``FaceAnalysis`` app.

    Some InsightFace packages (e.g. antelopev2 on certain installs) fail to
    load their bundled detector; those fall back to ``buffalo_l`` which bundles
    a compatible detector and recognizer.
    """
    from insightface.app import FaceAnalysis

    pkg = _NAME_MAP.get(model_name, model_name)
    providers = _providers(use_gpu)
    kwargs = {"allowed_modules": allowed_modules} if allowed_modules else {}
    try:
        app = FaceAnalysis(name=pkg, providers=providers, **kwargs)
        app.prepare(ctx_id=0 if use_gpu else -1, det_size=(det_size, det_size))
    except AssertionError:
        if str(pkg).lower() != "antelopev2":
            raise
        logger.warning(
            "InsightFace package 'antelopev2' failed to load detection; falling back to 'buffalo_l'. "
            "To use antelopev2, ensure InsightFace >= 0.7 and a working onnxruntime install."
        )
        app = FaceAnalysis(name="buffalo_l", providers=providers, **kwargs)
        app.prepare(ctx_id=0 if use_gpu else -1, det_size=(det_size, det_size))
    return app


def _landmarks(face) -> Optional[Dict[str, List[List[float]]]]:
    kps = getattr(face, "kps", None)
    if kps is None:
        return None
    points = np.asarray(kps, dtype=float).reshape(-1, 2)
    return {name: [[float(p[0]), float(p[1])]] for name, p in zip(_KPS_NAMES, points)}


class InsightFaceDetector(DetectorBackend):
    """SCRFD detector from an InsightFace model package.

    Parameters
    ----------
    model_name: str
        InsightFace package name; ``"iresnet100"`` maps to ``buffalo_l``.
    use_gpu: bool
        Whether to use CUDA if available; falls back to CPU otherwise.
    det_size: int
        Side length of the detector input.
    """

    def __init__(self, model_name: str = "buffalo_l", use_gpu: bool = True, det_size: int = 640) -> None:
        self.app = _face_analysis(model_name, use_gpu, ["detection"], det_size)

    def detect(self, img: np.ndarray) -> List[FaceInfo]:
        results: List[FaceInfo] = []
        for f in self.app.get(img):
            x1, y1, x2, y2 = f.bbox.astype(float)
            results.append(FaceInfo(
                box=BoundingBox.from_corners(x1, y1, x2, y2),
                confidence=float(getattr(f, "det_score", 0.0)),
                landmarks=_landmarks(f),
            ))
        return results


class InsightFaceEmbedder(FaceEmbedder):
    """Recognition embeddings (ArcFace) from an InsightFace model package.

    The stored box identifies which face to embed: the photo is re-detected
    and the detection overlapping the box best (IoU at least ``min_iou``) is
    embedded.  Vectors are L2-normalised float32.
    """

    def __init__(self, model_name: str = "buffalo_l", use_gpu: bool = True, det_size: int = 640,
                 dimension: int = 512, min_iou: float = 0.5) -> None:
        try:
            self.app = _face_analysis(model_name, use_gpu, ["detection", "recognition"], det_size)
        except ImportError as exc:
            raise EmbedderUnavailable(f"InsightFace is not installed: {exc}") from exc
        except Exception as exc:
            raise EmbedderUnavailable(f"Could not load model {model_name!r}: {exc}") from exc
        self.dimension = dimension
        self.min_iou = min_iou

    def embed(self, image_path: Union[str, Path], box: BoundingBox) -> np.ndarray:
        try:
            img = load_image(image_path)
        except OSError as exc:
            raise EmbeddingFailure(None, str(exc)) from exc
        best, best_iou = None, 0.0
        for f in self.app.get(img):
            x1, y1, x2, y2 = f.bbox.astype(float)
            iou = box.iou(BoundingBox.from_corners(x1, y1, x2, y2))
            if iou > best_iou:
                best, best_iou = f, iou
        if best is None or best_iou < self.min_iou or getattr(best, "embedding", None) is None:
            raise EmbeddingFailure(None, f"No detected face overlaps the stored box (best IoU {best_iou:.2f})")
        embedding = np.asarray(best.embedding, dtype=np.float32)
        # L2 normalise
        embedding /= np.linalg.norm(embedding) + 1e-9
        return embedding


class LazyEmbedder(FaceEmbedder):
    """Defer building an embedder until the first face is embedded.

    A factory failure surfaces as :class:`EmbedderUnavailable` from
    :meth:`embed`, which fails the running job.
    """

    def __init__(self, factory: Callable[[], FaceEmbedder], dimension: int = 512) -> None:
        self._factory = factory
        self._embedder: Optional[FaceEmbedder] = None
        self._lock = threading.Lock()
        self.dimension = dimension

    def embed(self, image_path: Union[str, Path], box: BoundingBox) -> np.ndarray:
        with self._lock:
            if self._embedder is None:
                self._embedder = self._factory()
        return self._embedder.embed(image_path, box)


def get_detector_backend(model_name: str = "buffalo_l", use_gpu: bool = True) -> DetectorBackend:
    """Factory returning the production detector for a model name."""
    return InsightFaceDetector(model_name=model_name.lower(), use_gpu=use_gpu)


def get_embedder(model_name: str = "buffalo_l", use_gpu: bool = True, dimension: int = 512) -> FaceEmbedder:
    """Factory returning the production embedder for a model name."""
    return InsightFaceEmbedder(model_name=model_name.lower(), use_gpu=use_gpu, dimension=dimension)
