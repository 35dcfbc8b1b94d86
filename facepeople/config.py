"""
Configuration structures for the identity pipeline.

We use :class:`dataclasses.dataclass` to describe the parameters accepted by
the command line interface.  Each field corresponds to a user-controllable
tuning parameter, with sensible defaults.

The :func:`parse_args` function converts command line arguments into a
:class:`PipelineConfig` instance plus the parsed sub-command.  For more
advanced usage (e.g. injecting a custom detector or embedder) construct a
:class:`~facepeople.pipeline.FacePipeline` directly.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class PipelineConfig:
    """Parameters controlling the pipeline.

    Attributes
    ----------
    db_path: Path
        Path to the SQLite database holding photos, faces, persons and jobs.
        The database will be created automatically if it does not exist.
    model_name: str
        InsightFace model package used for detection and recognition.
        ``"buffalo_l"`` is the default; ``"antelopev2"`` is also supported.
    use_gpu: bool
        Run the models with the CUDA execution provider when available.
    min_confidence: float
        Detections scoring below this are discarded.
    min_face_size: int
        Minimum bounding box side length (in pixels) for detected faces to
        be kept.
    max_faces: int
        Maximum number of faces kept per photo, highest confidence first.
    embedding_dim: int
        Length of the vectors produced by the embedder.
    match_threshold: float
        Cosine similarity at or above which a face joins a person (via its
        most similar member face) or is linked to another unmatched face.
    min_cluster_size: int
        Groups of unmatched faces smaller than this stay in the unnamed pool
        instead of becoming a new person.
    cannot_link_same_photo: bool
        Forbid linking two faces from the same photo while clustering.  Off by default.
    similar_k: int
        Default number of neighbours returned by ``find_similar``.
    stall_timeout: float
        Seconds without a heartbeat after which a running job is reported
        stalled.
    log_level: str
        Minimum level written to stderr by the CLI.
    """
    db_path: Path
    model_name: str = "buffalo_l"
    use_gpu: bool = False
    min_confidence: float = 0.5
    min_face_size: int = 20
    max_faces: int = 10
    embedding_dim: int = 512
    match_threshold: float = 0.5
    min_cluster_size: int = 1
    cannot_link_same_photo: bool = False
    similar_k: int = 10
    stall_timeout: float = 30.0
    log_level: str = "INFO"
    # Additional fields can be stored as needed
    extra: Dict[str, Any] = field(default_factory=dict)


def _int_list(values: List[str]) -> List[int]:
    return [int(v) for v in values]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facepeople",
        description="Face detection, embedding and person clustering over a photo library",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--db", dest="db_path", type=Path, required=True,
                        help="Path to SQLite database file")
    parser.add_argument("--model", dest="model_name", type=str, default="buffalo_l",
                        choices=["buffalo_l", "antelopev2", "iresnet100"],
                        help="InsightFace model package")
    parser.add_argument("--gpu", dest="use_gpu", action="store_true",
                        help="Use the CUDA execution provider when available")
    parser.add_argument("--min-confidence", dest="min_confidence", type=float, default=0.5,
                        help="Discard detections scoring below this")
    parser.add_argument("--min-face-size", dest="min_face_size", type=int, default=20,
                        help="Discard faces smaller than this many pixels")
    parser.add_argument("--max-faces", dest="max_faces", type=int, default=10,
                        help="Keep at most this many faces per photo")
    parser.add_argument("--embedding-dim", dest="embedding_dim", type=int, default=512,
                        help="Length of embedding vectors")
    parser.add_argument("--threshold", dest="match_threshold", type=float, default=0.5,
                        help="Cosine similarity threshold for matching and clustering")
    parser.add_argument("--min-cluster-size", dest="min_cluster_size", type=int, default=1,
                        help="Minimum group size for a new person")
    parser.add_argument("--cannot-link-same-photo", dest="cannot_link_same_photo", action="store_true",
                        help="Never link two faces that appear in the same photo")
    parser.add_argument("--stall-timeout", dest="stall_timeout", type=float, default=30.0,
                        help="Seconds without heartbeat before a running job counts as stalled")
    parser.add_argument("--log-level", dest="log_level", type=str, default="INFO",
                        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level for messages on stderr")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("detect", help="Detect faces in photos (runs a scan job)")
    p.add_argument("photo_ids", nargs="+", help="Photo ids")
    p = sub.add_parser("undetect", help="Delete the detected faces of a photo")
    p.add_argument("photo_id", type=int)
    sub.add_parser("match", help="Assign or cluster unmatched faces")
    p = sub.add_parser("similar", help="List faces similar to a face")
    p.add_argument("face_id", type=int)
    p.add_argument("-k", dest="k", type=int, default=10, help="Number of neighbours")
    p.add_argument("--min-score", dest="min_score", type=float, default=0.0)
    p = sub.add_parser("assign", help="Manually assign faces to a person")
    p.add_argument("person_id", type=int)
    p.add_argument("face_ids", nargs="+")
    p = sub.add_parser("unmatch", help="Detach a face from its person")
    p.add_argument("face_id", type=int)
    p = sub.add_parser("merge", help="Merge one person into another")
    p.add_argument("source", type=int)
    p.add_argument("target", type=int)
    p = sub.add_parser("split", help="Move a face out of a person")
    p.add_argument("face_id", type=int)
    p.add_argument("from_person", type=int)
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--name", dest="new_name", type=str, help="Create a new person with this name")
    target.add_argument("--to", dest="to_person", type=int, help="Move to an existing person")
    sub.add_parser("cleanup", help="Delete persons without faces")

    p = sub.add_parser("regenerate", help="Control the embedding regeneration job")
    p.add_argument("action", choices=["start", "pause", "reset", "status"])
    p.add_argument("--force", action="store_true", help="Recompute embeddings of every face")

    p = sub.add_parser("queue", help="Diagnose or recover the regeneration queue")
    p.add_argument("action", choices=["status", "reset"])

    p = sub.add_parser("people", help="Manage persons")
    people = p.add_subparsers(dest="people_command", required=True)
    q = people.add_parser("list")
    q.add_argument("--search", type=str, default=None)
    q = people.add_parser("add")
    q.add_argument("name")
    q.add_argument("--display-name", dest="display_name", default=None)
    q = people.add_parser("update")
    q.add_argument("person_id", type=int)
    q.add_argument("--name", default=None)
    q.add_argument("--display-name", dest="display_name", default=None)
    q = people.add_parser("delete")
    q.add_argument("person_id", type=int)

    p = sub.add_parser("jobs", help="List recent jobs")
    p.add_argument("--kind", choices=["scan", "regenerate"], default=None)
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--cleanup-days", dest="cleanup_days", type=int, default=None,
                   help="Delete finished jobs older than this many days")

    p = sub.add_parser("export-embeddings", help="Write face embeddings to a Parquet file")
    p.add_argument("path", type=Path)
    sub.add_parser("stats", help="Face, person and job counts")
    return parser


def parse_args(argv: Optional[list[str]] = None) -> Tuple[PipelineConfig, argparse.Namespace]:
    """Parse command line arguments.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    (PipelineConfig, argparse.Namespace)
        Populated configuration object and the full namespace, which carries
        the sub-command and its arguments.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    for name in ("min_confidence", "match_threshold"):
        value = getattr(args, name)
        if not 0.0 <= value <= 1.0:
            parser.error(f"--{name.replace('_', '-')} must be between 0 and 1, got {value}")
    if args.max_faces < 1:
        parser.error("--max-faces must be at least 1")
    for name in ("photo_ids", "face_ids"):
        if hasattr(args, name):
            try:
                setattr(args, name, _int_list(getattr(args, name)))
            except ValueError:
                parser.error(f"{name.replace('_', ' ')} must be integers")

    config = PipelineConfig(
        db_path=args.db_path,
        model_name=args.model_name,
        use_gpu=args.use_gpu,
        min_confidence=args.min_confidence,
        min_face_size=args.min_face_size,
        max_faces=args.max_faces,
        embedding_dim=args.embedding_dim,
        match_threshold=args.match_threshold,
        min_cluster_size=args.min_cluster_size,
        cannot_link_same_photo=args.cannot_link_same_photo,
        similar_k=getattr(args, "k", 10),
        stall_timeout=args.stall_timeout,
        log_level=args.log_level,
        extra={"command_line": "facepeople " + " ".join(argv or [])},
    )
    return config, args
