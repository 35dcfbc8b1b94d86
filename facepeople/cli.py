"""
Command-line entry point for the identity pipeline.

This module parses command line arguments, constructs a
:class:`~facepeople.pipeline.FacePipeline` and dispatches the sub-command.
Results are printed to stdout as JSON; log messages go to stderr.
"""

from __future__ import annotations

import json
import sys
from typing import Any, Dict

from loguru import logger

from .config import parse_args
from .embeddings_io import export_embeddings
from .errors import FacePeopleError
from .events import EventBus
from .models import JobKind
from .pipeline import FacePipeline
from .similarity import similarity_level


def _gpu_preflight() -> None:
    """Best-effort check for ONNX Runtime GPU availability and provide guidance.

    This does not stop execution; it only warns when CUDA is not available so
    users know how to enable GPU acceleration.
    """
    try:
        import onnxruntime as ort
    except ImportError:
        # ONNX Runtime not importable; InsightFace will error later if missing.
        return
    providers = set(getattr(ort, "get_available_providers", lambda: [])())
    if "CUDAExecutionProvider" not in providers:
        logger.warning(
            "GPU not detected by ONNX Runtime; falling back to CPU. "
            "To enable GPU: pip uninstall -y onnxruntime && pip install onnxruntime-gpu"
        )


def _log_event(topic: str, payload: Dict[str, Any]) -> None:
    logger.debug(f"{topic}: {payload}")


def _dispatch(pipeline: FacePipeline, args) -> Any:
    command = args.command
    if command == "detect":
        return pipeline.detect_batch(args.photo_ids).to_dict()
    if command == "undetect":
        return {"photo_id": args.photo_id, "removed_faces": pipeline.undetect_photo(args.photo_id)}
    if command == "match":
        return pipeline.auto_match().to_dict()
    if command == "similar":
        return [
            {"face_id": s.candidate_id, "score": round(s.score, 4), "level": similarity_level(s.score)}
            for s in pipeline.find_similar(args.face_id, args.k, args.min_score)
        ]
    if command == "assign":
        return {"person_id": args.person_id, "assigned": pipeline.assign(args.face_ids, args.person_id)}
    if command == "unmatch":
        return {"face_id": args.face_id, "previous_person_id": pipeline.unmatch(args.face_id)}
    if command == "merge":
        return {"target": args.target, "merged": pipeline.merge_persons(args.source, args.target)}
    if command == "split":
        person_id = pipeline.split_face(args.face_id, args.from_person,
                                        new_name=args.new_name, to_person_id=args.to_person)
        return {"face_id": args.face_id, "person_id": person_id}
    if command == "cleanup":
        return {"deleted_persons": pipeline.cleanup_empty_persons()}
    if command == "regenerate":
        if args.action == "start":
            return pipeline.regenerate_start(force=args.force).to_dict()
        if args.action == "pause":
            return pipeline.regenerate_pause().to_dict()
        if args.action == "reset":
            job = pipeline.regenerate_reset()
            return job.to_dict() if job else None
        return pipeline.regenerate_progress()
    if command == "queue":
        if args.action == "reset":
            job = pipeline.queue_reset()
            return job.to_dict() if job else None
        return pipeline.queue_status()
    if command == "people":
        sub = args.people_command
        if sub == "list":
            people = pipeline.people.search(args.search) if args.search else pipeline.people.get_all()
            return [p.to_dict() for p in people]
        if sub == "add":
            return pipeline.people.add(args.name, display_name=args.display_name).to_dict()
        if sub == "update":
            return pipeline.people.update(args.person_id, name=args.name,
                                          display_name=args.display_name).to_dict()
        return {"person_id": args.person_id, "unassigned_faces": pipeline.people.delete(args.person_id)}
    if command == "jobs":
        removed = pipeline.jobs.cleanup_old(args.cleanup_days) if args.cleanup_days is not None else 0
        kind = JobKind(args.kind) if args.kind else None
        return {"removed": removed, "jobs": [j.to_dict() for j in pipeline.jobs.list(kind, args.limit)]}
    if command == "export-embeddings":
        return {"path": str(args.path), "rows": export_embeddings(pipeline.engine, args.path)}
    if command == "stats":
        return pipeline.stats()
    raise ValueError(f"Unknown command {command!r}")


def main(argv: list[str] | None = None) -> int:
    """Entry point called by the ``facepeople`` script."""
    cfg, args = parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level=cfg.log_level)
    if cfg.use_gpu:
        _gpu_preflight()

    events = EventBus(synchronous=True)
    events.subscribe("*", _log_event)
    pipeline = FacePipeline(cfg, events=events)
    try:
        result = _dispatch(pipeline, args)
    except FacePeopleError as exc:
        logger.error(str(exc))
        error: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
        if getattr(exc, "person_id", None) is not None:
            error["person_id"] = exc.person_id
        print(json.dumps(error, indent=2))
        return 1
    finally:
        pipeline.close()
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
