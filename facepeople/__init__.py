"""
Top-level package for the facepeople identity pipeline.

The console entry point lives in :mod:`facepeople.cli`.

The actual functionality is organised into smaller modules:

- :mod:`facepeople.config` – dataclass for pipeline configuration and argument parsing.
- :mod:`facepeople.db` – SQLite schema and helpers for photos, faces, persons and jobs.
- :mod:`facepeople.models` – domain records shared by the components.
- :mod:`facepeople.errors` – exception hierarchy.
- :mod:`facepeople.events` – fire-and-forget progress and change notifications.
- :mod:`facepeople.embedders` – wrappers around InsightFace for detection and face embeddings.
- :mod:`facepeople.detection` – filtering detections and running detection batches.
- :mod:`facepeople.similarity` – cosine similarity, ranking and top-k selection.
- :mod:`facepeople.clustering` – matching faces to persons and manual corrections.
- :mod:`facepeople.registry` – person records and their cached face counts.
- :mod:`facepeople.jobs` – job state machine, stall diagnosis and persistence.
- :mod:`facepeople.regeneration` – the resumable embedding regeneration job.
- :mod:`facepeople.embeddings_io` – exporting embeddings to Parquet.
- :mod:`facepeople.pipeline` – scan jobs and the facade tying all modules together.

You can run the pipeline from the command line using the `facepeople` script installed by this
package.
"""

__all__ = [
    "config",
    "db",
    "models",
    "errors",
    "events",
    "embedders",
    "detection",
    "similarity",
    "clustering",
    "registry",
    "jobs",
    "regeneration",
    "embeddings_io",
    "pipeline",
]
