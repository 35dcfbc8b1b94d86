"""
Parquet export of face embeddings.

Each row corresponds to a face that has an embedding and includes the
embedding vector along with its metadata (photo ID, person ID, bounding box,
detection confidence).  The export only reads from the store.

We use PyArrow's Parquet support to write and read these files.  Embeddings
are stored as lists of floats in an ``embedding`` column.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from loguru import logger
from sqlalchemy.engine import Engine

from . import db

COLUMNS = [
    "face_id", "photo_id", "person_id", "bbox_x", "bbox_y", "bbox_width", "bbox_height",
    "confidence", "is_manual", "embedding",
]


def export_embeddings(engine: Engine, path: Union[str, Path]) -> int:
    """Write every stored embedding to ``path``; returns the number of rows."""
    path = Path(path)
    records: List[Dict[str, Any]] = []
    with engine.connect() as conn:
        for face in db.list_faces(conn, with_embedding=True):
            records.append({
                "face_id": face.id,
                "photo_id": face.photo_id,
                "person_id": face.person_id,
                "bbox_x": face.box.x,
                "bbox_y": face.box.y,
                "bbox_width": face.box.width,
                "bbox_height": face.box.height,
                "confidence": face.confidence,
                "is_manual": face.is_manual,
                "embedding": face.embedding.astype(float).tolist(),
            })
    df = pd.DataFrame(records, columns=COLUMNS)
    # nullable integer so unassigned faces survive the round trip
    df["person_id"] = df["person_id"].astype("Int64")
    path.parent.mkdir(parents=True, exist_ok=True)
    table = pa.Table.from_pandas(df, preserve_index=False)
    pq.write_table(table, path)
    logger.info(f"Exported {len(df)} embeddings to {path}")
    return len(df)


def read_embeddings(path: Union[str, Path]) -> pd.DataFrame:
    """Read an export back as a DataFrame (empty when the file is missing)."""
    path = Path(path)
    if not path.exists():
        return pd.DataFrame(columns=COLUMNS)
    return pq.read_table(path).to_pandas()
