import numpy as np
import pandas as pd
import pytest

from facepeople.embeddings_io import COLUMNS, export_embeddings, read_embeddings


def test_export_writes_only_embedded_faces(engine, make_person, make_face, tmp_path):
    pid = make_person("Ann")
    assigned = make_face(np.arange(8, dtype=np.float32), person_id=pid, confidence=0.8)
    loose = make_face(np.ones(8, dtype=np.float32))
    make_face()
    target = tmp_path / "out" / "embeddings.parquet"

    assert export_embeddings(engine, target) == 2

    df = read_embeddings(target)
    assert list(df.columns) == COLUMNS
    assert df["face_id"].tolist() == [assigned, loose]
    assert df.loc[0, "person_id"] == pid
    assert pd.isna(df.loc[1, "person_id"])
    assert df.loc[0, "confidence"] == pytest.approx(0.8)
    np.testing.assert_allclose(np.asarray(df.loc[0, "embedding"]), np.arange(8))


def test_export_of_empty_store(engine, tmp_path):
    target = tmp_path / "empty.parquet"
    assert export_embeddings(engine, target) == 0
    assert read_embeddings(target).empty


def test_read_missing_file(tmp_path):
    df = read_embeddings(tmp_path / "nope.parquet")
    assert df.empty
    assert list(df.columns) == COLUMNS
