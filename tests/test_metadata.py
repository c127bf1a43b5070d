import logging

import pandas as pd
import pytest

from rnaseq_prep.errors import SampleMismatchError, SchemaError
from rnaseq_prep.metadata import (
    add_sample_fields,
    checked_left_join,
    decompose_sample_id,
    load_sample_sheet,
)


@pytest.fixture
def meta():
    return pd.DataFrame({
        "sample_id": ["X1.D1.BL", "X1.D3.BL", "X2.D1.BL"],
        "age": [61, 61, 48],
    })


def test_decompose_sample_id():
    assert decompose_sample_id("X1042.D1.BL") == ("1042", "D1", "BL")


def test_decompose_without_prefix():
    assert decompose_sample_id("1042.D5.BL", prefix="X") == ("1042", "D5", "BL")
    assert decompose_sample_id("S7.D1.LN", prefix="S") == ("7", "D1", "LN")


@pytest.mark.parametrize("bad", ["X1042.D1", "X1042.D1.BL.extra", "X1042..BL"])
def test_decompose_rejects_malformed(bad):
    with pytest.raises(SchemaError) as exc:
        decompose_sample_id(bad)
    assert exc.value.records == [bad]


def test_add_sample_fields_keeps_rows(meta):
    out = add_sample_fields(meta)
    assert len(out) == len(meta)
    assert out["subject_id"].tolist() == ["1", "1", "2"]
    assert out["timepoint"].tolist() == ["D1", "D3", "D1"]
    assert out["source"].tolist() == ["BL", "BL", "BL"]
    assert "subject_id" not in meta.columns


def test_load_sample_sheet_renames_id_column(tmp_path):
    path = tmp_path / "sheet.csv"
    path.write_text("Sample,sex\nX1.D1.BL,F\nX2.D1.BL,M\n")
    df = load_sample_sheet(path, id_column="Sample")
    assert df.columns.tolist() == ["sample_id", "sex"]


def test_load_sample_sheet_missing_id_column(tmp_path):
    path = tmp_path / "sheet.csv"
    path.write_text("name,sex\nX1.D1.BL,F\n")
    with pytest.raises(SchemaError, match="no 'sample_id' column"):
        load_sample_sheet(path)


def test_load_sample_sheet_duplicate_ids(tmp_path):
    path = tmp_path / "sheet.csv"
    path.write_text("sample_id,sex\nX1.D1.BL,F\nX1.D1.BL,F\n")
    with pytest.raises(SchemaError) as exc:
        load_sample_sheet(path)
    assert exc.value.records == ["X1.D1.BL"]


def test_join_adds_columns_only(meta):
    sizes = pd.Series({"X1.D1.BL": 10, "X1.D3.BL": 20, "X2.D1.BL": 30}, name="lib_size")
    out = checked_left_join(meta, sizes, "library_size")
    assert out["sample_id"].tolist() == meta["sample_id"].tolist()
    assert out["lib_size"].tolist() == [10, 20, 30]
    assert out.columns.tolist() == ["sample_id", "age", "lib_size"]


def test_join_mismatch_fails_with_ids(meta):
    sizes = pd.Series({"X1.D1.BL": 10, "X1.D3.BL": 20, "X9.D1.BL": 30}, name="lib_size")
    with pytest.raises(SampleMismatchError) as exc:
        checked_left_join(meta, sizes, "library_size")
    err = exc.value
    assert err.stage == "library_size"
    assert err.missing_in_right == ["X2.D1.BL"]
    assert err.missing_in_left == ["X9.D1.BL"]
    assert "X2.D1.BL" in str(err) and "X9.D1.BL" in str(err)


def test_join_mismatch_drop_policy_logs(meta, caplog):
    sizes = pd.Series({"X1.D1.BL": 10, "X1.D3.BL": 20, "X9.D1.BL": 30}, name="lib_size")
    with caplog.at_level(logging.WARNING):
        out = checked_left_join(meta, sizes, "library_size", policy="drop")
    assert out["sample_id"].tolist() == ["X1.D1.BL", "X1.D3.BL"]
    assert out["lib_size"].notna().all()
    assert "X2.D1.BL" in caplog.text
    assert "X9.D1.BL" in caplog.text


def test_join_rejects_column_clash(meta):
    other = pd.DataFrame({"age": [1, 2, 3]}, index=meta["sample_id"])
    with pytest.raises(SchemaError, match="already present"):
        checked_left_join(meta, other, "extra")


def test_join_rejects_unknown_policy(meta):
    with pytest.raises(ValueError, match="Unknown mismatch policy"):
        checked_left_join(meta, pd.Series(dtype=int, name="x"), "x", policy="ignore")
