"""
metadata.py — Sample sheet loading and checked joins.

Sample ids look like `X<subject>.<timepoint>.<source>`, e.g. `X1042.D1.BL`.
The prefix is whatever the count-table header carries in front of the
subject number and is configurable (metadata.id_prefix).

Every enrichment is a left join keyed on sample id that only adds columns.
Ids present on one side only are never dropped silently: the configured
policy either fails or drops them with a warning naming each id.
"""

import logging
from pathlib import Path
from typing import Tuple, Union

import pandas as pd

from rnaseq_prep.errors import SampleMismatchError, SchemaError

logger = logging.getLogger(__name__)

SAMPLE_FIELDS = ["subject_id", "timepoint", "source"]
MISMATCH_POLICIES = ("fail", "drop")


def load_sample_sheet(path, id_column: str = "sample_id") -> pd.DataFrame:
    """Read the comma-delimited sample sheet. Ids must be present and unique."""
    path = Path(path)
    df = pd.read_csv(path, dtype={id_column: str})
    if id_column not in df.columns:
        raise SchemaError(
            f"Sample sheet {path.name} has no '{id_column}' column. Found: {list(df.columns)}",
            stage="sample_sheet",
            records=[id_column],
        )
    if id_column != "sample_id":
        if "sample_id" in df.columns:
            raise SchemaError(
                f"Sample sheet {path.name} has both '{id_column}' and 'sample_id' columns",
                stage="sample_sheet",
                records=["sample_id"],
            )
        df = df.rename(columns={id_column: "sample_id"})

    blank = df["sample_id"].isna()
    if blank.any():
        rows = [int(i) + 2 for i in df.index[blank]]
        raise SchemaError(f"Blank sample ids on lines {rows}", stage="sample_sheet", records=rows)

    dupes = sorted(df.loc[df["sample_id"].duplicated(), "sample_id"].unique())
    if dupes:
        raise SchemaError(f"Duplicate sample ids: {dupes}", stage="sample_sheet", records=dupes)

    logger.info(f"Sample sheet: {len(df)} samples, {len(df.columns)} columns")
    return df


def decompose_sample_id(sample_id: str, prefix: str = "X") -> Tuple[str, str, str]:
    """
    Split a sample id into (subject_id, timepoint, source).

    >>> decompose_sample_id("X1042.D1.BL")
    ('1042', 'D1', 'BL')
    """
    token = sample_id[len(prefix):] if prefix and sample_id.startswith(prefix) else sample_id
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise SchemaError(
            f"Sample id '{sample_id}' does not split into subject.timepoint.source",
            stage="sample_sheet",
            records=[sample_id],
        )
    return parts[0], parts[1], parts[2]


def add_sample_fields(meta: pd.DataFrame, prefix: str = "X") -> pd.DataFrame:
    """Return a copy with subject_id, timepoint and source derived from sample_id."""
    out = meta.copy()
    parsed = [decompose_sample_id(s, prefix) for s in out["sample_id"]]
    for i, name in enumerate(SAMPLE_FIELDS):
        out[name] = [p[i] for p in parsed]
    return out


def checked_left_join(meta: pd.DataFrame,
                      other: Union[pd.DataFrame, pd.Series],
                      stage: str,
                      policy: str = "fail",
                      right_name: str = "counts") -> pd.DataFrame:
    """
    Left-join `other` (indexed by sample id) onto `meta` by sample_id.

    policy="fail" raises SampleMismatchError when any id is present on one
    side only. policy="drop" logs every unmatched id and keeps only samples
    present in both. The result has exactly one row per kept metadata row.
    """
    if policy not in MISMATCH_POLICIES:
        raise ValueError(f"Unknown mismatch policy '{policy}'. Use one of {MISMATCH_POLICIES}")

    if isinstance(other, pd.Series):
        other = other.to_frame()

    if not other.index.is_unique:
        dupes = sorted(other.index[other.index.duplicated()].unique())
        raise SchemaError(f"[{stage}] duplicate sample ids in {right_name}: {dupes}",
                          stage=stage, records=dupes)

    clash = [c for c in other.columns if c in meta.columns]
    if clash:
        raise SchemaError(f"[{stage}] columns already present in metadata: {clash}",
                          stage=stage, records=clash)

    meta_ids = set(meta["sample_id"])
    other_ids = set(other.index)
    only_meta = meta_ids - other_ids
    only_other = other_ids - meta_ids

    if only_meta or only_other:
        if policy == "fail":
            raise SampleMismatchError(stage, missing_in_left=only_other, missing_in_right=only_meta,
                                      right_name=right_name)
        if only_meta:
            logger.warning(f"[{stage}] dropping {len(only_meta)} samples missing from "
                           f"{right_name}: {sorted(only_meta)}")
        if only_other:
            logger.warning(f"[{stage}] ignoring {len(only_other)} {right_name} samples "
                           f"missing from metadata: {sorted(only_other)}")
        meta = meta[meta["sample_id"].isin(other_ids)]

    joined = meta.merge(other, left_on="sample_id", right_index=True, how="left")
    if len(joined) != len(meta):
        raise SchemaError(f"[{stage}] join changed row count {len(meta)} -> {len(joined)}",
                          stage=stage)
    return joined.reset_index(drop=True)
