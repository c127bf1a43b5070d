"""
deconvolution.py — File exchange with the CIBERSORTx web tool.

Export: the detectability-filtered matrix as the tool's mixture file
(tab-delimited, first column "Gene", one column per sample, no quoting,
no index).

Import: the tool's results table (Mixture, one column per cell type,
P-value, Correlation, RMSE), indexed by sample id with cell-type
fractions prefixed `frac_`.
"""

import csv
import logging
from pathlib import Path

import pandas as pd

from rnaseq_prep.errors import SchemaError

logger = logging.getLogger(__name__)

# Fit statistics CIBERSORTx appends after the cell-type columns
_FIT_COLUMNS = {
    "P-value": "cibersort_pvalue",
    "Correlation": "cibersort_correlation",
    "RMSE": "cibersort_rmse",
    "Absolute score (sig.score)": "cibersort_absolute_score",
}


def write_deconvolution_input(matrix: pd.DataFrame, path) -> Path:
    """Write genes x samples counts as a CIBERSORTx mixture file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    out = matrix.rename_axis("Gene").reset_index()
    out.to_csv(path, sep="\t", index=False, quoting=csv.QUOTE_NONE, lineterminator="\n")

    logger.info(f"Wrote deconvolution input: {path} ({len(matrix):,} genes x "
                f"{matrix.shape[1]} samples)")
    return path


def read_deconvolution_results(path) -> pd.DataFrame:
    """
    Parse a CIBERSORTx results file (.csv, or tab-delimited .txt/.tsv).

    Returns a frame indexed by sample_id with frac_<cell type> columns
    followed by the renamed fit statistics.
    """
    path = Path(path)
    sep = "\t" if path.suffix.lower() in (".txt", ".tsv") else ","
    df = pd.read_csv(path, sep=sep, dtype={"Mixture": str})

    if "Mixture" not in df.columns:
        raise SchemaError(
            f"Deconvolution results {path.name} have no 'Mixture' column. "
            f"Found: {list(df.columns)}",
            stage="deconvolution",
            records=["Mixture"],
        )
    if not df["Mixture"].is_unique:
        dupes = sorted(df.loc[df["Mixture"].duplicated(), "Mixture"].unique())
        raise SchemaError(f"Duplicate mixtures in {path.name}: {dupes}",
                          stage="deconvolution", records=dupes)

    cell_types = [c for c in df.columns if c != "Mixture" and c not in _FIT_COLUMNS]
    if not cell_types:
        raise SchemaError(f"Deconvolution results {path.name} list no cell types",
                          stage="deconvolution")

    renamed = {c: f"frac_{c}" for c in cell_types}
    renamed.update({c: v for c, v in _FIT_COLUMNS.items() if c in df.columns})
    out = df.set_index("Mixture").rename(columns=renamed)
    out.index.name = "sample_id"

    logger.info(f"Deconvolution results: {len(out)} samples, {len(cell_types)} cell types")
    return out
