"""
counts.py — Gene-matrix preparation.

Turns a raw gene-by-sample count table into:
  - coding:     protein-coding genes (+ exempt QC markers), one row per
                symbol, integer counts. Used for all internal analysis.
  - detectable: genes with count > detect_min_count in at least
                detect_min_samples samples. Used only for the
                deconvolution export.
  - library_size: per-sample column sums of `coding`.

Steps run in order and each returns a new frame; inputs are never mutated.
No file writes happen here.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, List

import numpy as np
import pandas as pd

from rnaseq_prep.annotation import AnnotationLookup
from rnaseq_prep.errors import DuplicateGeneError, PipelineError, SchemaError
from rnaseq_prep.gene_utils import gene_list, is_kept_biotype, load_keep_biotypes, normalize_biotype

logger = logging.getLogger(__name__)


# Genes kept regardless of biotype. XIST is the female-specific lncRNA
# used with the Y-linked genes for the sex-concordance QC.
DEFAULT_EXCEPTION_GENES = ("XIST",)

DETECT_MIN_COUNT = 10
DETECT_MIN_SAMPLES = 10


@dataclass
class GeneMatrices:
    """Outputs of prepare_gene_matrix."""
    coding: pd.DataFrame
    detectable: pd.DataFrame
    library_size: pd.Series
    stats: dict = field(default_factory=dict)


# ============================================================
# INPUT
# ============================================================

def read_raw_counts(path, gene_id_column: str = "gene_id",
                    symbol_column: str = "gene_name") -> pd.DataFrame:
    """
    Read the tab-delimited raw count table.

    Keeps the gene id and symbol columns plus every other column as an
    integer sample column. Empty cells are read as zero. Rows without a
    symbol fall back to their gene id.

    Raises SchemaError if a required column is missing, no sample columns
    remain, sample names repeat, or a count is negative or fractional.
    """
    path = Path(path)
    with open(path) as f:
        header = f.readline().rstrip("\r\n").split("\t")

    missing = [c for c in (gene_id_column, symbol_column) if c not in header]
    if missing:
        raise SchemaError(
            f"Count table {path.name} is missing required columns: {missing}",
            stage="read_counts",
            records=missing,
        )

    dupes = sorted({c for c in header if header.count(c) > 1})
    if dupes:
        raise SchemaError(
            f"Count table {path.name} has duplicate column names: {dupes}",
            stage="read_counts",
            records=dupes,
        )

    df = pd.read_csv(path, sep="\t", dtype={gene_id_column: str, symbol_column: str})
    return validate_raw_counts(df, gene_id_column, symbol_column)


def validate_raw_counts(df: pd.DataFrame, gene_id_column: str = "gene_id",
                        symbol_column: str = "gene_name") -> pd.DataFrame:
    """Check columns and coerce sample columns to int64. Returns a copy."""
    missing = [c for c in (gene_id_column, symbol_column) if c not in df.columns]
    if missing:
        raise SchemaError(f"Missing required columns: {missing}",
                          stage="read_counts", records=missing)

    sample_cols = sample_columns(df, gene_id_column, symbol_column)
    if not sample_cols:
        raise SchemaError("Count table has no sample columns", stage="read_counts")

    out = df[[gene_id_column, symbol_column] + sample_cols].copy()

    no_symbol = out[symbol_column].isna() | (out[symbol_column].astype(str).str.strip() == "")
    if no_symbol.any():
        logger.debug(f"  {int(no_symbol.sum())} rows without symbol; using gene id")
        out.loc[no_symbol, symbol_column] = out.loc[no_symbol, gene_id_column]

    values = out[sample_cols].apply(pd.to_numeric, errors="coerce")
    bad_text = values.isna() & out[sample_cols].notna()
    if bad_text.any().any():
        cols = [c for c in sample_cols if bad_text[c].any()]
        raise SchemaError(f"Non-numeric counts in samples: {cols}",
                          stage="read_counts", records=cols)
    values = values.fillna(0)

    arr = values.to_numpy(dtype=float)
    if (arr < 0).any():
        cols = [c for c in sample_cols if (values[c] < 0).any()]
        raise SchemaError(f"Negative counts in samples: {cols}",
                          stage="read_counts", records=cols)
    if not np.array_equal(arr, np.round(arr)):
        cols = [c for c in sample_cols if not np.array_equal(values[c], np.round(values[c]))]
        raise SchemaError(f"Fractional counts in samples: {cols}",
                          stage="read_counts", records=cols)

    out[sample_cols] = values.astype("int64")
    return out


def sample_columns(df: pd.DataFrame, gene_id_column: str = "gene_id",
                   symbol_column: str = "gene_name") -> List[str]:
    return [c for c in df.columns if c not in (gene_id_column, symbol_column)]


# ============================================================
# STEP 1: CODING-GENE RESTRICTION
# ============================================================

def restrict_to_coding(counts: pd.DataFrame,
                       lookup: AnnotationLookup,
                       symbol_column: str = "gene_name",
                       keep_biotypes: FrozenSet[str] = frozenset({"protein_coding"}),
                       exception_genes: Iterable[str] = DEFAULT_EXCEPTION_GENES) -> pd.DataFrame:
    """
    Keep rows whose symbol is protein-coding, or is an exempt gene.

    Symbols missing from the lookup are dropped unless exempt. Row order
    is preserved. exception_genes may also be a single symbol.
    """
    keep_set = frozenset(normalize_biotype(b) for b in keep_biotypes)
    exempt = set(gene_list(exception_genes))

    biotypes = lookup.annotate(counts[symbol_column])
    coding = np.array([is_kept_biotype(b, keep_set) for b in biotypes.to_numpy()], dtype=bool)
    is_exempt = counts[symbol_column].isin(exempt).to_numpy()
    mask = coding | is_exempt

    kept = counts.loc[mask].copy()

    n_unknown = int(biotypes.isna().sum())
    logger.info(f"Coding restriction: {len(counts):,} rows -> {len(kept):,} "
                f"({int((~mask).sum()):,} dropped, {n_unknown:,} not in lookup)")
    rescued = sorted(set(counts.loc[is_exempt & ~coding, symbol_column]))
    if rescued:
        logger.info(f"  Kept by exception: {rescued}")
    return kept


# ============================================================
# STEP 2: AGGREGATION
# ============================================================

def aggregate_duplicates(counts: pd.DataFrame,
                         symbol_column: str = "gene_name",
                         gene_id_column: str = "gene_id") -> pd.DataFrame:
    """
    Sum rows sharing a symbol, per sample column.

    Returns a genes x samples frame indexed by symbol, in order of first
    appearance. Column totals are unchanged.
    """
    samples = sample_columns(counts, gene_id_column, symbol_column)
    before = counts[samples].sum(axis=0)

    matrix = counts.groupby(symbol_column, sort=False)[samples].sum()
    matrix.index.name = "Gene"
    matrix.columns.name = None
    matrix = matrix.astype("int64")

    if not matrix.index.is_unique:
        dupes = sorted(matrix.index[matrix.index.duplicated()].unique())
        raise DuplicateGeneError(f"Duplicate symbols after aggregation: {dupes}",
                                 stage="aggregate", records=dupes)

    after = matrix.sum(axis=0)
    changed = [s for s in samples if int(before[s]) != int(after[s])]
    if changed:
        raise PipelineError(f"Aggregation changed sample totals: {changed}",
                            stage="aggregate", records=changed)

    n_collapsed = len(counts) - len(matrix)
    if n_collapsed:
        logger.info(f"Aggregation: collapsed {n_collapsed:,} duplicate rows -> "
                    f"{len(matrix):,} genes")
    return matrix


# ============================================================
# STEP 3: LIBRARY SIZE
# ============================================================

def library_sizes(matrix: pd.DataFrame) -> pd.Series:
    """Per-sample column sums, named lib_size, indexed by sample id."""
    sizes = matrix.sum(axis=0).astype("int64")
    sizes.index.name = "sample_id"
    sizes.name = "lib_size"
    return sizes


# ============================================================
# STEP 4: DETECTABILITY FILTER
# ============================================================

def detectability_filter(matrix: pd.DataFrame,
                         min_count: int = DETECT_MIN_COUNT,
                         min_samples: int = DETECT_MIN_SAMPLES) -> pd.DataFrame:
    """Genes with count > min_count in at least min_samples samples (copy)."""
    n_detected = (matrix > min_count).sum(axis=1)
    filtered = matrix.loc[n_detected >= min_samples].copy()
    logger.info(f"Detectability filter (>{min_count} in >={min_samples} samples): "
                f"{len(matrix):,} -> {len(filtered):,} genes")
    return filtered


# ============================================================
# FULL PREPARATION
# ============================================================

def prepare_gene_matrix(raw: pd.DataFrame,
                        lookup: AnnotationLookup,
                        gene_id_column: str = "gene_id",
                        symbol_column: str = "gene_name",
                        keep_biotypes: FrozenSet[str] = frozenset({"protein_coding"}),
                        exception_genes: Iterable[str] = DEFAULT_EXCEPTION_GENES,
                        detect_min_count: int = DETECT_MIN_COUNT,
                        detect_min_samples: int = DETECT_MIN_SAMPLES) -> GeneMatrices:
    """Run restriction, aggregation, library size and detectability filter."""
    raw = validate_raw_counts(raw, gene_id_column, symbol_column)
    samples = sample_columns(raw, gene_id_column, symbol_column)

    coding_rows = restrict_to_coding(raw, lookup, symbol_column, keep_biotypes, exception_genes)
    coding = aggregate_duplicates(coding_rows, symbol_column, gene_id_column)
    sizes = library_sizes(coding)
    detectable = detectability_filter(coding, detect_min_count, detect_min_samples)

    stats = {
        "n_samples": len(samples),
        "n_input_rows": len(raw),
        "n_coding_rows": len(coding_rows),
        "n_coding_genes": len(coding),
        "n_detectable_genes": len(detectable),
        "input_reads": int(raw[samples].to_numpy().sum()),
        "coding_reads": int(sizes.sum()),
    }
    return GeneMatrices(coding=coding, detectable=detectable, library_size=sizes, stats=stats)


def prepare_from_config(raw: pd.DataFrame, lookup: AnnotationLookup, config: dict) -> GeneMatrices:
    settings = config["counts"]
    return prepare_gene_matrix(
        raw,
        lookup,
        gene_id_column=settings["gene_id_column"],
        symbol_column=settings["symbol_column"],
        keep_biotypes=load_keep_biotypes(config),
        exception_genes=gene_list(settings.get("exception_genes")),
        detect_min_count=settings["detect_min_count"],
        detect_min_samples=settings["detect_min_samples"],
    )
