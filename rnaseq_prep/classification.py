"""
classification.py — Sepsis response signature (SRS) classification.

The classifier itself is external (SepstratifieR). This module only
defines what the pipeline needs from it:

    classify(matrix) -> DataFrame indexed by sample id, columns label, score

where `matrix` is samples x Ensembl gene ids. Two gene panels are run
(davenport, extended) and their results land in sample metadata as
SRS_<panel> / SRSq_<panel>.

PrecomputedClassifier reads the table the external tool wrote, so the
pipeline can be re-run without it.
"""

import logging
from pathlib import Path
from typing import Dict, Protocol

import pandas as pd

from rnaseq_prep.annotation import AnnotationLookup
from rnaseq_prep.errors import SampleMismatchError, SchemaError
from rnaseq_prep.gene_utils import resolve_path

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """
    Anything that assigns an SRS label and score to each sample.

    classify() takes a samples x Ensembl-id count matrix and returns a
    frame indexed by sample id with columns label (SRS class) and score (SRSq).
    """

    def classify(self, matrix: pd.DataFrame) -> pd.DataFrame:
        ...


class PrecomputedClassifier:
    """
    Classifier backed by an exported result table.

    Expected columns (CSV): sample_id, SRS, SRSq. Other columns
    (per-class probabilities) are ignored.
    """

    def __init__(self, path, id_column: str = "sample_id",
                 label_column: str = "SRS", score_column: str = "SRSq"):
        self.path = Path(path)
        self.id_column = id_column
        self.label_column = label_column
        self.score_column = score_column

    def classify(self, matrix: pd.DataFrame) -> pd.DataFrame:
        df = pd.read_csv(self.path, dtype={self.id_column: str})
        required = [self.id_column, self.label_column, self.score_column]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise SchemaError(
                f"Classification results {self.path.name} missing columns: {missing}",
                stage="classify",
                records=missing,
            )
        out = df[required].rename(columns={
            self.id_column: "sample_id",
            self.label_column: "label",
            self.score_column: "score",
        })
        out["score"] = pd.to_numeric(out["score"], errors="raise")
        return out.set_index("sample_id")

    def __repr__(self):
        return f"PrecomputedClassifier({str(self.path)!r})"


def to_classifier_input(coding: pd.DataFrame, lookup: AnnotationLookup) -> pd.DataFrame:
    """
    Transpose genes x samples (symbols) into samples x Ensembl ids.

    Symbols without an Ensembl id are dropped.
    """
    mapping = lookup.symbol_to_ensembl()
    mapped = [s for s in coding.index if s in mapping]
    n_unmapped = len(coding.index) - len(mapped)
    if n_unmapped:
        logger.info(f"Classifier input: {n_unmapped:,} symbols without Ensembl id dropped")

    out = coding.loc[mapped].T.copy()
    out.columns = [mapping[s] for s in mapped]
    out.index.name = "sample_id"
    return out


def classify_panels(matrix: pd.DataFrame,
                    classifiers: Dict[str, Classifier],
                    policy: str = "fail") -> pd.DataFrame:
    """
    Run one classifier per gene panel and collect SRS_<panel>, SRSq_<panel>.

    Each panel's sample ids are checked against the matrix rows; with
    policy="fail" any difference raises SampleMismatchError, with "drop"
    the difference is logged and missing samples get NaN.
    """
    samples = list(matrix.index)
    sample_set = set(samples)
    columns = {}

    for panel, classifier in classifiers.items():
        result = classifier.classify(matrix)
        missing = [c for c in ("label", "score") if c not in result.columns]
        if missing:
            raise SchemaError(f"Classifier for panel '{panel}' returned no {missing}",
                              stage=f"classify:{panel}", records=missing)
        if not result.index.is_unique:
            dupes = sorted(result.index[result.index.duplicated()].unique())
            raise SchemaError(f"Classifier for panel '{panel}' returned duplicate samples: {dupes}",
                              stage=f"classify:{panel}", records=dupes)

        result_ids = set(result.index)
        if result_ids != sample_set:
            if policy == "fail":
                raise SampleMismatchError(
                    f"classify:{panel}",
                    missing_in_left=result_ids - sample_set,
                    missing_in_right=sample_set - result_ids,
                    left_name="count matrix",
                    right_name=f"{panel} results",
                )
            logger.warning(f"[classify:{panel}] {len(sample_set - result_ids)} samples unclassified, "
                           f"{len(result_ids - sample_set)} extra results ignored")

        result = result.reindex(samples)
        columns[f"SRS_{panel}"] = result["label"]
        columns[f"SRSq_{panel}"] = result["score"]

        counts = result["label"].value_counts().sort_index()
        logger.info(f"SRS ({panel}): " + ", ".join(f"{k}={v}" for k, v in counts.items()))

    return pd.DataFrame(columns, index=pd.Index(samples, name="sample_id"))


def classifiers_from_config(config: dict) -> Dict[str, Classifier]:
    """Build PrecomputedClassifiers from classification.panels {panel: path}."""
    panels = config.get("classification", {}).get("panels") or {}
    return {name: PrecomputedClassifier(resolve_path(config, path))
            for name, path in panels.items()}
