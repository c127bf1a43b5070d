#!/usr/bin/env python3
"""
pipeline.py — Prepare the sepsis cohort count matrix and sample metadata.

Runs, in order:

  1. Load sample sheet, derive subject / timepoint / source
  2. Load raw counts and gene annotation
  3. Coding-gene restriction + duplicate aggregation
  4. Library sizes -> sample metadata
  5. SRS classification (davenport / extended panels) -> sample metadata
  6. CIBERSORTx results -> sample metadata (when available)
  7. Detectability filter -> CIBERSORTx mixture file, coding matrix
  8. Enriched sample metadata, run manifest

Usage:
    rnaseq-prep --config config/pipeline_config.yaml
    rnaseq-prep --config config/pipeline_config.yaml --output-dir results/run2 -v
    rnaseq-prep --config config/pipeline_config.yaml --on-mismatch drop
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import pandas as pd

from rnaseq_prep.annotation import AnnotationLookup
from rnaseq_prep.classification import classifiers_from_config, classify_panels, to_classifier_input
from rnaseq_prep.counts import detectability_filter, prepare_from_config, read_raw_counts
from rnaseq_prep.deconvolution import read_deconvolution_results, write_deconvolution_input
from rnaseq_prep.errors import ConfigError, PipelineError
from rnaseq_prep.gene_utils import (
    create_stage_manifest,
    load_config,
    output_path,
    resolve_path,
    validate_config,
)
from rnaseq_prep.metadata import add_sample_fields, checked_left_join, load_sample_sheet

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    coding: pd.DataFrame
    detectable: pd.DataFrame
    metadata: pd.DataFrame
    outputs: Dict[str, str] = field(default_factory=dict)
    stats: dict = field(default_factory=dict)


def setup_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger(__name__)


def write_count_matrix(matrix: pd.DataFrame, path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    matrix.rename_axis("Gene").reset_index().to_csv(path, sep="\t", index=False, lineterminator="\n")


def restrict_to_samples(coding: pd.DataFrame, detectable: pd.DataFrame, meta: pd.DataFrame,
                        settings: dict):
    """Drop matrix columns for samples no longer in meta; recompute detectable on the rest."""
    kept = set(meta["sample_id"])
    if len(kept) >= coding.shape[1]:
        return coding, detectable
    coding = coding[[c for c in coding.columns if c in kept]]
    detectable = detectability_filter(coding, settings["detect_min_count"],
                                      settings["detect_min_samples"])
    return coding, detectable


def run_pipeline(config: dict) -> PipelineResult:
    """Run every stage with the given (loaded) config. Raises PipelineError."""
    validate_config(config)
    start = datetime.now()
    policy = config["joins"]["on_mismatch"]
    inputs = {k: str(resolve_path(config, v)) for k, v in config["inputs"].items() if v}
    missing = [f"inputs.{k}: {p}" for k, p in inputs.items() if not os.path.isfile(p)]
    if missing:
        raise ConfigError("Input files not found:\n" + "\n".join(f"  - {m}" for m in missing),
                          records=missing)
    output_path(config, "manifest").parent.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 60)
    logger.info("GENE MATRIX PREPARATION")
    logger.info(f"  Config:      {config.get('_config_path', '<in-memory>')}")
    logger.info(f"  Join policy: {policy}")
    logger.info("=" * 60)

    # 1. Sample sheet
    meta = load_sample_sheet(inputs["sample_sheet"], config["metadata"]["id_column"])
    meta = add_sample_fields(meta, config["metadata"]["id_prefix"])

    # 2-3. Counts + annotation
    settings = config["counts"]
    raw = read_raw_counts(inputs["counts"], settings["gene_id_column"], settings["symbol_column"])
    logger.info(f"Raw counts: {len(raw):,} rows x {raw.shape[1] - 2} samples")
    lookup = AnnotationLookup.from_config(config)
    matrices = prepare_from_config(raw, lookup, config)
    coding, detectable = matrices.coding, matrices.detectable

    # 4. Library size
    meta = checked_left_join(meta, matrices.library_size, "library_size", policy)
    coding, detectable = restrict_to_samples(coding, detectable, meta, settings)

    # 5. Classification
    classifiers = classifiers_from_config(config)
    if classifiers:
        srs = classify_panels(to_classifier_input(coding, lookup), classifiers, policy)
        meta = checked_left_join(meta, srs, "classification", policy, right_name="SRS results")
    else:
        logger.info("No classification panels configured; skipping SRS join")

    # 6. Deconvolution results
    if "deconvolution_results" in inputs:
        fractions = read_deconvolution_results(inputs["deconvolution_results"])
        meta = checked_left_join(meta, fractions, "deconvolution", policy,
                                 right_name="CIBERSORTx results")
    coding, detectable = restrict_to_samples(coding, detectable, meta, settings)

    # 7. Deconvolution export + coding matrix
    outputs = {
        "deconvolution_input": str(output_path(config, "deconvolution_input")),
        "coding_matrix": str(output_path(config, "coding_matrix")),
        "sample_metadata": str(output_path(config, "sample_metadata")),
    }
    write_deconvolution_input(detectable, output_path(config, "deconvolution_input"))
    write_count_matrix(coding, output_path(config, "coding_matrix"))

    # 8. Enriched metadata + manifest
    meta.to_csv(outputs["sample_metadata"], index=False, lineterminator="\n")
    logger.info(f"Wrote sample metadata: {outputs['sample_metadata']} "
                f"({len(meta)} samples, {len(meta.columns)} columns)")

    stats = dict(matrices.stats)
    stats.update({
        "n_samples_final": len(meta),
        "n_detectable_genes": len(detectable),
        "elapsed_sec": round((datetime.now() - start).total_seconds(), 2),
    })
    manifest_path = output_path(config, "manifest")
    create_stage_manifest("prepare_gene_matrix", inputs, outputs, config, stats, str(manifest_path))
    outputs["manifest"] = str(manifest_path)

    logger.info("=" * 60)
    logger.info("SUMMARY")
    logger.info(f"  Samples:           {len(meta)}")
    logger.info(f"  Coding genes:      {len(coding):,}")
    logger.info(f"  Detectable genes:  {len(detectable):,}")
    logger.info(f"  Time:              {stats['elapsed_sec']:.1f}s")
    logger.info("=" * 60)

    return PipelineResult(coding=coding, detectable=detectable, metadata=meta,
                          outputs=outputs, stats=stats)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Prepare coding-gene count matrix, CIBERSORTx input and sample metadata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to pipeline_config.yaml "
                                         "(default: search config/ then cwd)")
    parser.add_argument("--output-dir", help="Override outputs.dir")
    parser.add_argument("--on-mismatch", choices=["fail", "drop"],
                        help="Override joins.on_mismatch")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    log = setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        log.error(str(e))
        return 1

    if args.output_dir:
        config["outputs"]["dir"] = args.output_dir
    if args.on_mismatch:
        config["joins"]["on_mismatch"] = args.on_mismatch

    try:
        run_pipeline(config)
    except PipelineError as e:
        log.error(f"Pipeline failed at stage '{e.stage}':\n{e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
