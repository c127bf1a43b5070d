"""
gene_utils.py — Shared utilities for the sepsis RNA-seq preparation pipeline.

MECHANISM ONLY. Policy (which biotypes to keep, which genes are exempt,
detectability thresholds, join policy) lives in pipeline_config.yaml.

This module provides:
  - Config loading, path resolution and validation
  - Biotype canonicalization
  - File checksum computation
  - Stage manifest creation
"""

import hashlib
import json
import logging
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional

import yaml

from rnaseq_prep.errors import ConfigError

logger = logging.getLogger(__name__)


# ============================================================
# CONFIG LOADING
# ============================================================

DEFAULT_CONFIG = {
    "counts": {
        "gene_id_column": "gene_id",
        "symbol_column": "gene_name",
        "keep_biotypes": ["protein_coding"],
        "exception_genes": ["XIST"],
        "detect_min_count": 10,
        "detect_min_samples": 10,
    },
    "metadata": {
        "id_column": "sample_id",
        "id_prefix": "X",
    },
    "joins": {
        "on_mismatch": "fail",
    },
    "annotation": {
        "source": "file",
        "biomart_dataset": "hsapiens_gene_ensembl",
        "timeout": 600,
    },
    "classification": {
        "panels": {},
    },
    "outputs": {
        "dir": "results",
        "deconvolution_input": "cibersortx_input.txt",
        "sample_metadata": "sample_metadata_enriched.csv",
        "coding_matrix": "coding_counts.tsv",
        "manifest": "run_manifest.json",
    },
}


def _merge_defaults(config: dict, defaults: dict) -> dict:
    """Fill missing keys from defaults, one level of nesting deep."""
    merged = dict(config)
    for section, values in defaults.items():
        if isinstance(values, dict):
            merged[section] = {**values, **(config.get(section) or {})}
        else:
            merged.setdefault(section, values)
    return merged


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load pipeline config from YAML.
    Resolves project_root from PIPELINE_ROOT env var or config default.

    Args:
        config_path: Path to YAML file. If None, searches for
                     config/pipeline_config.yaml relative to this package,
                     then cwd.
    """
    if config_path is None:
        candidates = [
            Path(__file__).parent.parent / "config" / "pipeline_config.yaml",
            Path.cwd() / "config" / "pipeline_config.yaml",
            Path.cwd() / "pipeline_config.yaml",
        ]
        for c in candidates:
            if c.is_file():
                config_path = str(c)
                break
        if config_path is None:
            raise FileNotFoundError(
                "Cannot find pipeline_config.yaml. Set config_path explicitly."
            )

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    config = _merge_defaults(config, DEFAULT_CONFIG)

    # Relative project_root is taken relative to the config file itself
    root = os.environ.get("PIPELINE_ROOT", config.get("project_root", "."))
    root_path = Path(root)
    if not root_path.is_absolute() and "PIPELINE_ROOT" not in os.environ:
        root_path = Path(config_path).parent / root_path
    config["_project_root"] = root_path.resolve()
    config["_config_path"] = str(Path(config_path).resolve())

    return config


def resolve_path(config: dict, relative_path: str) -> Path:
    """Resolve a config-relative path to absolute using project_root."""
    return config["_project_root"] / relative_path


def output_path(config: dict, key: str) -> Path:
    """Resolve an output file name under outputs.dir."""
    outputs = config["outputs"]
    return resolve_path(config, outputs["dir"]) / outputs[key]


# ============================================================
# BIOTYPE CANONICALIZATION
# ============================================================
# All keys are lowercase. Lookup always lowercases input first.

_BIOTYPE_ALIASES = {
    # protein_coding
    "protein_coding":           "protein_coding",
    "protein-coding":           "protein_coding",
    "protein coding":           "protein_coding",
    "protein-coding gene":      "protein_coding",
    # lncrna
    "lncrna":                   "lncrna",
    "lincrna":                  "lncrna",
    # pseudogene
    "pseudo":                   "pseudogene",
    "pseudogene":               "pseudogene",
    "processed_pseudogene":     "pseudogene",
    "unprocessed_pseudogene":   "pseudogene",
    "transcribed_unprocessed_pseudogene": "pseudogene",
}


def normalize_biotype(raw) -> str:
    """
    Canonicalize a biotype string to lowercase, underscore-separated form.

    Uses exact lookup, then fuzzy matching for NCBI/Ensembl variants.
    Missing values (None, NaN) canonicalize to the empty string.

    >>> normalize_biotype("protein-coding")
    'protein_coding'
    >>> normalize_biotype("lncRNA")
    'lncrna'
    """
    if raw is None or raw != raw:
        return ""
    key = str(raw).strip().lower()

    canonical = _BIOTYPE_ALIASES.get(key)
    if canonical is not None:
        return canonical

    if "protein" in key and "coding" in key:
        return "protein_coding"
    if "lncrna" in key or "lincrna" in key or ("long" in key and "noncoding" in key):
        return "lncrna"
    if "pseudogene" in key:
        return "pseudogene"

    return key.replace("-", "_").replace(" ", "_")


def is_kept_biotype(biotype, keep_set: FrozenSet[str]) -> bool:
    """
    Check if a (raw or canonical) biotype is in the keep set.

    Args:
        biotype: Raw or canonical biotype string.
        keep_set: Frozenset of canonical biotype strings (from config).
    """
    return normalize_biotype(biotype) in keep_set


def load_keep_biotypes(config: dict) -> FrozenSet[str]:
    """Load the set of biotypes to keep from config, canonicalized."""
    return frozenset(normalize_biotype(b) for b in config["counts"]["keep_biotypes"])


def gene_list(value) -> List[str]:
    """A single symbol or a list of symbols, as a list (None -> [])."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# ============================================================
# FILE UTILITIES
# ============================================================

def compute_file_checksum(filepath: str, algorithm: str = "md5") -> str:
    """Compute hex digest of a file."""
    h = hashlib.new(algorithm)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def _describe_files(paths: Dict[str, str]) -> Dict[str, dict]:
    described = {}
    for label, fpath in paths.items():
        entry = {"path": str(fpath)}
        if os.path.isfile(fpath):
            entry["md5"] = compute_file_checksum(fpath)
            entry["size_bytes"] = os.path.getsize(fpath)
        described[label] = entry
    return described


# ============================================================
# STAGE MANIFEST
# ============================================================

def create_stage_manifest(
    stage_name: str,
    inputs: Dict[str, str],
    outputs: Dict[str, str],
    config: dict,
    stats: dict,
    output_path: str,
) -> dict:
    """
    Write a JSON manifest for a pipeline run.

    Records: inputs and outputs (with checksums), config snapshot,
    git commit if available, timestamp, and run stats.
    """
    manifest = {
        "stage": stage_name,
        "timestamp": datetime.now().isoformat(),
        "inputs": _describe_files(inputs),
        "outputs": _describe_files(outputs),
        "config": {k: v for k, v in config.items() if not k.startswith("_")},
        "stats": stats,
    }

    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=5
        )
        if result.returncode == 0:
            manifest["git_commit"] = result.stdout.strip()
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git commit unavailable: {e}")

    with open(output_path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    return manifest


# ============================================================
# CONFIG VALIDATION
# ============================================================

def _require_non_negative_int(errors: list, section: dict, key: str, prefix: str):
    value = section.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        errors.append(f"{prefix}.{key} must be a non-negative integer, got {value!r}")


def validate_config(config: dict, required_inputs: Iterable[str] = ("counts", "sample_sheet")):
    """
    Validate that required config fields are present and consistent.
    Raises ConfigError listing every failure.
    """
    errors = []

    inputs = config.get("inputs") or {}
    for key in required_inputs:
        if not inputs.get(key):
            errors.append(f"inputs.{key} is required")

    counts = config.get("counts", {})
    if not counts.get("gene_id_column"):
        errors.append("counts.gene_id_column is required")
    if not counts.get("symbol_column"):
        errors.append("counts.symbol_column is required")
    if not counts.get("keep_biotypes"):
        errors.append("counts.keep_biotypes must list at least one biotype")
    _require_non_negative_int(errors, counts, "detect_min_count", "counts")
    _require_non_negative_int(errors, counts, "detect_min_samples", "counts")
    exempt = counts.get("exception_genes")
    symbols = [exempt] if isinstance(exempt, str) else exempt
    if symbols is not None and (not isinstance(symbols, list)
                                or not all(isinstance(g, str) and g for g in symbols)):
        errors.append(f"counts.exception_genes must be a gene symbol or a list of symbols, "
                      f"got {exempt!r}")

    policy = config.get("joins", {}).get("on_mismatch")
    if policy not in ("fail", "drop"):
        errors.append(f"joins.on_mismatch must be 'fail' or 'drop', got {policy!r}")

    source = config.get("annotation", {}).get("source")
    if source not in ("file", "biomart"):
        errors.append(f"annotation.source must be 'file' or 'biomart', got {source!r}")
    elif source == "file" and not inputs.get("annotation"):
        errors.append("inputs.annotation is required when annotation.source is 'file'")

    panels = config.get("classification", {}).get("panels") or {}
    if not isinstance(panels, dict):
        errors.append("classification.panels must map panel name -> results file")

    if errors:
        raise ConfigError(
            "Config validation failed:\n" + "\n".join(f"  - {e}" for e in errors),
            records=errors,
        )
