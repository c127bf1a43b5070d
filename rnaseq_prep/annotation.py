"""
annotation.py — Gene annotation lookup (symbol -> biotype, symbol -> Ensembl ID).

The lookup is either read from a TSV exported from Ensembl BioMart or
fetched live from the BioMart REST service. Either way it ends up as a
four-column frame:

    ensembl_gene_id   symbol   entrez_id   biotype

Only `biotype` feeds the coding-gene filter and only `ensembl_gene_id`
feeds the classifier input; nothing from the lookup is retained in the
output matrices.
"""

import logging
import time
from io import StringIO
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd
import requests

from rnaseq_prep.errors import AnnotationError, SchemaError
from rnaseq_prep.gene_utils import normalize_biotype, resolve_path

logger = logging.getLogger(__name__)


BIOMART_SERVER = "https://www.ensembl.org/biomart/martservice"

ANNOTATION_COLUMNS = ["ensembl_gene_id", "symbol", "entrez_id", "biotype"]

# BioMart attribute names and the display headers it writes with header="1"
_COLUMN_ALIASES = {
    "ensembl_gene_id": "ensembl_gene_id",
    "gene stable id": "ensembl_gene_id",
    "ensembl": "ensembl_gene_id",
    "symbol": "symbol",
    "external_gene_name": "symbol",
    "gene name": "symbol",
    "hgnc_symbol": "symbol",
    "entrez_id": "entrez_id",
    "entrezgene_id": "entrez_id",
    "ncbi gene (formerly entrezgene) id": "entrez_id",
    "entrezid": "entrez_id",
    "biotype": "biotype",
    "gene_biotype": "biotype",
    "gene type": "biotype",
    "genetype": "biotype",
}


def get_query(dataset: str) -> str:
    """Generate the BioMart XML query for the four annotation attributes."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE Query>
<Query virtualSchemaName="default" formatter="TSV" header="1" uniqueRows="1" count="" datasetConfigVersion="0.6">
    <Dataset name="{dataset}" interface="default">
        <Attribute name="ensembl_gene_id"/>
        <Attribute name="external_gene_name"/>
        <Attribute name="entrezgene_id"/>
        <Attribute name="gene_biotype"/>
    </Dataset>
</Query>"""


def _standardize_columns(df: pd.DataFrame, source: str) -> pd.DataFrame:
    renamed = df.rename(columns=lambda c: _COLUMN_ALIASES.get(str(c).strip().lower(), c))
    missing = [c for c in ANNOTATION_COLUMNS if c not in renamed.columns]
    if missing:
        raise SchemaError(
            f"Annotation {source} is missing required columns: {missing}. "
            f"Found: {list(df.columns)}",
            stage="annotation",
            records=missing,
        )
    out = renamed[ANNOTATION_COLUMNS].copy()
    out["symbol"] = out["symbol"].str.strip()
    out = out[out["symbol"].notna() & (out["symbol"] != "")]
    return out.reset_index(drop=True)


def load_annotation(path) -> pd.DataFrame:
    """Read an annotation TSV (BioMart export or pipeline format)."""
    path = Path(path)
    if not path.is_file():
        raise AnnotationError(f"Annotation file not found: {path}", stage="annotation",
                              records=[str(path)])
    df = pd.read_csv(path, sep="\t", dtype=str)
    return _standardize_columns(df, str(path))


def fetch_biomart_annotation(dataset: str = "hsapiens_gene_ensembl",
                             timeout: int = 600,
                             server: str = BIOMART_SERVER) -> pd.DataFrame:
    """
    Query Ensembl BioMart for the annotation table.

    Raises AnnotationError on HTTP failure, timeout, or a BioMart
    'Query ERROR' body (BioMart reports errors with status 200).
    """
    logger.info(f"Querying BioMart: {dataset}...")
    start = time.time()

    try:
        response = requests.get(server, params={"query": get_query(dataset)}, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.Timeout as e:
        raise AnnotationError(f"BioMart timeout after {timeout}s", stage="annotation") from e
    except requests.exceptions.RequestException as e:
        raise AnnotationError(f"BioMart request failed: {e}", stage="annotation") from e

    if response.text.startswith("Query ERROR"):
        raise AnnotationError(f"BioMart error: {response.text[:500]}", stage="annotation")

    elapsed = time.time() - start
    lines = response.text.count("\n")
    logger.info(f"  Got {lines:,} lines in {elapsed:.1f}s")

    df = pd.read_csv(StringIO(response.text), sep="\t", dtype=str)
    return _standardize_columns(df, f"BioMart:{dataset}")


class AnnotationLookup:
    """
    Symbol-keyed view over an annotation frame.

    A symbol may map to several Ensembl IDs (alt haplotypes, readthrough
    loci). The protein-coding entry wins, otherwise the first listed.

    Attributes:
        frame: the standardized four-column annotation frame
        biotypes: dict {symbol: canonical biotype}
        ensembl_ids: dict {symbol: ensembl_gene_id}
    """

    def __init__(self, frame: pd.DataFrame):
        self.frame = _standardize_columns(frame, "frame")
        self.biotypes: Dict[str, str] = {}
        self.ensembl_ids: Dict[str, str] = {}
        self._index()

    def _index(self):
        for ens_id, symbol, biotype in zip(self.frame["ensembl_gene_id"],
                                           self.frame["symbol"],
                                           self.frame["biotype"]):
            canonical = normalize_biotype(biotype)
            current = self.biotypes.get(symbol)
            if current is None or (current != "protein_coding" and canonical == "protein_coding"):
                self.biotypes[symbol] = canonical
                if isinstance(ens_id, str) and ens_id:
                    self.ensembl_ids[symbol] = ens_id
                else:
                    self.ensembl_ids.pop(symbol, None)

    def biotype_of(self, symbol: str) -> Optional[str]:
        return self.biotypes.get(symbol)

    def annotate(self, symbols: Iterable[str]) -> pd.Series:
        """Canonical biotype per symbol, None where the symbol is unknown."""
        symbols = list(symbols)
        return pd.Series([self.biotypes.get(s) for s in symbols], index=symbols,
                         dtype=object, name="biotype")

    def symbol_to_ensembl(self) -> Dict[str, str]:
        return dict(self.ensembl_ids)

    def __len__(self):
        return len(self.biotypes)

    def __contains__(self, symbol):
        return symbol in self.biotypes

    @classmethod
    def from_config(cls, config: dict) -> "AnnotationLookup":
        """Load the lookup from file or BioMart as configured."""
        settings = config["annotation"]
        if settings["source"] == "biomart":
            frame = fetch_biomart_annotation(settings["biomart_dataset"], settings["timeout"])
        else:
            frame = load_annotation(resolve_path(config, config["inputs"]["annotation"]))
        lookup = cls(frame)
        logger.info(f"Annotation lookup: {len(lookup):,} symbols")
        return lookup
