import pandas as pd
import pytest
import requests

from conftest import make_lookup
from rnaseq_prep import annotation
from rnaseq_prep.annotation import (
    AnnotationLookup,
    fetch_biomart_annotation,
    get_query,
    load_annotation,
)
from rnaseq_prep.errors import AnnotationError, SchemaError

BIOMART_TSV = (
    "Gene stable ID\tGene name\tNCBI gene (formerly Entrezgene) ID\tGene type\n"
    "ENSG00000111640\tGAPDH\t2597\tprotein_coding\n"
    "ENSG00000229807\tXIST\t7503\tlncRNA\n"
    "ENSG00000280000\tDUP1\t\tlncRNA\n"
    "ENSG00000280001\tDUP1\t99\tprotein_coding\n"
)


class FakeResponse:
    def __init__(self, text, status=200):
        self.text = text
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


def test_load_biomart_export(tmp_path):
    path = tmp_path / "annotation.tsv"
    path.write_text(BIOMART_TSV)
    df = load_annotation(path)
    assert df.columns.tolist() == ["ensembl_gene_id", "symbol", "entrez_id", "biotype"]
    assert len(df) == 4
    assert df.loc[0, "entrez_id"] == "2597"


def test_load_annotation_missing_column(tmp_path):
    path = tmp_path / "annotation.tsv"
    path.write_text("ensembl_gene_id\tsymbol\nENSG1\tA\n")
    with pytest.raises(SchemaError) as exc:
        load_annotation(path)
    assert exc.value.records == ["entrez_id", "biotype"]


def test_load_annotation_missing_file(tmp_path):
    with pytest.raises(AnnotationError):
        load_annotation(tmp_path / "nope.tsv")


def test_lookup_prefers_protein_coding_entry(tmp_path):
    path = tmp_path / "annotation.tsv"
    path.write_text(BIOMART_TSV)
    lookup = AnnotationLookup(load_annotation(path))

    assert lookup.biotype_of("DUP1") == "protein_coding"
    assert lookup.symbol_to_ensembl()["DUP1"] == "ENSG00000280001"
    assert lookup.biotype_of("XIST") == "lncrna"
    assert "GAPDH" in lookup
    assert len(lookup) == 3


def test_winning_entry_without_id_clears_stale_ensembl_id():
    lookup = make_lookup([
        ("ENSG_LNC", "DUP", "lncRNA"),
        (None, "DUP", "protein_coding"),
    ])

    assert lookup.biotype_of("DUP") == "protein_coding"
    assert "DUP" not in lookup.symbol_to_ensembl()


def test_annotate_unknown_symbols(tmp_path):
    path = tmp_path / "annotation.tsv"
    path.write_text(BIOMART_TSV)
    lookup = AnnotationLookup(load_annotation(path))

    labels = lookup.annotate(["GAPDH", "NOPE"])
    assert labels["GAPDH"] == "protein_coding"
    assert pd.isna(labels["NOPE"])


def test_get_query_names_dataset():
    xml = get_query("hsapiens_gene_ensembl")
    assert 'Dataset name="hsapiens_gene_ensembl"' in xml
    assert 'Attribute name="gene_biotype"' in xml


def test_fetch_biomart(monkeypatch):
    calls = {}

    def fake_get(url, params=None, timeout=None):
        calls["url"] = url
        calls["timeout"] = timeout
        return FakeResponse(BIOMART_TSV)

    monkeypatch.setattr(annotation.requests, "get", fake_get)
    df = fetch_biomart_annotation(timeout=5)
    assert calls == {"url": annotation.BIOMART_SERVER, "timeout": 5}
    assert df["symbol"].tolist() == ["GAPDH", "XIST", "DUP1", "DUP1"]


def test_fetch_biomart_query_error(monkeypatch):
    monkeypatch.setattr(annotation.requests, "get",
                        lambda *a, **k: FakeResponse("Query ERROR: caught BioMart::Exception"))
    with pytest.raises(AnnotationError, match="BioMart error"):
        fetch_biomart_annotation()


def test_fetch_biomart_http_error(monkeypatch):
    monkeypatch.setattr(annotation.requests, "get", lambda *a, **k: FakeResponse("", status=503))
    with pytest.raises(AnnotationError, match="request failed"):
        fetch_biomart_annotation()


def test_fetch_biomart_timeout(monkeypatch):
    def fake_get(*a, **k):
        raise requests.exceptions.Timeout()

    monkeypatch.setattr(annotation.requests, "get", fake_get)
    with pytest.raises(AnnotationError, match="timeout"):
        fetch_biomart_annotation(timeout=1)
