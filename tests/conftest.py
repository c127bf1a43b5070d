import pandas as pd
import pytest

from rnaseq_prep.annotation import AnnotationLookup


def make_lookup(rows):
    """rows: list of (ensembl_gene_id, symbol, biotype)."""
    frame = pd.DataFrame(
        [(ens, sym, str(i), bt) for i, (ens, sym, bt) in enumerate(rows, start=1)],
        columns=["ensembl_gene_id", "symbol", "entrez_id", "biotype"],
    )
    return AnnotationLookup(frame)


def make_counts(rows, samples):
    """rows: list of (gene_id, symbol, [counts...])."""
    records = [dict(gene_id=g, gene_name=s, **dict(zip(samples, vals))) for g, s, vals in rows]
    return pd.DataFrame(records, columns=["gene_id", "gene_name"] + list(samples))


@pytest.fixture
def ab_counts():
    return make_counts(
        [
            ("ENSG01", "A", [5, 2]),
            ("ENSG02", "A", [3, 1]),
            ("ENSG03", "B", [10, 0]),
        ],
        ["S1", "S2"],
    )


@pytest.fixture
def ab_lookup():
    return make_lookup([
        ("ENSG01", "A", "protein_coding"),
        ("ENSG03", "B", "protein_coding"),
    ])


@pytest.fixture
def cohort_lookup():
    return make_lookup([
        ("ENSG00000111640", "GAPDH", "protein_coding"),
        ("ENSG00000075624", "ACTB", "protein_coding"),
        ("ENSG00000129824", "RPS4Y1", "protein_coding"),
        ("ENSG00000229807", "XIST", "lncRNA"),
        ("ENSG00000251562", "MALAT1", "lncRNA"),
        ("ENSG00000166710", "B2M", "protein-coding"),
    ])


@pytest.fixture
def cohort_samples():
    return [f"X{1000 + i}.D{1 + i % 3}.BL" for i in range(12)]


@pytest.fixture
def cohort_counts(cohort_samples):
    n = len(cohort_samples)
    return make_counts(
        [
            ("ENSG00000111640", "GAPDH", [500 + i for i in range(n)]),
            ("ENSG00000075624", "ACTB", [300] * n),
            ("ENSG00000075624.2", "ACTB", [20] * n),
            ("ENSG00000129824", "RPS4Y1", [0 if i % 2 else 40 for i in range(n)]),
            ("ENSG00000229807", "XIST", [60 if i % 2 else 1 for i in range(n)]),
            ("ENSG00000251562", "MALAT1", [900] * n),
            ("ENSG00000166710", "B2M", [11] * 9 + [10] * (n - 9)),
            ("ENSG00000999999", "NOVEL1", [50] * n),
        ],
        cohort_samples,
    )
