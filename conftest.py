"""
Pytest configuration and fixtures for the quality-triage and DE engine tests.
"""

from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np


# ============================================================================
# Synthetic Experiment Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def quality_experiment():
    """24 samples (6 per sex x treatment cell), 12 of them technically poor."""
    from simulation import simulate_experiment

    return simulate_experiment(
        n_genes=1000,
        n_per_group=6,
        n_de=100,
        fold_change=3.0,
        dispersion=0.1,
        n_poor=12,
        poor_noise=2.0,
        seed=7,
    )


@pytest.fixture(scope="session")
def two_gene_experiment():
    """12 clean samples, 2 strongly changed genes among 998 nulls."""
    from simulation import simulate_experiment

    return simulate_experiment(
        n_genes=1000,
        n_per_group=3,
        n_de=2,
        fold_change=8.0,
        dispersion=0.1,
        seed=11,
    )


@pytest.fixture
def small_experiment():
    """12 clean samples, 300 genes, 30 DE genes; fast enough for per-test use."""
    from simulation import simulate_experiment

    return simulate_experiment(
        n_genes=300, n_per_group=3, n_de=30, fold_change=4.0, dispersion=0.05, seed=3
    )


@pytest.fixture
def sample_sheet():
    """Hand-built 8-sample sheet (2 per sex x treatment cell) with mapping metrics."""
    from count_matrix import Sample, SampleSheet

    rows = [
        ("A1", "female", "control", 86.0, 5.0, 3.0),
        ("A2", "female", "control", 61.0, 14.0, 19.0),
        ("B1", "female", "treated", 84.0, 6.0, 2.5),
        ("B2", "female", "treated", 59.0, 16.0, 21.0),
        ("C1", "male", "control", 87.0, 4.5, 3.5),
        ("C2", "male", "control", 62.0, 15.0, 18.0),
        ("D1", "male", "treated", 85.0, 5.5, 2.0),
        ("D2", "male", "treated", 60.0, 15.5, 20.0),
    ]
    return SampleSheet(
        Sample(sid, sex, trt, pct_unique_mapped=u, pct_multi_mapped=m, pct_too_short=s)
        for sid, sex, trt, u, m, s in rows
    )


@pytest.fixture
def small_counts(sample_sheet):
    """Random NB counts (50 genes) for the hand-built sample sheet."""
    from count_matrix import CountMatrix

    rng = np.random.default_rng(0)
    mu = rng.lognormal(4.0, 1.0, size=(50, 1)) * np.ones((1, len(sample_sheet)))
    counts = rng.negative_binomial(n=10, p=10 / (10 + mu))
    frame = pd.DataFrame(
        counts,
        index=[f"gene_{i:04d}" for i in range(1, 51)],
        columns=sample_sheet.sample_ids,
    )
    return CountMatrix(frame)


# ============================================================================
# GSEApy Mocking Fixtures
# ============================================================================


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy module for enrichment analysis testing."""
    mock_gp = MagicMock()

    # Mock enrichr function
    mock_enrichr_result = MagicMock()
    mock_enrichr_result.results = pd.DataFrame(
        {
            "Term": ["immune response", "cell cycle", "apoptosis"],
            "P-value": [0.005, 0.001, 0.01],
            "Adjusted P-value": [0.02, 0.01, 0.03],
            "Odds Ratio": [2.0, 2.5, 1.8],
            "Combined Score": [40, 50, 35],
            "Genes": ["gene_4;gene_5", "gene_1;gene_2;gene_3", "gene_6;gene_7;gene_8"],
        }
    )
    mock_gp.enrichr = MagicMock(return_value=mock_enrichr_result)

    # Mock GSEA prerank function
    mock_gsea_result = MagicMock()
    mock_gsea_result.res2d = pd.DataFrame(
        {
            "Term": ["pathway_1", "pathway_2"],
            "ES": [0.5, -0.4],
            "NES": [2.0, -1.8],
            "NOM p-val": [0.001, 0.005],
            "FDR q-val": [0.01, 0.02],
            "FWER p-val": [0.01, 0.03],
            "Lead_genes": ["gene_1;gene_2", "gene_3;gene_4"],
        }
    )
    mock_gp.prerank = MagicMock(return_value=mock_gsea_result)

    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp
