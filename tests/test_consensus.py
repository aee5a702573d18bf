"""Tests for the consensus overlap report."""

import pytest
import pandas as pd
import numpy as np
from consensus import ConsensusRanker
from de_engine import finalize_results
from errors import ConfigurationError


def _result(backend, genes, contrast="treatment"):
    n = len(genes)
    table = pd.DataFrame(
        {
            "gene": genes,
            "log2FoldChange": np.ones(n),
            "baseMean": np.full(n, 50.0),
            "pvalue": np.linspace(1e-6, 0.9, n),
        }
    )
    return finalize_results(table, backend=backend, contrast=contrast)


@pytest.fixture
def three_results():
    return [
        _result("nb_glm", ["a", "b", "c", "d", "e", "f"]),
        _result("ql_nb", ["b", "a", "d", "g", "h", "c"]),
        _result("voom", ["a", "d", "b", "i", "c", "j"]),
    ]


def test_sets_use_top_n(three_results):
    report = ConsensusRanker(top_n=3).rank(three_results)
    assert report.sets["nb_glm"] == frozenset({"a", "b", "c"})
    assert report.sets["ql_nb"] == frozenset({"a", "b", "d"})
    assert report.sets["voom"] == frozenset({"a", "b", "d"})
    assert report.shared_by_all == frozenset({"a", "b"})
    assert report.pairwise[("ql_nb", "voom")] == frozenset({"a", "b", "d"})
    assert report.specific["nb_glm"] == frozenset({"c"})
    assert report.specific["voom"] == frozenset()


@pytest.mark.parametrize("top_n", [1, 2, 3, 4, 6, 100])
def test_overlap_inequalities(three_results, top_n):
    report = ConsensusRanker(top_n=top_n).rank(three_results)
    min_pair = min(len(s) for s in report.pairwise.values())
    min_set = min(len(s) for s in report.sets.values())
    assert len(report.shared_by_all) <= min_pair <= min_set
    for (a, b), shared in report.pairwise.items():
        assert shared == report.sets[a] & report.sets[b]
        assert report.shared_by_all <= shared


def test_counts_and_membership(three_results):
    report = ConsensusRanker(top_n=3).rank(three_results)
    counts = report.counts().set_index("set")["n_genes"]
    assert counts["nb_glm"] == 3
    assert counts["all"] == 2
    assert counts["only nb_glm"] == 1
    membership = report.membership_frame()
    assert list(membership.index[:2]) == ["a", "b"]
    assert membership.loc["c", "nb_glm"]
    assert not membership.loc["c", "voom"]
    assert membership.loc["a", "n_backends"] == 3


def test_different_contrasts_rejected():
    results = [_result("nb_glm", ["a"]), _result("voom", ["a"], contrast="male:treated_vs_control")]
    with pytest.raises(ConfigurationError, match="one contrast") as exc:
        ConsensusRanker().rank(results)
    assert exc.value.stage == "consensus"


def test_single_backend_rejected():
    with pytest.raises(ConfigurationError, match="at least two"):
        ConsensusRanker().rank([_result("nb_glm", ["a"])])


def test_duplicate_backend_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        ConsensusRanker().rank([_result("voom", ["a"]), _result("voom", ["b"])])


def test_invalid_top_n():
    with pytest.raises(ConfigurationError):
        ConsensusRanker(top_n=0)
