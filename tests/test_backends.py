"""Tests for the shared DE contract and the three backends."""

import logging
import warnings
import pytest
import pandas as pd
import numpy as np
from count_matrix import CountMatrix
from de_engine import DEResult, finalize_results, get_backend, run_backends
from design_matrix import build_design, build_treatment_design, treatment_contrasts
from errors import ConfigurationError, ConvergenceWarning
from nb_glm_backend import NegativeBinomialGLMBackend
from normalizer import filter_low_counts
from ql_backend import QuasiLikelihoodBackend, expression_filter
from voom_backend import VoomLimmaBackend

ALL_BACKENDS = [NegativeBinomialGLMBackend, QuasiLikelihoodBackend, VoomLimmaBackend]


def _raw_table(n=6):
    return pd.DataFrame(
        {
            "gene": [f"g{i}" for i in range(n)],
            "log2FoldChange": np.linspace(-1, 1, n),
            "baseMean": np.full(n, 100.0),
            "pvalue": [0.04, 0.01, 0.5, 0.01, 0.9, 0.2][:n],
        }
    )


class TestFinalizeResults:
    def test_padj_bounds_and_order(self):
        res = finalize_results(_raw_table(), backend="x", contrast="c")
        df = res.results_df
        assert list(df.columns[:5]) == ["gene", "log2FoldChange", "baseMean", "pvalue", "padj"]
        assert (df["padj"] >= df["pvalue"]).all()
        assert (df["padj"] <= 1.0).all()
        assert df["padj"].is_monotonic_increasing
        # ties on padj and pvalue broken by gene id
        assert df["gene"].tolist()[:2] == ["g1", "g3"]
        assert res.n_tested == 6
        assert res.n_dropped == 0

    def test_undefined_rows_dropped_with_one_warning(self):
        table = _raw_table()
        table.loc[2, "pvalue"] = np.nan
        table.loc[4, "log2FoldChange"] = np.inf
        undefined = np.array([True, False, False, False, False, False])
        with pytest.warns(ConvergenceWarning) as record:
            res = finalize_results(table, backend="x", contrast="c", undefined=undefined)
        assert len(record) == 1
        assert res.n_dropped == 3
        assert res.n_tested == 3
        assert set(res.results_df["gene"]) == {"g1", "g3", "g5"}
        assert res.warnings

    def test_bh_uses_only_tested_genes(self):
        table = _raw_table()
        table.loc[5, "pvalue"] = np.nan
        with pytest.warns(ConvergenceWarning):
            res = finalize_results(table, backend="x", contrast="c")
        from statsmodels.stats.multitest import multipletests

        expected = multipletests([0.04, 0.01, 0.5, 0.01, 0.9], method="fdr_bh")[1]
        got = res.results_df.set_index("gene").loc[["g0", "g1", "g2", "g3", "g4"], "padj"]
        assert np.allclose(got.to_numpy(), expected)

    def test_empty_table(self):
        res = finalize_results(_raw_table().iloc[:0], backend="x", contrast="c")
        assert res.n_tested == 0
        assert res.results_df.empty
        assert "padj" in res.results_df.columns

    def test_no_warning_when_nothing_dropped(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            finalize_results(_raw_table(), backend="x", contrast="c")

    def test_result_helpers(self):
        from count_matrix import Gene

        res = finalize_results(_raw_table(), backend="x", contrast="c", decision_id="d1")
        assert res.top_genes(2) == ["g1", "g3"]
        assert res.n_significant(0.05) == len(res.significant(0.05))
        annotated = res.annotated({"g1": Gene("g1", "TP53", "chr17")})
        row = annotated.set_index("gene").loc["g1"]
        assert row["name"] == "TP53"
        assert row["chromosome"] == "chr17"
        assert res.decision_id == "d1"


class TestBackendContract:
    @pytest.fixture
    def prepared(self, small_experiment):
        matrix = filter_low_counts(small_experiment.counts, min_count=10, min_samples=3)
        design = build_design(small_experiment.sheet)
        return matrix, design

    @pytest.mark.parametrize("backend_cls", ALL_BACKENDS)
    def test_result_table_invariants(self, prepared, backend_cls):
        matrix, design = prepared
        contrast = treatment_contrasts(design, "control")[0]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            res = backend_cls().run(matrix, design, contrast)

        assert isinstance(res, DEResult)
        assert res.backend == backend_cls.name
        assert res.contrast == "female:treated_vs_control"
        df = res.results_df
        for column in ("gene", "log2FoldChange", "baseMean", "pvalue", "padj", "stat"):
            assert column in df.columns
        assert np.isfinite(df[["log2FoldChange", "baseMean", "pvalue", "padj"]].to_numpy()).all()
        assert (df["padj"] >= df["pvalue"]).all()
        ordered = df.sort_values(["padj", "pvalue", "gene"], kind="mergesort")
        assert ordered["gene"].tolist() == df["gene"].tolist()
        assert res.n_tested + res.n_dropped + res.n_filtered == matrix.n_genes

    @pytest.mark.parametrize("backend_cls", ALL_BACKENDS)
    def test_fit_once_contrast_many(self, prepared, backend_cls):
        matrix, design = prepared
        backend = backend_cls()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            model = backend.fit(matrix, design)
            results = [backend.test(model, c) for c in treatment_contrasts(design, "control")]
        assert [r.contrast for r in results] == [
            "female:treated_vs_control",
            "male:treated_vs_control",
        ]

    def test_nb_glm_drops_count_outlier_gene(self, prepared, small_experiment):
        matrix, _ = prepared
        frame = matrix.to_frame()
        nulls = frame.drop(index=[g for g in small_experiment.de_genes if g in frame.index])
        gene = nulls.median(axis=1).idxmax()
        frame.loc[gene, frame.columns[0]] = int(frame.loc[gene].max()) * 50
        spiked = CountMatrix(frame)
        design = build_treatment_design(small_experiment.sheet)
        contrast = design.contrast("treated", "control", name="treatment")

        with pytest.warns(ConvergenceWarning, match="outliers"):
            res = NegativeBinomialGLMBackend().run(spiked, design, contrast)
        assert gene not in set(res.results_df["gene"])
        assert res.n_dropped >= 1
        assert res.n_tested + res.n_dropped == matrix.n_genes
        assert (res.results_df["padj"] >= res.results_df["pvalue"]).all()

    def test_mismatched_decision_rejected(self, prepared, small_experiment):
        matrix, _ = prepared
        design = build_design(small_experiment.sheet, decision_id="other")
        stamped = matrix.select_samples(matrix.sample_ids, provenance="mine")
        contrast = treatment_contrasts(design, "control")[0]
        with pytest.raises(ConfigurationError) as exc:
            VoomLimmaBackend().run(stamped, design, contrast)
        assert exc.value.stage == "de:female:treated_vs_control:voom"

    def test_too_few_replicates(self, prepared, small_experiment):
        matrix, _ = prepared
        sheet = small_experiment.sheet.exclude([small_experiment.sheet.sample_ids[0], small_experiment.sheet.sample_ids[1]])
        design = build_design(sheet)
        contrast = treatment_contrasts(design, "control")[0]
        with pytest.raises(ConfigurationError, match="female_control"):
            QuasiLikelihoodBackend().run(matrix.select_samples(sheet.sample_ids), design, contrast)

    def test_get_backend(self):
        assert isinstance(get_backend("ql_nb", min_count=5), QuasiLikelihoodBackend)
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            get_backend("edgeR")

    def test_run_backends_concurrently(self, prepared):
        matrix, design = prepared
        contrast = treatment_contrasts(design, "control")[1]
        backends = [cls() for cls in ALL_BACKENDS]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            results = run_backends(matrix, design, contrast, backends, max_workers=3)
        assert sorted(results) == ["nb_glm", "ql_nb", "voom"]
        assert {r.contrast for r in results.values()} == {"male:treated_vs_control"}

    def test_run_backends_logs_configured_threshold(self, prepared, caplog):
        matrix, design = prepared
        contrast = treatment_contrasts(design, "control")[0]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            with caplog.at_level(logging.INFO, logger="de_engine"):
                results = run_backends(
                    matrix, design, contrast, [VoomLimmaBackend()], padj_threshold=0.1
                )
        expected = results["voom"].n_significant(0.1)
        assert f"{expected} with padj < 0.1" in caplog.text
        assert "padj < 0.05" not in caplog.text


class TestRecovery:
    @pytest.mark.parametrize("backend_cls", ALL_BACKENDS)
    def test_two_true_genes_in_top_50(self, two_gene_experiment, backend_cls):
        exp = two_gene_experiment
        matrix = filter_low_counts(exp.counts, min_count=10, min_samples=3)
        assert set(exp.de_genes) <= set(matrix.gene_ids)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            res = backend_cls().global_test(matrix, exp.sheet, reference="control")

        assert res.contrast == "treatment"
        top = res.top_genes(50)
        for gene in exp.de_genes:
            assert gene in top
        lfc = res.results_df.set_index("gene")["log2FoldChange"]
        # first simulated gene is up, second down
        assert lfc[exp.de_genes[0]] > 1.5
        assert lfc[exp.de_genes[1]] < -1.5

    def test_global_test_uses_treatment_only_design(self, two_gene_experiment):
        exp = two_gene_experiment
        matrix = filter_low_counts(exp.counts, min_count=10, min_samples=3)
        backend = VoomLimmaBackend()
        pooled = backend.global_test(matrix, exp.sheet, reference="control")
        design = build_treatment_design(exp.sheet)
        direct = backend.run(matrix, design, design.contrast("treated", "control", name="treatment"))
        pd.testing.assert_frame_equal(pooled.results_df, direct.results_df)


class TestQuasiLikelihoodFilter:
    def test_expression_filter(self):
        counts = np.array(
            [
                [100, 100, 100, 100],
                [100, 100, 0, 0],
                [1, 0, 0, 0],
                [5, 5, 5, 5],
            ]
        )
        keep = expression_filter(counts, min_samples=2, min_count=10, min_total_count=15)
        assert keep.tolist() == [True, True, False, False]

    def test_filtered_genes_counted(self, small_experiment):
        design = build_design(small_experiment.sheet)
        contrast = treatment_contrasts(design, "control")[0]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            res = QuasiLikelihoodBackend(min_count=50).run(small_experiment.counts, design, contrast)
        assert res.n_filtered > 0
        assert res.n_tested + res.n_dropped + res.n_filtered == small_experiment.counts.n_genes
