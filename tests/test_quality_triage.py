"""Tests for quality signals and the exclusion decision."""

import pytest
import pandas as pd
import numpy as np
from config import ExclusionSet
from count_matrix import CountMatrix
from errors import ConfigurationError
from quality_triage import QualityTriage, poisson_distance


class TestSignals:
    def test_degenerate_pca_does_not_crash(self, sample_sheet):
        vst = pd.DataFrame(
            np.full((30, 8), 5.0), index=[f"g{i}" for i in range(30)], columns=sample_sheet.sample_ids
        )
        pca = QualityTriage().compute_pca(vst)
        assert pca.degenerate is True
        assert np.all(pca.coordinates.to_numpy() == 0)
        assert np.all(pca.explained_variance_ratio.to_numpy() == 0)

    def test_pca_explained_variance(self, small_experiment):
        from normalizer import Normalizer

        vst = Normalizer().normalize(small_experiment.counts).vst
        pca = QualityTriage(n_components=3).compute_pca(vst)
        assert not pca.degenerate
        assert list(pca.coordinates.columns) == ["PC1", "PC2", "PC3"]
        ratios = pca.explained_variance_ratio.to_numpy()
        assert np.all(np.diff(ratios) <= 1e-12)
        assert ratios.sum() <= 1.0 + 1e-9

    def test_poisson_distance_symmetric(self, small_counts):
        d = poisson_distance(small_counts)
        values = d.to_numpy()
        assert np.allclose(values, values.T)
        assert np.all(np.diag(values) == 0)
        assert np.all(values[~np.eye(len(values), dtype=bool)] >= 0)

    def test_poisson_distance_ignores_depth(self, sample_sheet):
        rng = np.random.default_rng(5)
        base = rng.integers(50, 500, size=(100, 1))
        frame = pd.DataFrame(
            np.hstack([base, base * 3, rng.permutation(base) * 2]),
            index=[f"g{i}" for i in range(100)],
            columns=["S1", "S2", "S3"],
        )
        d = poisson_distance(CountMatrix(frame), transform=False)
        assert d.loc["S1", "S2"] < d.loc["S1", "S3"]

    def test_cluster_labels(self, small_counts):
        triage = QualityTriage(n_clusters=2)
        clusters = triage.cluster_samples(poisson_distance(small_counts))
        assert set(clusters.unique()) <= {1, 2}
        assert list(clusters.index) == small_counts.sample_ids

    def test_mapping_correlation_constant_metric_is_nan(self, small_counts, sample_sheet):
        from count_matrix import SampleSheet

        frame = sample_sheet.to_frame()
        frame["pct_too_short"] = 3.0
        sheet = SampleSheet.from_frame(frame)
        triage = QualityTriage()
        signals = triage.compute_signals(small_counts, sheet)
        corr = signals.mapping_correlations
        short = corr[corr["metric"] == "pct_too_short"]
        assert short["r"].isna().all()
        assert corr[corr["metric"] == "pct_unique_mapped"]["r"].notna().all()


class TestCandidateRule:
    def test_low_mapping_cluster_is_flagged(self, sample_sheet):
        clusters = pd.Series(
            [1, 2, 1, 2, 1, 2, 1, 2], index=sample_sheet.sample_ids, name="quality_cluster"
        )
        poor, association, candidates = QualityTriage().find_candidates(clusters, sample_sheet)
        assert poor == 2
        assert association["sex"] == pytest.approx(1.0)
        assert association["treatment"] == pytest.approx(1.0)
        assert candidates == ("A2", "B2", "C2", "D2")

    def test_cluster_explained_by_sex_is_not_flagged(self, sample_sheet):
        clusters = pd.Series(
            [1, 1, 1, 1, 2, 2, 2, 2], index=sample_sheet.sample_ids, name="quality_cluster"
        )
        poor, association, candidates = QualityTriage().find_candidates(clusters, sample_sheet)
        assert poor == 1
        assert association["sex"] < 0.05
        assert candidates == ()

    def test_single_cluster_has_no_candidates(self, sample_sheet):
        clusters = pd.Series(1, index=sample_sheet.sample_ids)
        assert QualityTriage().find_candidates(clusters, sample_sheet) == (None, {}, ())


class TestDecision:
    def test_unknown_excluded_sample(self, small_counts, sample_sheet):
        exclusion = ExclusionSet(label="typo", sample_ids=frozenset({"Z9"}))
        with pytest.raises(ConfigurationError) as exc:
            QualityTriage().decide(small_counts, sample_sheet, exclusion)
        assert exc.value.stage == "triage"
        assert "Z9" in str(exc.value)

    def test_group_left_too_small(self, small_counts, sample_sheet):
        exclusion = ExclusionSet(label="too-much", sample_ids=frozenset({"A2"}))
        with pytest.raises(ConfigurationError, match="female_control"):
            QualityTriage().decide(small_counts, sample_sheet, exclusion)

    def test_decision_is_deterministic(self, small_counts, sample_sheet):
        exclusion = ExclusionSet(label="none")
        first = QualityTriage().decide(small_counts, sample_sheet, exclusion)
        second = QualityTriage().decide(small_counts, sample_sheet, exclusion)
        assert first.decision_id == second.decision_id
        pd.testing.assert_frame_equal(first.signals, second.signals)
        assert first.candidate_ids == second.candidate_ids

    def test_decision_id_tracks_count_content(self, small_counts, sample_sheet):
        exclusion = ExclusionSet(label="none")
        base = QualityTriage().decide(small_counts, sample_sheet, exclusion)

        bumped = small_counts.to_frame()
        bumped.iloc[0, 0] += 1
        changed = QualityTriage().decide(CountMatrix(bumped), sample_sheet, exclusion)

        renamed = small_counts.to_frame()
        renamed.index = [f"other_{g}" for g in renamed.index]
        relabeled = QualityTriage().decide(CountMatrix(renamed), sample_sheet, exclusion)

        assert len({base.decision_id, changed.decision_id, relabeled.decision_id}) == 3

    def test_decision_id_tracks_exclusion_version(self, quality_experiment):
        triage = QualityTriage()
        m, sheet = quality_experiment.counts, quality_experiment.sheet
        v1 = triage.decide(m, sheet, quality_experiment.exclusion(version="1"))
        v2 = triage.decide(m, sheet, quality_experiment.exclusion(version="2"))
        assert v1.decision_id != v2.decision_id
        assert v1.excluded_ids == v2.excluded_ids

    def test_apply_filters_and_stamps(self, quality_experiment):
        m, sheet = quality_experiment.counts, quality_experiment.sheet
        decision = QualityTriage().decide(m, sheet, quality_experiment.exclusion())
        kept_matrix, kept_sheet = decision.apply(m, sheet)

        assert sorted(decision.excluded_ids) == quality_experiment.poor_samples
        assert kept_matrix.provenance == decision.decision_id
        assert kept_matrix.sample_ids == kept_sheet.sample_ids
        assert not set(kept_sheet.sample_ids) & set(quality_experiment.poor_samples)
        assert all(s.quality_cluster is not None for s in kept_sheet)
        # inputs untouched
        assert m.n_samples == 24
        assert len(sheet) == 24

    def test_audit_frame(self, small_counts, sample_sheet):
        decision = QualityTriage().decide(small_counts, sample_sheet, ExclusionSet())
        frame = decision.to_frame()
        for column in ("PC1", "PC2", "nearest_neighbor_distance", "quality_cluster", "candidate", "excluded"):
            assert column in frame.columns
        assert not frame["excluded"].any()
        assert (frame["decision_id"] == decision.decision_id).all()
