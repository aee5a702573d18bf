"""Tests for the count matrix and sample sheet data model."""

import pytest
import pandas as pd
import numpy as np
from count_matrix import CountMatrix, Gene, Sample, SampleSheet
from errors import InputShapeError


def _frame(values, genes=("g1", "g2"), samples=("S1", "S2")):
    return pd.DataFrame(values, index=list(genes), columns=list(samples))


class TestCountMatrixValidation:
    def test_valid_counts(self):
        m = CountMatrix(_frame([[1, 2], [3, 4]]))
        assert m.shape == (2, 2)
        assert m.gene_ids == ["g1", "g2"]
        assert m.sample_ids == ["S1", "S2"]
        assert m.values.dtype == np.int64

    def test_integer_valued_floats_accepted(self):
        m = CountMatrix(_frame([[1.0, 2.0], [3.0, 4.0]]))
        assert m.values[1, 1] == 4

    def test_negative_counts_rejected(self):
        with pytest.raises(InputShapeError, match="negative"):
            CountMatrix(_frame([[1, -2], [3, 4]]))

    def test_non_integer_counts_rejected(self):
        with pytest.raises(InputShapeError, match="non-integer"):
            CountMatrix(_frame([[1.5, 2], [3, 4]]))

    def test_missing_values_rejected(self):
        with pytest.raises(InputShapeError, match="missing"):
            CountMatrix(_frame([[np.nan, 2], [3, 4]]))

    @pytest.mark.parametrize("bad", [np.inf, -np.inf])
    def test_infinite_counts_rejected(self, bad):
        with pytest.raises(InputShapeError, match="infinite"):
            CountMatrix(_frame([[5.0, 3.0], [bad, 4.0]]))

    def test_non_numeric_rejected(self):
        with pytest.raises(InputShapeError):
            CountMatrix(_frame([["a", 2], [3, 4]]))

    def test_duplicate_gene_ids_rejected(self):
        with pytest.raises(InputShapeError, match="Duplicate gene"):
            CountMatrix(_frame([[1, 2], [3, 4]], genes=("g1", "g1")))

    def test_duplicate_sample_ids_rejected(self):
        with pytest.raises(InputShapeError, match="Duplicate sample"):
            CountMatrix(_frame([[1, 2], [3, 4]], samples=("S1", "S1")))


class TestCountMatrixImmutability:
    def test_values_read_only(self):
        m = CountMatrix(_frame([[1, 2], [3, 4]]))
        with pytest.raises(ValueError):
            m.values[0, 0] = 10

    def test_source_frame_changes_do_not_leak(self):
        df = _frame([[1, 2], [3, 4]])
        m = CountMatrix(df)
        df.iloc[0, 0] = 99
        assert m.values[0, 0] == 1

    def test_drop_samples_returns_new_matrix(self):
        m = CountMatrix(_frame([[1, 2], [3, 4]]))
        dropped = m.drop_samples(["S1"], provenance="abc")
        assert dropped.sample_ids == ["S2"]
        assert dropped.provenance == "abc"
        assert m.sample_ids == ["S1", "S2"]
        assert m.provenance is None

    def test_select_genes_keeps_annotation_and_provenance(self):
        genes = {"g1": Gene("g1", "TP53", "chr17"), "g2": Gene("g2", "XIST", "chrX")}
        m = CountMatrix(_frame([[1, 2], [3, 4]]), genes=genes, provenance="d1")
        sub = m.select_genes(["g2"])
        assert sub.gene_ids == ["g2"]
        assert sub.genes == {"g2": genes["g2"]}
        assert sub.provenance == "d1"

    def test_select_unknown_sample_raises(self):
        m = CountMatrix(_frame([[1, 2], [3, 4]]))
        with pytest.raises(InputShapeError):
            m.select_samples(["S9"])

    def test_library_sizes(self):
        m = CountMatrix(_frame([[1, 2], [3, 4]]))
        assert m.library_sizes().tolist() == [4, 6]


class TestAlignment:
    def test_align_reorders_to_sheet(self):
        sheet = SampleSheet([Sample("S2", "male", "control"), Sample("S1", "female", "control")])
        m = CountMatrix(_frame([[1, 2], [3, 4]])).align(sheet)
        assert m.sample_ids == ["S2", "S1"]
        assert m.values[:, 0].tolist() == [2, 4]

    def test_align_mismatch_raises_with_details(self):
        sheet = SampleSheet([Sample("S1", "female", "control"), Sample("S3", "male", "control")])
        with pytest.raises(InputShapeError) as exc:
            CountMatrix(_frame([[1, 2], [3, 4]])).align(sheet)
        assert exc.value.details["only_in_counts"] == ["S2"]
        assert exc.value.details["only_in_metadata"] == ["S3"]

    def test_from_samples_by_genes(self):
        df = pd.DataFrame({"g1": [1, 2], "g2": [3, 4]}, index=["S1", "S2"])
        m = CountMatrix.from_samples_by_genes(df)
        assert m.gene_ids == ["g1", "g2"]
        assert m.sample_ids == ["S1", "S2"]


class TestSampleSheet:
    def test_group_label(self):
        assert Sample("S1", "female", "treated").group == "female_treated"

    def test_with_cluster_returns_new_sample(self):
        s = Sample("S1", "female", "treated")
        t = s.with_cluster(2)
        assert t.quality_cluster == 2
        assert s.quality_cluster is None

    def test_duplicate_ids_rejected(self):
        with pytest.raises(InputShapeError):
            SampleSheet([Sample("S1", "female", "control"), Sample("S1", "male", "control")])

    def test_group_sizes(self, sample_sheet):
        sizes = sample_sheet.group_sizes()
        assert sizes.to_dict() == {
            "female_control": 2,
            "female_treated": 2,
            "male_control": 2,
            "male_treated": 2,
        }

    def test_exclude_keeps_order(self, sample_sheet):
        kept = sample_sheet.exclude(["A2", "C2"])
        assert kept.sample_ids == ["A1", "B1", "B2", "C1", "D1", "D2"]
        assert len(sample_sheet) == 8

    def test_frame_round_trip(self, sample_sheet):
        again = SampleSheet.from_frame(sample_sheet.to_frame())
        assert again == sample_sheet

    def test_from_frame_requires_factors(self):
        with pytest.raises(InputShapeError, match="treatment"):
            SampleSheet.from_frame(pd.DataFrame({"sex": ["female"]}, index=["S1"]))

    def test_unknown_sample_lookup(self, sample_sheet):
        with pytest.raises(InputShapeError):
            sample_sheet["nope"]
