"""Tests for the abundance matrix and sample annotation containers."""
import pytest
import numpy as np
import pandas as pd

from proteomarker.data.matrix import (
    AbundanceMatrix,
    FeatureMeta,
    CovariateKind,
    SampleAnnotation,
    infer_kinds,
)
from proteomarker.exceptions import ValidationError


class TestFeatureMeta:
    """Tests for FeatureMeta."""

    def test_compound_id_three_parts(self):
        """source|feature_id|display_name should be split into fields."""
        meta = FeatureMeta.from_compound_id("sp|P04637|P53_HUMAN")
        assert meta.source == "sp"
        assert meta.feature_id == "P04637"
        assert meta.display_name == "P53_HUMAN"

    def test_compound_id_plain(self):
        """A key without separator is both ID and name."""
        meta = FeatureMeta.from_compound_id("P04637")
        assert meta.feature_id == meta.display_name == "P04637"
        assert meta.source is None

    def test_with_gene(self):
        """with_gene should return a copy carrying the gene ID."""
        meta = FeatureMeta("P04637", "P53_HUMAN")
        mapped = meta.with_gene("TP53")
        assert mapped.gene_id == "TP53"
        assert meta.gene_id is None


class TestAbundanceMatrix:
    """Tests for AbundanceMatrix."""

    def test_from_dataframe(self, mock_abundance_df):
        """Shape and identifiers should follow the DataFrame."""
        matrix = AbundanceMatrix.from_dataframe(mock_abundance_df)
        assert matrix.shape == (50, 10)
        assert list(matrix.feature_ids) == list(mock_abundance_df.index)
        assert list(matrix.sample_ids) == list(mock_abundance_df.columns)
        assert matrix.stage == "raw"

    def test_values_are_read_only(self, mock_abundance_matrix):
        """Values should not be writable in place."""
        with pytest.raises(ValueError):
            mock_abundance_matrix.values[0, 0] = 1.0

    def test_duplicate_feature_ids_rejected(self):
        """Duplicate row IDs should be named in the error."""
        with pytest.raises(ValidationError, match="P1"):
            AbundanceMatrix(np.ones((2, 2)), ["P1", "P1"], ["S1", "S2"])

    def test_shape_mismatch_rejected(self):
        """Values must match the identifier counts."""
        with pytest.raises(ValidationError):
            AbundanceMatrix(np.ones((2, 3)), ["P1", "P2"], ["S1", "S2"])

    def test_infinite_values_rejected(self):
        """Infinite values are not valid measurements."""
        with pytest.raises(ValidationError):
            AbundanceMatrix(np.array([[1.0, np.inf]]), ["P1"], ["S1", "S2"])

    def test_missing_rate(self, mock_abundance_matrix):
        """Missing rate should agree with the NaN count."""
        rate = mock_abundance_matrix.missing_rate()
        assert rate == pytest.approx(mock_abundance_matrix.n_missing / 500)
        per_feature = mock_abundance_matrix.missing_rate(axis=1)
        assert len(per_feature) == 50

    def test_with_values_keeps_ids_and_history(self, mock_abundance_matrix):
        """Derived matrices should keep identifiers and extend the history."""
        derived = mock_abundance_matrix.with_values(mock_abundance_matrix.values + 1, stage="shifted")
        assert derived.stage == "shifted"
        assert derived.history == ("raw", "shifted")
        assert list(derived.feature_ids) == list(mock_abundance_matrix.feature_ids)
        assert mock_abundance_matrix.stage == "raw"

    def test_select_features_preserves_order(self, mock_abundance_matrix):
        """Subsetting should keep the matrix row order, not the request order."""
        subset = mock_abundance_matrix.select_features(["P00003", "P00001"])
        assert list(subset.feature_ids) == ["P00001", "P00003"]
        assert subset.feature_meta[0].feature_id == "P00001"

    def test_select_unknown_feature(self, mock_abundance_matrix):
        """Unknown IDs should raise."""
        with pytest.raises(ValidationError, match="NOPE"):
            mock_abundance_matrix.select_features(["NOPE"])

    def test_log2_rejects_non_positive(self):
        """Zero intensities need a pseudocount."""
        matrix = AbundanceMatrix(np.array([[0.0, 4.0]]), ["P1"], ["S1", "S2"])
        with pytest.raises(ValidationError):
            matrix.log2()
        logged = matrix.log2(pseudocount=1.0)
        np.testing.assert_allclose(logged.values, [[0.0, np.log2(5.0)]])

    def test_samples_by_features(self, mock_abundance_matrix):
        """The model-fitting view should be transposed."""
        df = mock_abundance_matrix.samples_by_features()
        assert df.shape == (10, 50)

    def test_gene_mapping(self, mock_abundance_matrix):
        """Only rows with a gene ID should be mapped."""
        mapping = mock_abundance_matrix.gene_mapping()
        assert len(mapping) == 48
        assert mapping["P00000"] == "GENE0"


class TestSampleAnnotation:
    """Tests for SampleAnnotation."""

    def test_kinds(self, mock_annotation):
        """Declared kinds should be kept and values coerced."""
        assert mock_annotation.kinds["batch"] == CovariateKind.CATEGORICAL
        assert mock_annotation.kinds["age"] == CovariateKind.NUMERIC
        assert mock_annotation.kinds["collected"] == CovariateKind.DATE
        assert isinstance(mock_annotation.column("batch").dtype, pd.CategoricalDtype)

    def test_infer_kinds(self, mock_covariates_df):
        """Dtypes should map to covariate kinds."""
        kinds = infer_kinds(mock_covariates_df)
        assert kinds["age"] == CovariateKind.NUMERIC
        assert kinds["collected"] == CovariateKind.DATE
        assert kinds["batch"] == CovariateKind.CATEGORICAL

    def test_unknown_covariate(self, mock_annotation):
        """Looking up an absent covariate should raise."""
        with pytest.raises(ValidationError, match="height"):
            mock_annotation.covariate("height")

    def test_align_drops_extra_records(self, mock_abundance_matrix, mock_covariates_df):
        """Records for samples absent from the matrix are dropped, not an error."""
        extra = mock_covariates_df.copy()
        extra.loc["S99"] = extra.iloc[0]
        aligned = SampleAnnotation(extra).align(mock_abundance_matrix)
        assert list(aligned.sample_ids) == list(mock_abundance_matrix.sample_ids)

    def test_align_missing_record(self, mock_abundance_matrix, mock_covariates_df):
        """A matrix sample without a record should be named in the error."""
        annotation = SampleAnnotation(mock_covariates_df.drop(index="S03"))
        with pytest.raises(ValidationError, match="S03"):
            annotation.align(mock_abundance_matrix)

    def test_day_difference(self):
        """Day differences should be absolute and numeric."""
        df = pd.DataFrame({
            "diagnosis": pd.to_datetime(["2020-01-01", "2020-03-01"]),
            "death": pd.to_datetime(["2020-01-11", "2020-02-20"]),
        }, index=["A", "B"])
        annotation = SampleAnnotation(df).day_difference("diagnosis", "death", "survival")
        assert annotation.kinds["survival"] == CovariateKind.NUMERIC
        assert annotation.column("survival").tolist() == [10.0, 10.0]
