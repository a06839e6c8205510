"""Tests for kNN imputation."""
import pytest
import numpy as np

from proteomarker.data.matrix import AbundanceMatrix
from proteomarker.data.imputation import ImputationConfig, KNNRowImputer, impute
from proteomarker.exceptions import ValidationError


def _matrix(rows, ids=None):
    values = np.array(rows, dtype=float)
    ids = ids or [f"F{i}" for i in range(values.shape[0])]
    return AbundanceMatrix(values, ids, [f"S{j}" for j in range(values.shape[1])])


class TestImputationConfig:
    """Tests for ImputationConfig."""

    def test_invalid_k(self):
        """k must be positive."""
        with pytest.raises(ValidationError):
            ImputationConfig(k=0)

    def test_invalid_ceiling(self):
        """Ceiling must be a fraction."""
        with pytest.raises(ValidationError):
            ImputationConfig(row_missing_ceiling=1.5)


class TestKNNRowImputer:
    """Tests for KNNRowImputer."""

    def test_no_missing_after_default(self, mock_abundance_matrix):
        """With the default ceiling every cell should be filled."""
        imputer = KNNRowImputer(ImputationConfig(k=10))
        completed = imputer.fit_transform(mock_abundance_matrix)
        assert completed.n_missing == 0
        assert completed.stage == "imputed"
        assert imputer.report_.n_imputed == mock_abundance_matrix.n_missing
        assert imputer.report_.n_missing_after == 0

    def test_observed_values_unchanged(self, mock_abundance_matrix):
        """Imputation must not touch observed values."""
        completed = impute(mock_abundance_matrix, k=3)
        observed = ~mock_abundance_matrix.missing_mask()
        np.testing.assert_array_equal(
            completed.values[observed], mock_abundance_matrix.values[observed]
        )

    def test_k1_copies_nearest_neighbour(self):
        """With k=1 the imputed value is the nearest donor's value exactly."""
        matrix = _matrix([
            [1.0, 2.0, np.nan],
            [1.1, 2.1, 7.25],
            [5.0, 9.0, 0.5],
        ])
        completed = impute(matrix, k=1)
        assert completed.values[0, 2] == 7.25

    def test_tie_broken_by_feature_id(self):
        """Equidistant donors should be ordered by feature ID."""
        matrix = _matrix([
            [1.0, np.nan],
            [2.0, 10.0],
            [0.0, 20.0],
        ], ids=["target", "b_donor", "a_donor"])
        completed = impute(matrix, k=1)
        assert completed.values[0, 1] == 20.0

    def test_distance_weighting(self):
        """Closer donors should pull the imputed value towards them."""
        matrix = _matrix([
            [0.0, 0.0, np.nan],
            [0.1, 0.1, 10.0],
            [3.0, 3.0, 0.0],
        ])
        uniform = impute(matrix, k=2, weights="uniform")
        weighted = impute(matrix, k=2, weights="distance")
        assert uniform.values[0, 2] == pytest.approx(5.0)
        assert weighted.values[0, 2] > 9.0

    def test_cell_without_donor_is_reported(self):
        """A column no candidate observes stays missing and is reported."""
        matrix = _matrix([
            [1.0, 2.0, np.nan],
            [1.5, 2.5, np.nan],
        ])
        imputer = KNNRowImputer(ImputationConfig(k=3))
        completed = imputer.fit_transform(matrix)
        assert completed.n_missing == 2
        assert ("F0", "S2") in imputer.report_.failed_cells
        assert imputer.report_.n_imputed == 0

    def test_donors_limited_to_k_nearest(self):
        """A farther row observing the column is not used when the k nearest lack it."""
        matrix = _matrix([
            [1.0, 2.0, np.nan],
            [1.0, 2.0, np.nan],
            [9.0, 9.0, 5.0],
        ])
        imputer = KNNRowImputer(ImputationConfig(k=1))
        completed = imputer.fit_transform(matrix)
        assert np.isnan(completed.values[0, 2])
        assert ("F0", "S2") in imputer.report_.failed_cells
        assert ("F1", "S2") in imputer.report_.failed_cells
        assert imputer.report_.n_imputed == 0

        widened = impute(matrix, k=2)
        assert widened.values[0, 2] == 5.0
        assert widened.n_missing == 0

    def test_ceiling_keeps_skipped_rows(self):
        """Rows above the ceiling keep their missing values by default."""
        matrix = _matrix([
            [np.nan, np.nan, 3.0],
            [1.0, 2.0, 3.0],
            [1.5, 2.5, 3.5],
        ])
        imputer = KNNRowImputer(ImputationConfig(k=2, row_missing_ceiling=0.5))
        completed = imputer.fit_transform(matrix)
        assert imputer.report_.skipped_rows == ["F0"]
        assert completed.n_features == 3
        assert completed.n_missing == 2

    def test_ceiling_drop_policy(self):
        """The drop policy removes skipped rows from the output."""
        matrix = _matrix([
            [np.nan, np.nan, 3.0],
            [1.0, 2.0, 3.0],
            [1.5, 2.5, 3.5],
        ])
        imputer = KNNRowImputer(ImputationConfig(k=2, row_missing_ceiling=0.5, skipped_rows="drop"))
        completed = imputer.fit_transform(matrix)
        assert list(completed.feature_ids) == ["F1", "F2"]
        assert imputer.report_.dropped_rows == ["F0"]

    def test_deterministic(self, mock_abundance_matrix):
        """Two runs should give identical results."""
        first = impute(mock_abundance_matrix, k=4)
        second = impute(mock_abundance_matrix, k=4)
        np.testing.assert_array_equal(first.values, second.values)
