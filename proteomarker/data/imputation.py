"""
K-nearest-neighbour imputation of missing abundance values.

Each incomplete feature (row) borrows values from the rows that look most like
it over the samples both have observed. Rows with too many missing values can
be excluded through a ceiling on the missing fraction; the default of 1.0
disables that exclusion.

The procedure is fully deterministic: neighbours are ordered by distance and
then by feature ID, and no random numbers are drawn.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

import numpy as np
from sklearn.metrics.pairwise import nan_euclidean_distances

from ..exceptions import ValidationError
from .matrix import AbundanceMatrix

logger = logging.getLogger(__name__)


@dataclass
class ImputationConfig:
    """
    Configuration for kNN imputation.

    Attributes:
        k: Number of donor rows per missing cell.
        row_missing_ceiling: Rows whose missing fraction exceeds this value
            are not imputed. 1.0 imputes every row.
        weights: 'uniform' for a plain mean of the donors, 'distance' for an
            inverse-distance weighted mean.
        skipped_rows: What happens to rows above the ceiling: 'keep' leaves
            them in the output with their missing values, 'drop' removes them.
    """
    k: int = 10
    row_missing_ceiling: float = 1.0
    weights: Literal['uniform', 'distance'] = 'uniform'
    skipped_rows: Literal['keep', 'drop'] = 'keep'

    def __post_init__(self):
        if self.k < 1:
            raise ValidationError(f"k must be at least 1, got {self.k}")
        if not 0.0 <= self.row_missing_ceiling <= 1.0:
            raise ValidationError(
                f"row_missing_ceiling must be in [0, 1], got {self.row_missing_ceiling}"
            )
        if self.weights not in ('uniform', 'distance'):
            raise ValidationError(f"Invalid weighting: {self.weights}")
        if self.skipped_rows not in ('keep', 'drop'):
            raise ValidationError(f"Invalid skipped-row policy: {self.skipped_rows}")


@dataclass
class ImputationReport:
    """
    Bookkeeping of one imputation run.

    Attributes:
        skipped_rows: Feature IDs above the missing-value ceiling.
        dropped_rows: Feature IDs removed from the output ('drop' policy).
        failed_cells: (feature ID, sample ID) pairs with no donor.
        n_missing_before: Missing values in the input.
        n_imputed: Values filled in.
        n_missing_after: Missing values left in the output.
    """
    skipped_rows: List[str] = field(default_factory=list)
    dropped_rows: List[str] = field(default_factory=list)
    failed_cells: List[Tuple[str, str]] = field(default_factory=list)
    n_missing_before: int = 0
    n_imputed: int = 0
    n_missing_after: int = 0


class KNNRowImputer:
    """
    Fill missing values of a feature from its nearest neighbouring features.

    For a row with missing values, distances to every other row are computed
    over the columns both rows observe. Rows sharing no observed column are
    not candidates. The ``k`` nearest candidates (by distance, ties broken by
    feature ID) are the neighbours of the row; for each missing cell, the
    neighbours that observe that column are the donors. A cell without any
    donor stays missing and is listed in the report.

    Attributes:
        config: ImputationConfig.
        report_: ImputationReport of the last call to ``fit_transform``.

    Example:
        >>> imputer = KNNRowImputer(ImputationConfig(k=5))
        >>> completed = imputer.fit_transform(normalized)
        >>> print(imputer.report_.failed_cells)
    """

    def __init__(self, config: Optional[ImputationConfig] = None) -> None:
        self.config = config or ImputationConfig()
        self.report_: Optional[ImputationReport] = None

    def fit_transform(self, matrix: AbundanceMatrix) -> AbundanceMatrix:
        """
        Impute missing values.

        Args:
            matrix: Abundance matrix, usually after normalization.

        Returns:
            New matrix at stage ``imputed``.
        """
        cfg = self.config
        values = matrix.values
        mask = np.isnan(values)
        report = ImputationReport(n_missing_before=int(mask.sum()))

        logger.info(
            f"kNN imputation (k={cfg.k}, weights={cfg.weights}) of "
            f"{report.n_missing_before} missing values"
        )

        row_missing = mask.mean(axis=1)
        skipped = row_missing > cfg.row_missing_ceiling
        report.skipped_rows = matrix.feature_ids[skipped].tolist()
        if skipped.any():
            logger.info(
                f"Skipping {skipped.sum()} features with missing rate > {cfg.row_missing_ceiling}"
            )

        result = values.copy()
        targets = np.where(mask.any(axis=1) & ~skipped)[0]

        if len(targets) > 0:
            # (n_targets, n_features); NaN where two rows share no observed column
            distances = nan_euclidean_distances(values[targets], values)
            # Lexical rank of feature IDs breaks distance ties
            id_rank = np.argsort(np.argsort(np.asarray(matrix.feature_ids, dtype=str), kind="stable"))

            for t, row in enumerate(targets):
                dist = distances[t].copy()
                dist[row] = np.nan
                candidates = np.where(~np.isnan(dist))[0]
                order = candidates[np.lexsort((id_rank[candidates], dist[candidates]))]
                neighbours = order[:cfg.k]

                for col in np.where(mask[row])[0]:
                    donors = neighbours[~mask[neighbours, col]]
                    if len(donors) == 0:
                        report.failed_cells.append(
                            (matrix.feature_ids[row], matrix.sample_ids[col])
                        )
                        continue
                    result[row, col] = self._donor_value(values[donors, col], dist[donors])
                    report.n_imputed += 1

        if report.failed_cells:
            logger.warning(
                f"{len(report.failed_cells)} cells have no donor row and remain missing"
            )

        imputed = matrix.with_values(result, stage="imputed")
        if cfg.skipped_rows == 'drop' and skipped.any():
            report.dropped_rows = list(report.skipped_rows)
            imputed = imputed.select_features(matrix.feature_ids[~skipped])

        report.n_missing_after = imputed.n_missing
        logger.info(
            f"Imputed {report.n_imputed} values; {report.n_missing_after} remain missing"
        )
        self.report_ = report
        return imputed

    def _donor_value(self, donor_values: np.ndarray, donor_dist: np.ndarray) -> float:
        if len(donor_values) == 1:
            return float(donor_values[0])
        if self.config.weights == 'uniform':
            return float(np.mean(donor_values))

        exact = donor_dist == 0
        if exact.any():
            return float(np.mean(donor_values[exact]))
        w = 1.0 / donor_dist
        return float(np.sum(w * donor_values) / np.sum(w))


def impute(
    matrix: AbundanceMatrix,
    k: int = 10,
    row_missing_ceiling: float = 1.0,
    weights: str = 'uniform',
    skipped_rows: str = 'keep'
) -> AbundanceMatrix:
    """
    Impute missing values with k nearest neighbouring features.

    Args:
        matrix: Abundance matrix with NaN for missing values.
        k: Number of donors per missing cell.
        row_missing_ceiling: Rows with a larger missing fraction are skipped.
        weights: 'uniform' or 'distance'.
        skipped_rows: 'keep' or 'drop' rows above the ceiling.

    Returns:
        Imputed matrix. Use ``KNNRowImputer`` directly to access the report.

    Example:
        >>> completed = impute(normalized, k=5)
        >>> assert completed.n_missing == 0
    """
    config = ImputationConfig(
        k=k, row_missing_ceiling=row_missing_ceiling,
        weights=weights, skipped_rows=skipped_rows
    )
    return KNNRowImputer(config).fit_transform(matrix)
