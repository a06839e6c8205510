"""
Abundance matrix preprocessing module.

This module chains the preprocessing stages of a proteomics matrix
(log transform, variance-stabilizing normalization, kNN imputation) and keeps
a snapshot of every stage so that distributions can be compared before and
after each transform.
"""

import logging
from typing import Dict, Optional, Union

import pandas as pd

from .imputation import ImputationConfig, ImputationReport, KNNRowImputer
from .matrix import AbundanceMatrix
from .normalization import NormalizationConfig, VarianceStabilizingNormalizer

logger = logging.getLogger(__name__)


class ProteomicsPreprocessor:
    """
    A class for preprocessing proteomic abundance matrices.

    Attributes:
        normalization_config: Settings of the variance-stabilizing transform.
        imputation_config: Settings of the kNN imputer.
        normalizer_: Fitted VarianceStabilizingNormalizer.
        imputation_report_: Report of the last imputation.

    Example:
        >>> preprocessor = ProteomicsPreprocessor()
        >>> snapshots = preprocessor.create_stage_snapshots(raw_matrix, log_transform=True)
        >>> completed = snapshots['imputed']
    """

    def __init__(
        self,
        normalization_config: Optional[NormalizationConfig] = None,
        imputation_config: Optional[ImputationConfig] = None
    ) -> None:
        """
        Initialize the preprocessor.

        Args:
            normalization_config: Normalization settings; defaults if None.
            imputation_config: Imputation settings; defaults if None.
        """
        self.normalization_config = normalization_config or NormalizationConfig()
        self.imputation_config = imputation_config or ImputationConfig()
        self.normalizer_: Optional[VarianceStabilizingNormalizer] = None
        self.imputation_report_: Optional[ImputationReport] = None

    def log_transform(self, matrix: AbundanceMatrix, pseudocount: float = 0.0) -> AbundanceMatrix:
        """
        Log2-transform raw intensities.

        Args:
            matrix: Raw intensity matrix.
            pseudocount: Added before taking the logarithm.

        Returns:
            Matrix at stage ``log2``.
        """
        logger.info(f"Log2-transforming {matrix.n_features} x {matrix.n_samples} matrix")
        return matrix.log2(pseudocount=pseudocount)

    def normalize(self, matrix: AbundanceMatrix) -> AbundanceMatrix:
        """
        Variance-stabilize a log2-scale matrix.

        Returns:
            Matrix at stage ``normalized``; the fitted normalizer is kept in
            ``normalizer_``.
        """
        self.normalizer_ = VarianceStabilizingNormalizer(self.normalization_config)
        return self.normalizer_.fit_transform(matrix)

    def impute(self, matrix: AbundanceMatrix) -> AbundanceMatrix:
        """
        Complete missing values with kNN imputation.

        Returns:
            Matrix at stage ``imputed``; the report is kept in
            ``imputation_report_``.
        """
        imputer = KNNRowImputer(self.imputation_config)
        result = imputer.fit_transform(matrix)
        self.imputation_report_ = imputer.report_
        return result

    def create_stage_snapshots(
        self,
        matrix: AbundanceMatrix,
        log_transform: bool = False,
        pseudocount: float = 0.0
    ) -> Dict[str, AbundanceMatrix]:
        """
        Run every preprocessing stage and keep each intermediate matrix.

        Args:
            matrix: Input matrix, raw intensities if ``log_transform`` is True,
                otherwise already on the log2 scale.
            log_transform: Whether to log2-transform first.
            pseudocount: Pseudocount for the log transform.

        Returns:
            Dictionary with keys 'raw', optionally 'log2', 'normalized' and
            'imputed'.

        Example:
            >>> snapshots = preprocessor.create_stage_snapshots(matrix)
            >>> for name, m in snapshots.items():
            ...     print(f"{name}: {m.shape}, missing={m.n_missing}")
        """
        snapshots: Dict[str, AbundanceMatrix] = {'raw': matrix}
        current = matrix
        if log_transform:
            current = self.log_transform(current, pseudocount=pseudocount)
            snapshots['log2'] = current

        current = self.normalize(current)
        snapshots['normalized'] = current
        snapshots['imputed'] = self.impute(current)

        logger.info(f"Created {len(snapshots)} stage snapshots")
        return snapshots


def calculate_missing_rate(
    matrix: Union[AbundanceMatrix, pd.DataFrame],
    axis: Optional[int] = None
) -> Union[float, pd.Series]:
    """
    Calculate the missing value rate of an abundance matrix.

    Args:
        matrix: AbundanceMatrix or features x samples DataFrame.
        axis: None for the overall rate, 0 per sample, 1 per feature.

    Returns:
        Missing rate as float (overall) or Series (per axis).

    Example:
        >>> overall_rate = calculate_missing_rate(matrix)
        >>> feature_rates = calculate_missing_rate(matrix, axis=1)
    """
    if isinstance(matrix, pd.DataFrame):
        matrix = AbundanceMatrix.from_dataframe(matrix)
    return matrix.missing_rate(axis=axis)
