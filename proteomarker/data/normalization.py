"""
Variance-stabilizing normalization for log2-scale abundance matrices.

A plain logarithm stabilizes the variance of high-intensity measurements but
leaves low-abundance proteins noisier than the rest. This module fits a single
generalized-logarithm transform

    h(x) = asinh(a + b * x),   b > 0

to the whole matrix. The two parameters are shared by all samples and chosen
so that the across-sample standard deviation of a feature no longer depends
on where the feature sits in the abundance range.

Heterogeneity measure:
    Features are ranked by their mean input abundance and split into
    equal-count bins (the bins are fixed before optimization). Within each
    bin the median per-feature standard deviation is taken, and the
    objective is the variance of the log of those medians. The measure is
    invariant to affine rescaling, so only the shape of the transform matters.

References:
    Huber et al. (2002) Bioinformatics 18(Suppl 1):S96-S104
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy import optimize

from ..exceptions import ConvergenceError, DegenerateInputError, ValidationError, format_ids
from .matrix import AbundanceMatrix

logger = logging.getLogger(__name__)

_EPS = 1e-12


@dataclass
class NormalizationConfig:
    """
    Configuration for variance-stabilizing normalization.

    Attributes:
        n_bins: Maximum number of abundance-rank bins.
        min_features_per_bin: Minimum features per bin; fewer features reduce
            the number of bins, and fewer than two bins skip the fit.
        min_samples: Minimum number of samples required to fit.
        min_improvement: Absolute reduction of the heterogeneity objective
            required before a non-linear transform is preferred over the
            identity. Keeps re-normalization of stabilized data a no-op.
        centre_bounds: Bounds of the transform centre, in standard deviations
            of the observed values around their median.
        log_scale_bounds: Bounds of the natural log of the transform slope on
            the standardized scale.
        max_iter: Maximum iterations per optimizer start.
        tol: Optimizer tolerance on parameters and objective.
    """
    n_bins: int = 10
    min_features_per_bin: int = 5
    min_samples: int = 2
    min_improvement: float = 0.01
    centre_bounds: Tuple[float, float] = (-4.0, 4.0)
    log_scale_bounds: Tuple[float, float] = (-5.0, 5.0)
    max_iter: int = 5000
    tol: float = 1e-6

    def __post_init__(self):
        if self.n_bins < 2:
            raise ValidationError("n_bins must be at least 2")
        if self.min_features_per_bin < 2:
            raise ValidationError("min_features_per_bin must be at least 2")
        if self.min_samples < 2:
            raise ValidationError("min_samples must be at least 2")
        if self.min_improvement < 0:
            raise ValidationError("min_improvement must be non-negative")


def heterogeneity(values: np.ndarray, bins: List[np.ndarray]) -> float:
    """
    Variance of log median standard deviation across abundance bins.

    Args:
        values: Array (n_features, n_samples) with NaN for missing values.
            Every row must have at least two observed values.
        bins: Row index arrays, one per abundance-rank bin.

    Returns:
        Heterogeneity score; zero means identical spread in every bin.
    """
    sd = np.nanstd(values, axis=1, ddof=1)
    bin_sd = np.array([np.median(sd[idx]) for idx in bins])
    return float(np.var(np.log(np.maximum(bin_sd, _EPS))))


class VarianceStabilizingNormalizer:
    """
    Fit and apply a shared asinh transform that flattens the mean-variance trend.

    Attributes:
        config: NormalizationConfig used for fitting.
        offset_: Fitted ``a`` of ``asinh(a + b * x)``.
        scale_: Fitted ``b`` of ``asinh(a + b * x)``.
        is_identity_: True when no transform improved on the input.
        objective_: Heterogeneity after the fitted transform.
        identity_objective_: Heterogeneity of the untransformed input.
        n_iter_: Optimizer iterations of the winning start.

    Example:
        >>> normalizer = VarianceStabilizingNormalizer()
        >>> normalized = normalizer.fit_transform(log2_matrix)
        >>> print(normalizer.offset_, normalizer.scale_)
    """

    def __init__(self, config: Optional[NormalizationConfig] = None) -> None:
        self.config = config or NormalizationConfig()
        self.offset_: Optional[float] = None
        self.scale_: Optional[float] = None
        self.is_identity_: bool = False
        self.objective_: Optional[float] = None
        self.identity_objective_: Optional[float] = None
        self.n_iter_: int = 0
        self._location: Optional[float] = None
        self._spread: Optional[float] = None
        self._calibration: Optional[Tuple[float, float]] = None
        self._fitted = False

    def _check_input(self, matrix: AbundanceMatrix) -> None:
        if matrix.n_samples < self.config.min_samples:
            raise DegenerateInputError(
                f"Normalization needs at least {self.config.min_samples} samples, "
                f"got {matrix.n_samples}"
            )
        empty = matrix.sample_ids[matrix.missing_mask().all(axis=0)]
        if len(empty) > 0:
            raise DegenerateInputError(f"Samples with no observed values: {format_ids(empty)}")

    def _make_bins(self, values: np.ndarray) -> List[np.ndarray]:
        means = np.nanmean(values, axis=1)
        order = np.argsort(means, kind="stable")
        n_bins = min(self.config.n_bins, len(order) // self.config.min_features_per_bin)
        if n_bins < 2:
            return []
        return np.array_split(order, n_bins)

    def fit(self, matrix: AbundanceMatrix) -> 'VarianceStabilizingNormalizer':
        """
        Estimate the transform parameters from all samples jointly.

        Args:
            matrix: Log2-scale abundance matrix.

        Returns:
            Self for method chaining.

        Raises:
            DegenerateInputError: Too few samples or an entirely missing sample.
            ConvergenceError: If no optimizer start converges.
        """
        self._check_input(matrix)
        values = matrix.values
        observed = values[~np.isnan(values)]

        self._location = float(np.median(observed))
        self._spread = float(np.std(observed))
        if self._spread <= 0:
            raise DegenerateInputError("All observed values are identical")

        usable = (~np.isnan(values)).sum(axis=1) >= 2
        fit_values = (values[usable] - self._location) / self._spread
        bins = self._make_bins(fit_values)

        logger.info(
            f"Fitting variance-stabilizing transform on {usable.sum()} of "
            f"{matrix.n_features} features ({len(bins)} abundance bins)"
        )

        if not bins:
            logger.warning("Too few features to estimate a mean-variance trend; using identity")
            self._set_identity(np.nan)
            return self

        self.identity_objective_ = heterogeneity(fit_values, bins)
        best = self._optimize(fit_values, bins)

        improvement = self.identity_objective_ - best.fun
        if improvement < self.config.min_improvement:
            logger.info(
                f"Transform improves heterogeneity by only {improvement:.4g}; keeping identity"
            )
            self._set_identity(self.identity_objective_)
            return self

        centre, log_scale = best.x
        s = float(np.exp(log_scale))
        # asinh(s * (z - centre)) rewritten on the log2 scale of the input
        self.scale_ = s / self._spread
        self.offset_ = -s * (self._location / self._spread + centre)
        self.objective_ = float(best.fun)
        self.n_iter_ = int(best.nit)
        self.is_identity_ = False

        transformed = self._raw_transform(observed)
        spread = float(np.std(transformed))
        if spread <= 0:
            raise DegenerateInputError("Transformed values have zero spread")
        self._calibration = (float(np.median(transformed)), spread)
        self._fitted = True

        logger.info(
            f"Fitted asinh transform a={self.offset_:.4g}, b={self.scale_:.4g}; "
            f"heterogeneity {self.identity_objective_:.4g} -> {self.objective_:.4g}"
        )
        return self

    def _optimize(self, fit_values: np.ndarray, bins: List[np.ndarray]) -> optimize.OptimizeResult:
        cfg = self.config

        def objective(params: np.ndarray) -> float:
            centre, log_scale = params
            transformed = np.arcsinh(np.exp(log_scale) * (fit_values - centre))
            return heterogeneity(transformed, bins)

        best = None
        for start in (-1.5, 0.0, 1.5):
            result = optimize.minimize(
                objective,
                x0=np.array([start, 0.0]),
                method="Powell",
                bounds=[cfg.centre_bounds, cfg.log_scale_bounds],
                options={"maxiter": cfg.max_iter, "xtol": cfg.tol, "ftol": cfg.tol}
            )
            logger.debug(f"Start centre={start}: success={result.success}, objective={result.fun:.6g}")
            if not result.success or not np.isfinite(result.fun):
                continue
            if best is None or result.fun < best.fun:
                best = result

        if best is None:
            raise ConvergenceError(
                f"Variance-stabilizing fit did not converge within {cfg.max_iter} iterations"
            )
        return best

    def _set_identity(self, objective: float) -> None:
        self.offset_ = 0.0
        self.scale_ = 1.0
        self.is_identity_ = True
        self.objective_ = objective
        self.n_iter_ = 0
        self._calibration = None
        self._fitted = True

    def _raw_transform(self, x: np.ndarray) -> np.ndarray:
        return np.arcsinh(self.offset_ + self.scale_ * x)

    def transform(self, matrix: AbundanceMatrix) -> AbundanceMatrix:
        """
        Apply the fitted transform to observed values; missing values pass through.

        Returns:
            New matrix at stage ``normalized`` with the input's shape and
            missingness pattern.
        """
        if not self._fitted:
            raise ValueError("Normalizer not fitted. Call fit() first.")

        values = matrix.values.copy()
        if not self.is_identity_:
            observed = ~np.isnan(values)
            median, spread = self._calibration
            transformed = (self._raw_transform(values[observed]) - median) / spread
            values[observed] = transformed * self._spread + self._location
        return matrix.with_values(values, stage="normalized")

    def fit_transform(self, matrix: AbundanceMatrix) -> AbundanceMatrix:
        """Fit on the matrix and return its normalized copy."""
        return self.fit(matrix).transform(matrix)


def normalize(
    matrix: AbundanceMatrix,
    config: Optional[NormalizationConfig] = None
) -> AbundanceMatrix:
    """
    Variance-stabilize a log2-scale abundance matrix.

    Args:
        matrix: Log2-scale abundance matrix with NaN for missing values.
        config: Optional NormalizationConfig.

    Returns:
        Normalized matrix with the same shape and missingness pattern.

    Example:
        >>> normalized = normalize(log2_matrix)
        >>> assert normalized.n_missing == log2_matrix.n_missing
    """
    return VarianceStabilizingNormalizer(config).fit_transform(matrix)
