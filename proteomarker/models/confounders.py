"""
Regression-based confounder detection for proteomics covariates.

A covariate is a candidate confounder of an outcome when adjusting for the
other covariates materially changes its estimated effect. The detector fits
one multivariable OLS model on all covariates and one univariable model per
covariate, joins the coefficients by level name, and flags a covariate when
any of its levels moves by more than a relative threshold (10% by default).

This is a screening heuristic for technical covariates (batch, plate,
acquisition date), not a causal argument.

Classes:
    CoefficientEstimate: Estimate, standard error and estimability of one term
    RegressionFit: Name-keyed coefficients of a fitted model
    ConfounderVerdict: Result of the solo-vs-full comparison for one covariate
    ConfounderConfig: Policy settings of the detector
    ConfounderDetector: Fits the models and builds the verdicts
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from sklearn.decomposition import PCA

from ..data.matrix import AbundanceMatrix, Covariate, CovariateKind, SampleAnnotation
from ..exceptions import (
    ConvergenceError,
    DegenerateInputError,
    NonEstimableCoefficientError,
    ValidationError,
    format_ids
)

logger = logging.getLogger(__name__)

INTERCEPT = "const"


@dataclass(frozen=True)
class CoefficientEstimate:
    """One regression coefficient.

    Attributes:
        estimate: Coefficient value; NaN when not estimable.
        std_error: Standard error; NaN when not estimable.
        estimable: False when the term is a linear combination of terms
            earlier in the design (collinear).
    """
    estimate: float
    std_error: float
    estimable: bool


@dataclass
class RegressionFit:
    """
    Coefficients of a fitted linear model, keyed by level name.

    Parameters
    ----------
    coefficients : dict
        Level name -> CoefficientEstimate, including the intercept ``const``.
    term_covariates : dict
        Level name -> name of the covariate that produced it.
    n_samples : int
        Number of samples used in the fit.
    r_squared : float
        Coefficient of determination of the estimable model.

    Examples
    --------
    >>> fit.coefficient('batch[B2]')
    0.42
    >>> fit.coefficients['plate[P3]'].estimable
    False
    """
    coefficients: Dict[str, CoefficientEstimate]
    term_covariates: Dict[str, str]
    n_samples: int
    r_squared: float = np.nan

    def coefficient(self, name: str) -> float:
        """
        Value of an estimable coefficient.

        Raises
        ------
        KeyError
            If the level is not part of the model.
        NonEstimableCoefficientError
            If the level is collinear with earlier terms.
        """
        est = self.coefficients[name]
        if not est.estimable:
            raise NonEstimableCoefficientError(
                f"Coefficient '{name}' is not estimable (collinear with other terms)"
            )
        return est.estimate

    def levels_of(self, covariate: str) -> List[str]:
        """Level names produced by one covariate, in design order."""
        return [term for term, cov in self.term_covariates.items() if cov == covariate]

    @property
    def non_estimable(self) -> List[str]:
        return [name for name, est in self.coefficients.items() if not est.estimable]

    def to_frame(self) -> pd.DataFrame:
        """Coefficients as a DataFrame indexed by level name."""
        return pd.DataFrame({
            'covariate': [self.term_covariates.get(n, INTERCEPT) for n in self.coefficients],
            'estimate': [c.estimate for c in self.coefficients.values()],
            'std_error': [c.std_error for c in self.coefficients.values()],
            'estimable': [c.estimable for c in self.coefficients.values()],
        }, index=list(self.coefficients))


@dataclass
class ConfounderVerdict:
    """
    Solo-vs-full coefficient comparison for one covariate.

    Attributes:
        is_confounder: True if any level changed by more than the threshold,
            or is estimable alone but collinear in the full model.
        max_relative_change: Largest relative change in percent (inf when a
            level is non-estimable in the full model).
        compared_levels: Number of levels compared.
        level_changes: Level name -> relative change in percent.
    """
    is_confounder: bool
    max_relative_change: float
    compared_levels: int
    level_changes: Dict[str, float] = field(default_factory=dict)


@dataclass
class ConfounderConfig:
    """
    Policy settings for confounder detection.

    Attributes:
        threshold: Relative coefficient change, in percent, above which a
            covariate is flagged. The 10% default is a rule of thumb.
        rank_tol: Relative tolerance of the collinearity (rank) test.
    """
    threshold: float = 10.0
    rank_tol: float = 1e-10

    def __post_init__(self):
        if self.threshold < 0:
            raise ValidationError("threshold must be non-negative")


def build_design(
    data: pd.DataFrame,
    covariates: Sequence[Covariate]
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """
    Build a name-keyed OLS design matrix.

    Numeric covariates enter as they are, date covariates as days since the
    earliest date, and categorical covariates as treatment dummies named
    ``"<covariate>[<level>]"`` against their first level in sorted order.

    Parameters
    ----------
    data : pd.DataFrame
        Complete-case covariate table, one row per sample.
    covariates : sequence of Covariate
        Covariates to include, in design order.

    Returns
    -------
    design : pd.DataFrame
        Intercept column ``const`` followed by the covariate columns.
    term_covariates : dict
        Column name -> covariate name (intercept excluded).

    Raises
    ------
    DegenerateInputError
        If a covariate has zero variance over the given samples.
    """
    columns = {INTERCEPT: np.ones(len(data))}
    term_covariates: Dict[str, str] = {}

    for cov in covariates:
        series = data[cov.name]
        if cov.kind == CovariateKind.CATEGORICAL:
            labels = series.astype(str)
            levels = sorted(labels.unique())
            if len(levels) < 2:
                raise DegenerateInputError(
                    f"Covariate '{cov.name}' has zero variance (single level '{levels[0]}')"
                    if levels else f"Covariate '{cov.name}' has no observed values"
                )
            for level in levels[1:]:
                name = f"{cov.name}[{level}]"
                columns[name] = (labels == level).to_numpy(dtype=float)
                term_covariates[name] = cov.name
        else:
            if cov.kind == CovariateKind.DATE:
                values = (series - series.min()).dt.days.to_numpy(dtype=float)
            else:
                values = series.to_numpy(dtype=float)
            if len(values) == 0 or np.ptp(values) == 0:
                raise DegenerateInputError(f"Covariate '{cov.name}' has zero variance")
            columns[cov.name] = values
            term_covariates[cov.name] = cov.name

    return pd.DataFrame(columns, index=data.index), term_covariates


def _estimable_columns(design: np.ndarray, rank_tol: float) -> np.ndarray:
    """Mask of columns that are not linear combinations of earlier columns."""
    keep = np.zeros(design.shape[1], dtype=bool)
    scale = np.linalg.norm(design, axis=0)
    scale[scale == 0] = 1.0
    scaled = design / scale
    rank = 0
    for j in range(design.shape[1]):
        candidate = scaled[:, np.append(np.where(keep)[0], j)]
        s = np.linalg.svd(candidate, compute_uv=False)
        new_rank = int(np.sum(s > rank_tol * max(candidate.shape) * s[0])) if s[0] > 0 else 0
        if new_rank > rank:
            keep[j] = True
            rank = new_rank
    return keep


def fit_regression(
    outcome: np.ndarray,
    design: pd.DataFrame,
    term_covariates: Dict[str, str],
    rank_tol: float = 1e-10
) -> RegressionFit:
    """
    Fit OLS, marking collinear terms as non-estimable instead of dropping them silently.

    Parameters
    ----------
    outcome : ndarray of shape (n_samples,)
        Response values.
    design : pd.DataFrame
        Design matrix from ``build_design``.
    term_covariates : dict
        Column name -> covariate name.
    rank_tol : float
        Relative singular value tolerance of the collinearity test.

    Returns
    -------
    RegressionFit

    Raises
    ------
    DegenerateInputError
        If there are no residual degrees of freedom.
    ConvergenceError
        If the fit yields non-finite estimates.
    """
    X = design.to_numpy(dtype=float)
    keep = _estimable_columns(X, rank_tol)
    n_params = int(keep.sum())
    if len(outcome) <= n_params:
        raise DegenerateInputError(
            f"{len(outcome)} samples are too few to estimate {n_params} coefficients"
        )

    model = sm.OLS(np.asarray(outcome, dtype=float), X[:, keep]).fit()
    params = np.asarray(model.params)
    bse = np.asarray(model.bse)
    if not np.all(np.isfinite(params)):
        raise ConvergenceError("OLS fit produced non-finite coefficients")

    coefficients: Dict[str, CoefficientEstimate] = {}
    kept = iter(range(n_params))
    for name, is_kept in zip(design.columns, keep):
        if is_kept:
            i = next(kept)
            coefficients[name] = CoefficientEstimate(float(params[i]), float(bse[i]), True)
        else:
            coefficients[name] = CoefficientEstimate(np.nan, np.nan, False)

    dropped = [n for n, k in zip(design.columns, keep) if not k]
    if dropped:
        logger.debug(f"Non-estimable terms: {dropped}")

    return RegressionFit(
        coefficients=coefficients,
        term_covariates=dict(term_covariates),
        n_samples=len(outcome),
        r_squared=float(model.rsquared)
    )


def relative_change(solo: float, full: float) -> float:
    """Relative change of a coefficient in percent, ``|solo - full| / |solo| * 100``."""
    diff = abs(solo - full)
    if solo == 0:
        return 0.0 if diff == 0 else np.inf
    return diff / abs(solo) * 100.0


def compare_fits(
    solo: RegressionFit,
    full: RegressionFit,
    covariate: str,
    threshold: float
) -> ConfounderVerdict:
    """
    Join the solo and full fits on level name and build a verdict.

    Levels that are non-estimable in the solo fit cannot be compared and are
    skipped. A level estimable alone but collinear in the full model counts
    as an infinite change, since confounding cannot be ruled out.
    """
    changes: Dict[str, float] = {}
    for level in solo.levels_of(covariate):
        solo_est = solo.coefficients[level]
        if not solo_est.estimable:
            continue
        full_est = full.coefficients.get(level)
        if full_est is None or not full_est.estimable:
            changes[level] = np.inf
        else:
            changes[level] = relative_change(solo_est.estimate, full_est.estimate)

    max_change = max(changes.values()) if changes else 0.0
    return ConfounderVerdict(
        is_confounder=bool(max_change > threshold),
        max_relative_change=float(max_change),
        compared_levels=len(changes),
        level_changes=changes
    )


class ConfounderDetector:
    """
    Flag covariates whose effect on an outcome changes under mutual adjustment.

    Parameters
    ----------
    config : ConfounderConfig, optional
        Threshold and rank tolerance.

    Attributes
    ----------
    full_fit_ : RegressionFit
        Multivariable fit of the last call.
    solo_fits_ : dict
        Covariate name -> univariable RegressionFit of the last call.
    n_samples_ : int
        Complete-case samples used by both fits.

    Examples
    --------
    >>> detector = ConfounderDetector(ConfounderConfig(threshold=10.0))
    >>> verdicts = detector.detect(pc1, ['batch', 'age', 'plate'], annotation)
    >>> [name for name, v in verdicts.items() if v.is_confounder]
    ['batch']
    """

    def __init__(self, config: Optional[ConfounderConfig] = None):
        self.config = config or ConfounderConfig()
        self.full_fit_: Optional[RegressionFit] = None
        self.solo_fits_: Dict[str, RegressionFit] = {}
        self.n_samples_: int = 0

    def _align_outcome(
        self,
        outcome: Union[pd.Series, np.ndarray, Sequence[float]],
        annotation: SampleAnnotation
    ) -> pd.Series:
        if isinstance(outcome, pd.Series):
            outcome = outcome.copy()
            outcome.index = outcome.index.astype(str)
            missing = annotation.sample_ids.difference(outcome.index)
            if len(missing) > 0:
                raise ValidationError(f"Outcome has no value for samples: {format_ids(missing)}")
            return outcome.loc[annotation.sample_ids].astype(float)

        values = np.asarray(outcome, dtype=float)
        if values.ndim != 1 or len(values) != len(annotation):
            raise ValidationError(
                f"Outcome of length {values.size} does not match {len(annotation)} annotated samples"
            )
        return pd.Series(values, index=annotation.sample_ids)

    def detect(
        self,
        outcome: Union[pd.Series, np.ndarray, Sequence[float]],
        covariates: Sequence[Union[str, Covariate]],
        annotation: SampleAnnotation
    ) -> Dict[str, ConfounderVerdict]:
        """
        Compare univariable and multivariable coefficients for each covariate.

        Parameters
        ----------
        outcome : pd.Series or array-like
            Outcome per sample; a Series is aligned on sample ID, an array
            must follow the annotation's sample order.
        covariates : sequence of str or Covariate
            Covariates to screen.
        annotation : SampleAnnotation
            Sample covariate table.

        Returns
        -------
        dict
            Covariate name -> ConfounderVerdict.

        Raises
        ------
        ValidationError
            Unknown covariates, duplicate covariates or outcome/annotation
            mismatch.
        DegenerateInputError
            Zero-variance covariate or too few complete samples.
        """
        if not covariates:
            raise ValidationError("At least one covariate is required")
        resolved = [annotation.covariate(c.name if isinstance(c, Covariate) else c)
                    for c in covariates]
        names = [c.name for c in resolved]
        if len(set(names)) != len(names):
            raise ValidationError(f"Duplicate covariates: {names}")

        y = self._align_outcome(outcome, annotation)
        table = annotation.data[names]
        complete = y.notna() & table.notna().all(axis=1)
        if (~complete).any():
            logger.info(f"Excluding {(~complete).sum()} samples with missing outcome or covariates")
        y = y[complete]
        table = table[complete]
        self.n_samples_ = int(complete.sum())

        logger.info(f"Screening {len(names)} covariates for confounding on {self.n_samples_} samples")

        design, terms = build_design(table, resolved)
        self.full_fit_ = fit_regression(y.to_numpy(), design, terms, self.config.rank_tol)
        if self.full_fit_.non_estimable:
            logger.warning(f"Collinear terms in the full model: {self.full_fit_.non_estimable}")

        verdicts: Dict[str, ConfounderVerdict] = {}
        self.solo_fits_ = {}
        for cov in resolved:
            solo_design, solo_terms = build_design(table, [cov])
            solo = fit_regression(y.to_numpy(), solo_design, solo_terms, self.config.rank_tol)
            self.solo_fits_[cov.name] = solo
            verdicts[cov.name] = compare_fits(solo, self.full_fit_, cov.name, self.config.threshold)
            logger.debug(
                f"{cov.name}: max change {verdicts[cov.name].max_relative_change:.2f}% "
                f"over {verdicts[cov.name].compared_levels} levels"
            )

        flagged = [n for n, v in verdicts.items() if v.is_confounder]
        logger.info(f"Flagged {len(flagged)} of {len(names)} covariates as confounders: {flagged}")
        return verdicts


def detect_confounders(
    outcome: Union[pd.Series, np.ndarray, Sequence[float]],
    covariates: Sequence[Union[str, Covariate]],
    annotation: SampleAnnotation,
    threshold: float = 10.0
) -> Dict[str, ConfounderVerdict]:
    """
    Screen covariates for confounding of an outcome.

    Parameters
    ----------
    outcome : pd.Series or array-like
        Outcome per sample.
    covariates : sequence of str or Covariate
        Covariates to screen.
    annotation : SampleAnnotation
        Sample covariate table.
    threshold : float, default=10.0
        Relative coefficient change in percent that flags a confounder.

    Returns
    -------
    dict
        Covariate name -> ConfounderVerdict.
    """
    detector = ConfounderDetector(ConfounderConfig(threshold=threshold))
    return detector.detect(outcome, covariates, annotation)


def summarize_samples(matrix: AbundanceMatrix, statistic: str = 'pc1') -> pd.Series:
    """
    Reduce an abundance matrix to one value per sample.

    Parameters
    ----------
    matrix : AbundanceMatrix
        Usually the imputed matrix.
    statistic : {'pc1', 'median', 'mean'}
        ``pc1`` scores samples on the first principal component of the
        complete features, oriented to correlate positively with the sample
        means; ``median`` and ``mean`` summarize observed values.

    Returns
    -------
    pd.Series
        Value per sample, indexed by sample ID.
    """
    values = matrix.values
    if statistic == 'median':
        return pd.Series(np.nanmedian(values, axis=0), index=matrix.sample_ids, name='median')
    if statistic == 'mean':
        return pd.Series(np.nanmean(values, axis=0), index=matrix.sample_ids, name='mean')
    if statistic != 'pc1':
        raise ValidationError(f"Unknown sample statistic: {statistic}")

    complete = ~np.isnan(values).any(axis=1)
    if complete.sum() < 2:
        raise DegenerateInputError("PC1 needs at least two features without missing values")
    X = values[complete].T
    scores = PCA(n_components=1, svd_solver='full').fit_transform(X)[:, 0]
    if np.corrcoef(scores, X.mean(axis=1))[0, 1] < 0:
        scores = -scores
    return pd.Series(scores, index=matrix.sample_ids, name='pc1')
