"""
Recursive feature elimination with repeated cross-validation.

Finds the smallest feature panel whose cross-validated performance is best
among a set of candidate panel sizes. For every (repeat, fold) unit a random
forest is fitted on the training folds only, features are ranked by its
importances, and a fresh model is fitted on the top-``s`` features for each
candidate size ``s`` and scored on the held-out fold. Ranking inside the fold
keeps the held-out samples out of the selection, so the aggregated scores are
not optimistically biased.

The size with the best mean score wins; ties go to the smaller panel. A final
ranking and model are then fitted on all samples.

Example:
    >>> result = select_features(X, y, candidate_sizes=[5, 10, 20],
    ...                          folds=5, repeats=3, seed=42)
    >>> result.best_size
    10
    >>> result.performance
       size      mean       std   n
    0     5  0.781818  0.082451  15
    1    10  0.823232  0.071234  15
    2    20  0.801010  0.069412  15
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import BaseEstimator, clone
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.metrics import accuracy_score, cohen_kappa_score, mean_squared_error, r2_score
from sklearn.model_selection import RepeatedKFold, RepeatedStratifiedKFold

from ..data.matrix import AbundanceMatrix
from ..exceptions import SearchCancelledError, StratificationError, ValidationError, format_ids

logger = logging.getLogger(__name__)

TASKS = ('auto', 'classification', 'regression')


@dataclass
class RFEConfig:
    """
    Configuration for the repeated-CV feature search.

    Attributes:
        candidate_sizes: Panel sizes to evaluate.
        folds: Number of cross-validation folds.
        repeats: Number of repetitions with different partitions.
        seed: Seed of the fold partitions and of every random forest.
        task: 'classification', 'regression' or 'auto' (inferred from y).
        metric: Scoring metric; None picks the task default.
        n_estimators: Trees per random forest.
        n_jobs: Parallel workers over (repeat, fold) units.
    """
    candidate_sizes: Sequence[int] = (5, 10, 20)
    folds: int = 5
    repeats: int = 3
    seed: int = 42
    task: str = 'auto'
    metric: Optional[str] = None
    n_estimators: int = 200
    n_jobs: int = 1

    def __post_init__(self):
        if len(self.candidate_sizes) == 0:
            raise ValidationError("At least one candidate size is required")
        bad = [s for s in self.candidate_sizes if int(s) != s or s < 1]
        if bad:
            raise ValidationError(f"Candidate sizes must be positive integers, got {bad}")
        if self.folds < 2:
            raise ValidationError(f"folds must be at least 2, got {self.folds}")
        if self.repeats < 1:
            raise ValidationError(f"repeats must be at least 1, got {self.repeats}")
        if self.task not in TASKS:
            raise ValidationError(f"task must be one of {TASKS}, got '{self.task}'")
        if self.n_estimators < 1:
            raise ValidationError("n_estimators must be at least 1")


class OutcomeScorer(ABC):
    """
    Outcome-specific model, importance and metric.

    Subclasses supply the random forest, the cross-validation splitter and the
    metric for one kind of outcome. Scores are oriented so that higher is
    always better.

    Attributes:
        metric: Name of the active metric.
        n_estimators: Trees per forest.
        random_state: Seed passed to every forest.
    """

    task: str = ''
    metrics: Tuple[str, ...] = ()

    def __init__(self, metric: Optional[str] = None, n_estimators: int = 200, random_state: int = 42):
        metric = metric or self.metrics[0]
        if metric not in self.metrics:
            raise ValidationError(
                f"Metric '{metric}' is not available for {self.task}; choose from {self.metrics}"
            )
        self.metric = metric
        self.n_estimators = n_estimators
        self.random_state = random_state

    @abstractmethod
    def make_model(self) -> BaseEstimator:
        """Unfitted model used for both ranking and scoring."""

    @abstractmethod
    def splitter(self, folds: int, repeats: int, seed: int):
        """Repeated cross-validation splitter."""

    @abstractmethod
    def score(self, y_true: np.ndarray, y_pred: np.ndarray) -> float:
        """Metric value, higher is better."""

    def check_outcome(self, y: pd.Series, folds: int) -> None:
        """Validate that the outcome supports the requested folds."""
        if len(y) < folds:
            raise ValidationError(f"{len(y)} samples cannot be split into {folds} folds")

    def importance(self, model: BaseEstimator) -> np.ndarray:
        """Impurity-based feature importances of a fitted forest."""
        return np.asarray(model.feature_importances_, dtype=float)


class ClassificationScorer(OutcomeScorer):
    """Random forest classifier ranked by Gini importance; accuracy or Cohen's kappa."""

    task = 'classification'
    metrics = ('accuracy', 'kappa')

    def make_model(self) -> BaseEstimator:
        return RandomForestClassifier(
            n_estimators=self.n_estimators,
            criterion='gini',
            random_state=self.random_state,
            n_jobs=1
        )

    def splitter(self, folds: int, repeats: int, seed: int) -> RepeatedStratifiedKFold:
        return RepeatedStratifiedKFold(n_splits=folds, n_repeats=repeats, random_state=seed)

    def score(self, y_true: np.ndarray, y_pred: np.ndarray) -> float:
        if self.metric == 'kappa':
            return float(cohen_kappa_score(y_true, y_pred))
        return float(accuracy_score(y_true, y_pred))

    def check_outcome(self, y: pd.Series, folds: int) -> None:
        super().check_outcome(y, folds)
        counts = y.value_counts()
        if len(counts) < 2:
            raise ValidationError("Classification needs at least two outcome classes")
        small = counts[counts < folds]
        if len(small) > 0:
            raise StratificationError(
                f"Classes with fewer than {folds} members cannot be stratified: "
                f"{dict(small)}"
            )


class RegressionScorer(OutcomeScorer):
    """Random forest regressor ranked by impurity reduction; negative RMSE or R^2."""

    task = 'regression'
    metrics = ('neg_rmse', 'r2')

    def make_model(self) -> BaseEstimator:
        return RandomForestRegressor(
            n_estimators=self.n_estimators,
            criterion='squared_error',
            random_state=self.random_state,
            n_jobs=1
        )

    def splitter(self, folds: int, repeats: int, seed: int) -> RepeatedKFold:
        return RepeatedKFold(n_splits=folds, n_repeats=repeats, random_state=seed)

    def score(self, y_true: np.ndarray, y_pred: np.ndarray) -> float:
        if self.metric == 'r2':
            return float(r2_score(y_true, y_pred))
        return -float(np.sqrt(mean_squared_error(y_true, y_pred)))

    def check_outcome(self, y: pd.Series, folds: int) -> None:
        super().check_outcome(y, folds)
        if self.metric == 'r2' and len(y) // folds < 2:
            raise ValidationError(
                "r2 needs at least two test samples per fold; "
                f"{len(y)} samples give fewer with {folds} folds"
            )


def infer_task(y: pd.Series, max_levels: int = 10) -> str:
    """
    Guess whether an outcome is a class label or a continuous value.

    Non-numeric, boolean and categorical outcomes are classification targets,
    as are integer-valued outcomes with at most ``max_levels`` distinct values.
    """
    if (pd.api.types.is_bool_dtype(y) or isinstance(y.dtype, pd.CategoricalDtype)
            or not pd.api.types.is_numeric_dtype(y)):
        return 'classification'
    values = y.to_numpy(dtype=float)
    if np.all(np.mod(values, 1) == 0) and len(np.unique(values)) <= max_levels:
        return 'classification'
    return 'regression'


def make_scorer(task: str, metric: Optional[str] = None, n_estimators: int = 200,
                random_state: int = 42) -> OutcomeScorer:
    """Scorer for a resolved task name."""
    if task == 'classification':
        return ClassificationScorer(metric, n_estimators, random_state)
    if task == 'regression':
        return RegressionScorer(metric, n_estimators, random_state)
    raise ValidationError(f"Unknown task: {task}")


def resolve_sizes(candidate_sizes: Sequence[int], n_features: int) -> List[int]:
    """
    Cap candidate sizes at the feature count and de-duplicate them.

    Returns:
        Sizes sorted descending.

    Example:
        >>> resolve_sizes([5, 10, 20, 200], 50)
        [50, 20, 10, 5]
    """
    bad = [s for s in candidate_sizes if s < 1]
    if bad:
        raise ValidationError(f"Candidate sizes must be positive, got {bad}")
    capped = sorted({min(int(s), n_features) for s in candidate_sizes}, reverse=True)
    if any(s > n_features for s in candidate_sizes):
        logger.info(f"Capped candidate sizes above {n_features} features")
    return capped


def rank_features(importances: np.ndarray) -> np.ndarray:
    """Column indices by descending importance; equal importances keep column order."""
    return np.argsort(-importances, kind='stable')


def top_columns(ranking: np.ndarray, size: int) -> np.ndarray:
    """Top ``size`` ranked columns, returned in original column order."""
    return np.sort(ranking[:size])


def choose_best_size(performance: pd.DataFrame) -> int:
    """Size with the highest mean score; equal means go to the smaller size."""
    best = performance.sort_values(['mean', 'size'], ascending=[False, True])
    return int(best.iloc[0]['size'])


def _coerce_inputs(
    X: Union[pd.DataFrame, AbundanceMatrix],
    y: Union[pd.Series, np.ndarray, Sequence[Any]]
) -> Tuple[pd.DataFrame, pd.Series]:
    if isinstance(X, AbundanceMatrix):
        X = X.samples_by_features()
    elif not isinstance(X, pd.DataFrame):
        X = pd.DataFrame(np.asarray(X, dtype=float))
        X.columns = [f"feature_{i}" for i in range(X.shape[1])]

    if X.shape[1] == 0:
        raise ValidationError("Feature matrix has no columns")
    if X.columns.has_duplicates:
        raise ValidationError(f"Duplicate feature names: {format_ids(X.columns[X.columns.duplicated()])}")
    if X.isna().any().any():
        cols = X.columns[X.isna().any()]
        raise ValidationError(f"Features with missing values: {format_ids(cols)}")

    if isinstance(y, pd.Series):
        missing = X.index.difference(y.index)
        if len(missing) > 0:
            raise ValidationError(f"Outcome has no value for samples: {format_ids(missing)}")
        y = y.loc[X.index]
    else:
        y = np.asarray(y)
        if y.ndim != 1 or len(y) != len(X):
            raise ValidationError(f"Outcome of shape {y.shape} does not match {len(X)} samples")
        y = pd.Series(y, index=X.index)
    if y.isna().any():
        raise ValidationError(f"Missing outcome for samples: {format_ids(y.index[y.isna()])}")
    if isinstance(y.dtype, pd.CategoricalDtype):
        y = y.cat.remove_unused_categories()
    return X, y


@dataclass
class RFEResult:
    """
    Results of the repeated-CV feature search.

    Attributes:
        performance: One row per size with columns size, mean, std, n.
        scores: Long table of every (repeat, fold, size, score).
        best_size: Size with the best mean score (smaller on ties).
        ranked_features: Top ``best_size`` features of the final ranking, in
            rank order.
        full_ranking: All features of the final ranking, in rank order.
        importances: Final-ranking importance per feature.
        final_features: ``ranked_features`` in original column order, the
            column order ``final_model`` expects.
        final_model: Model refitted on all samples and ``final_features``.
        metric: Name of the metric.
        task: 'classification' or 'regression'.
        selection_frequency: Fraction of units whose fold ranking placed the
            feature in the top ``best_size``.
    """
    performance: pd.DataFrame
    scores: pd.DataFrame
    best_size: int
    ranked_features: List[str]
    full_ranking: List[str]
    importances: pd.Series
    final_features: List[str]
    final_model: Any
    metric: str
    task: str
    selection_frequency: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        """Predict with the final model from a samples x features DataFrame."""
        return self.final_model.predict(X[self.final_features].to_numpy())

    def to_dict(self) -> dict:
        """Summary suitable for JSON export."""
        return {
            'best_size': self.best_size,
            'metric': self.metric,
            'task': self.task,
            'ranked_features': list(self.ranked_features),
            'performance': self.performance.to_dict(orient='records')
        }


class RecursiveFeatureSearch:
    """
    Repeated cross-validated search for the best feature panel size.

    Attributes:
        config: RFEConfig.
        scorer_: OutcomeScorer of the last search.
        splits_: (train, test) index pairs of every unit, in (repeat, fold)
            order.
        result_: RFEResult of the last search.

    Example:
        >>> search = RecursiveFeatureSearch(RFEConfig(candidate_sizes=[5, 10, 20], seed=7))
        >>> result = search.fit(X, y)
        >>> print(result.ranked_features)
    """

    def __init__(self, config: Optional[RFEConfig] = None):
        self.config = config or RFEConfig()
        self.scorer_: Optional[OutcomeScorer] = None
        self.splits_: List[Tuple[np.ndarray, np.ndarray]] = []
        self.result_: Optional[RFEResult] = None

    def _evaluate_unit(
        self,
        unit: int,
        X: np.ndarray,
        y: np.ndarray,
        train: np.ndarray,
        test: np.ndarray,
        sizes: List[int],
        cancel: Optional[Callable[[], bool]]
    ) -> Tuple[np.ndarray, List[Tuple[int, float]]]:
        if cancel is not None and cancel():
            raise SearchCancelledError(f"Feature search cancelled before unit {unit}")

        scorer = self.scorer_
        ranker = clone(scorer.make_model()).fit(X[train], y[train])
        ranking = rank_features(scorer.importance(ranker))

        unit_scores = []
        for size in sizes:
            cols = top_columns(ranking, size)
            model = clone(scorer.make_model()).fit(X[np.ix_(train, cols)], y[train])
            pred = model.predict(X[np.ix_(test, cols)])
            unit_scores.append((size, scorer.score(y[test], pred)))
        logger.debug(f"Unit {unit} scored {len(sizes)} sizes")
        return ranking, unit_scores

    def fit(
        self,
        X: Union[pd.DataFrame, AbundanceMatrix],
        y: Union[pd.Series, np.ndarray, Sequence[Any]],
        cancel: Optional[Callable[[], bool]] = None
    ) -> RFEResult:
        """
        Run the search.

        Args:
            X: Samples x features DataFrame, or an AbundanceMatrix (features x
                samples) which is transposed. Must have no missing values.
            y: Outcome per sample; a Series is aligned on the sample index.
            cancel: Optional callable polled before each unit; returning True
                aborts the search with SearchCancelledError.

        Returns:
            RFEResult.

        Raises:
            ValidationError: Malformed input or sizes.
            StratificationError: A class has fewer members than folds.
            SearchCancelledError: The search was cancelled.
        """
        cfg = self.config
        X_df, y_ser = _coerce_inputs(X, y)
        task = infer_task(y_ser) if cfg.task == 'auto' else cfg.task
        self.scorer_ = make_scorer(task, cfg.metric, cfg.n_estimators, cfg.seed)
        self.scorer_.check_outcome(y_ser, cfg.folds)

        sizes = resolve_sizes(cfg.candidate_sizes, X_df.shape[1])
        X_values = X_df.to_numpy(dtype=float)
        y_values = y_ser.to_numpy()

        splitter = self.scorer_.splitter(cfg.folds, cfg.repeats, cfg.seed)
        self.splits_ = list(splitter.split(X_values, y_values))

        logger.info(
            f"RFE search ({task}, metric={self.scorer_.metric}): {X_df.shape[0]} samples, "
            f"{X_df.shape[1]} features, sizes {sizes}, {cfg.folds} folds x {cfg.repeats} repeats"
        )

        outputs = Parallel(n_jobs=cfg.n_jobs, prefer='threads')(
            delayed(self._evaluate_unit)(unit, X_values, y_values, train, test, sizes, cancel)
            for unit, (train, test) in enumerate(self.splits_)
        )
        if cancel is not None and cancel():
            raise SearchCancelledError("Feature search cancelled before the final refit")

        records = []
        for unit, (_, unit_scores) in enumerate(outputs):
            repeat, fold = divmod(unit, cfg.folds)
            for size, value in unit_scores:
                records.append({'repeat': repeat, 'fold': fold, 'size': size, 'score': value})
        scores = pd.DataFrame(records, columns=['repeat', 'fold', 'size', 'score'])

        performance = (
            scores.groupby('size')['score']
            .agg(mean='mean', std=lambda s: float(np.std(s, ddof=0)), n='count')
            .reset_index()
            .sort_values('size')
            .reset_index(drop=True)
        )
        best_size = choose_best_size(performance)
        best_mean = float(performance.loc[performance['size'] == best_size, 'mean'].iloc[0])

        names = X_df.columns
        top_counts = np.zeros(len(names))
        for ranking, _ in outputs:
            top_counts[ranking[:best_size]] += 1
        frequency = pd.Series(top_counts / len(outputs), index=names, name='selection_frequency')
        frequency = frequency.sort_values(ascending=False, kind='mergesort')

        ranker = clone(self.scorer_.make_model()).fit(X_values, y_values)
        importances = self.scorer_.importance(ranker)
        ranking = rank_features(importances)
        final_cols = top_columns(ranking, best_size)
        final_model = clone(self.scorer_.make_model()).fit(X_values[:, final_cols], y_values)

        self.result_ = RFEResult(
            performance=performance,
            scores=scores,
            best_size=best_size,
            ranked_features=names[ranking[:best_size]].tolist(),
            full_ranking=names[ranking].tolist(),
            importances=pd.Series(importances, index=names, name='importance'),
            final_features=names[final_cols].tolist(),
            final_model=final_model,
            metric=self.scorer_.metric,
            task=task,
            selection_frequency=frequency
        )

        logger.info(f"Best panel size {best_size} (mean {self.scorer_.metric} {best_mean:.4f})")
        return self.result_


def select_features(
    X: Union[pd.DataFrame, AbundanceMatrix],
    y: Union[pd.Series, np.ndarray, Sequence[Any]],
    candidate_sizes: Sequence[int],
    folds: int = 5,
    repeats: int = 3,
    seed: int = 42,
    task: str = 'auto',
    metric: Optional[str] = None,
    n_jobs: int = 1,
    cancel: Optional[Callable[[], bool]] = None,
    n_estimators: int = 200
) -> RFEResult:
    """
    Find the best feature panel size by repeated cross-validated RFE.

    Args:
        X: Samples x features DataFrame or AbundanceMatrix.
        y: Outcome per sample.
        candidate_sizes: Panel sizes to evaluate.
        folds: Number of folds.
        repeats: Number of repetitions.
        seed: Seed of partitions and models.
        task: 'classification', 'regression' or 'auto'.
        metric: 'accuracy' or 'kappa' for classification, 'neg_rmse' or
            'r2' for regression; None uses the first.
        n_jobs: Parallel workers; results do not depend on it.
        cancel: Optional cancellation callable.
        n_estimators: Trees per forest.

    Returns:
        RFEResult.

    Example:
        >>> result = select_features(X, y, [5, 10, 20], folds=5, repeats=3, seed=42)
        >>> panel = result.ranked_features
    """
    config = RFEConfig(
        candidate_sizes=candidate_sizes,
        folds=folds,
        repeats=repeats,
        seed=seed,
        task=task,
        metric=metric,
        n_estimators=n_estimators,
        n_jobs=n_jobs
    )
    return RecursiveFeatureSearch(config).fit(X, y, cancel=cancel)
