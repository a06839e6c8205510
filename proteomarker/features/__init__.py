"""
Feature selection by repeated cross-validated recursive elimination.

Key Components:
- RecursiveFeatureSearch: Runs the (repeat, fold) units and the final refit
- RFEConfig: Candidate sizes, folds, repeats, seed and model settings
- OutcomeScorer: Interface of the outcome-specific model and metric
- ClassificationScorer / RegressionScorer: Random forest implementations
- RFEResult: Score table, best size, ranking and final model

Example:
    >>> from proteomarker.features import select_features
    >>> result = select_features(X, y, candidate_sizes=[5, 10, 20], seed=42)
    >>> panel = result.ranked_features
"""

from .rfe import (
    RFEConfig,
    RFEResult,
    OutcomeScorer,
    ClassificationScorer,
    RegressionScorer,
    RecursiveFeatureSearch,
    infer_task,
    make_scorer,
    resolve_sizes,
    rank_features,
    choose_best_size,
    select_features
)

__all__ = [
    'RFEConfig',
    'RFEResult',
    'OutcomeScorer',
    'ClassificationScorer',
    'RegressionScorer',
    'RecursiveFeatureSearch',
    'infer_task',
    'make_scorer',
    'resolve_sizes',
    'rank_features',
    'choose_best_size',
    'select_features'
]
