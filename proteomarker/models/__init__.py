"""
Regression models for covariate screening.

Key Components:
    - ConfounderDetector: Solo-vs-full OLS comparison per covariate
    - ConfounderConfig: Threshold and collinearity tolerance
    - RegressionFit / CoefficientEstimate: Name-keyed OLS coefficients
    - ConfounderVerdict: Per-covariate result
    - summarize_samples: Per-sample outcome (PC1, median, mean) from a matrix
"""

from .confounders import (
    CoefficientEstimate,
    RegressionFit,
    ConfounderVerdict,
    ConfounderConfig,
    ConfounderDetector,
    build_design,
    fit_regression,
    relative_change,
    compare_fits,
    detect_confounders,
    summarize_samples
)

__all__ = [
    'CoefficientEstimate',
    'RegressionFit',
    'ConfounderVerdict',
    'ConfounderConfig',
    'ConfounderDetector',
    'build_design',
    'fit_regression',
    'relative_change',
    'compare_fits',
    'detect_confounders',
    'summarize_samples'
]
