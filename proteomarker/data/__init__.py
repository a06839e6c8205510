"""
Abundance matrix containers and preprocessing stages.

Key Components:
    - AbundanceMatrix / FeatureMeta: Typed feature x sample container
    - SampleAnnotation / Covariate: Sample covariate table
    - VarianceStabilizingNormalizer: Shared asinh transform fit across samples
    - KNNRowImputer: Deterministic kNN completion of missing values
    - ProteomicsPreprocessor: Runs the stages and keeps a snapshot of each
"""

from .matrix import (
    AbundanceMatrix,
    FeatureMeta,
    Covariate,
    CovariateKind,
    SampleAnnotation,
    infer_kinds
)
from .normalization import NormalizationConfig, VarianceStabilizingNormalizer, normalize
from .imputation import ImputationConfig, ImputationReport, KNNRowImputer, impute
from .preprocessing import ProteomicsPreprocessor, calculate_missing_rate

__all__ = [
    'AbundanceMatrix',
    'FeatureMeta',
    'Covariate',
    'CovariateKind',
    'SampleAnnotation',
    'infer_kinds',
    'NormalizationConfig',
    'VarianceStabilizingNormalizer',
    'normalize',
    'ImputationConfig',
    'ImputationReport',
    'KNNRowImputer',
    'impute',
    'ProteomicsPreprocessor',
    'calculate_missing_rate'
]
