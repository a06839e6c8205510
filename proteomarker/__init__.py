"""
Proteomarker: biomarker discovery for quantitative proteomics

A Python package that stabilizes and completes proteomic abundance matrices,
screens technical covariates for confounding, searches for small predictive
protein panels by repeated cross-validated RFE, and tests the panels for
pathway enrichment.
"""

__version__ = "0.1.0"
__author__ = "Proteomarker Team"

from .data.matrix import AbundanceMatrix, FeatureMeta, Covariate, CovariateKind, SampleAnnotation
from .data.normalization import normalize
from .data.imputation import impute
from .models.confounders import detect_confounders, summarize_samples
from .features.rfe import select_features
from .enrichment.analysis import enrich, map_features_to_genes
from .pipeline import BiomarkerDiscoveryPipeline, PipelineConfig, PipelineResult
from .exceptions import (
    ProteomarkerError,
    ValidationError,
    DegenerateInputError,
    StratificationError,
    ConvergenceError,
    NonEstimableCoefficientError,
    SearchCancelledError
)

__all__ = [
    'AbundanceMatrix',
    'FeatureMeta',
    'Covariate',
    'CovariateKind',
    'SampleAnnotation',
    'normalize',
    'impute',
    'detect_confounders',
    'summarize_samples',
    'select_features',
    'enrich',
    'map_features_to_genes',
    'BiomarkerDiscoveryPipeline',
    'PipelineConfig',
    'PipelineResult',
    'ProteomarkerError',
    'ValidationError',
    'DegenerateInputError',
    'StratificationError',
    'ConvergenceError',
    'NonEstimableCoefficientError',
    'SearchCancelledError'
]
