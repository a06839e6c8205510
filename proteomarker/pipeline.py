"""
End-to-end biomarker discovery pipeline.

Chains the engine stages on in-memory inputs:

    raw matrix -> normalize -> impute -> confounder screen
               -> RFE feature search -> pathway enrichment

File parsing, identifier lookups and plotting happen outside; the pipeline
only consumes the matrix, the sample annotation, a feature-to-gene mapping
and a gene set catalogue.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Sequence, Set, Union

import numpy as np
import pandas as pd

from .data.imputation import ImputationConfig, ImputationReport
from .data.matrix import AbundanceMatrix, Covariate, SampleAnnotation
from .data.normalization import NormalizationConfig
from .data.preprocessing import ProteomicsPreprocessor
from .enrichment.analysis import (
    EnrichmentConfig,
    EnrichmentResult,
    PathwayEnrichmentAnalyzer,
    map_features_to_genes
)
from .exceptions import ValidationError
from .features.rfe import RecursiveFeatureSearch, RFEConfig, RFEResult
from .models.confounders import (
    ConfounderConfig,
    ConfounderDetector,
    ConfounderVerdict,
    summarize_samples
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """
    Settings of every pipeline stage.

    Attributes:
        normalization: Variance-stabilizing transform settings.
        imputation: kNN imputation settings.
        confounder: Confounder threshold.
        rfe: Feature search settings.
        enrichment: Enrichment settings.
        log_transform: Log2-transform the input before normalization.
        pseudocount: Pseudocount of the log transform.
        sample_statistic: Per-sample summary screened for confounding
            ('pc1', 'median' or 'mean').
    """
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    imputation: ImputationConfig = field(default_factory=ImputationConfig)
    confounder: ConfounderConfig = field(default_factory=ConfounderConfig)
    rfe: RFEConfig = field(default_factory=RFEConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    log_transform: bool = False
    pseudocount: float = 0.0
    sample_statistic: str = 'pc1'

    def __post_init__(self):
        if self.sample_statistic not in ('pc1', 'median', 'mean'):
            raise ValidationError(f"Unknown sample statistic: {self.sample_statistic}")


@dataclass
class PipelineResult:
    """
    Outputs of one pipeline run.

    Attributes:
        snapshots: Matrix per stage ('raw', optionally 'log2', 'normalized',
            'imputed').
        imputation_report: Bookkeeping of the imputation stage.
        verdicts: Covariate name -> ConfounderVerdict.
        rfe: Feature search result.
        enrichment: Enrichment result for the selected panel.
        panel_genes: Genes of the selected panel.
        unmapped_features: Panel features without a gene.
        excluded_features: Features left incomplete by imputation and
            excluded from the search.
    """
    snapshots: Dict[str, AbundanceMatrix]
    imputation_report: ImputationReport
    verdicts: Dict[str, ConfounderVerdict]
    rfe: RFEResult
    enrichment: EnrichmentResult
    panel_genes: Set[str] = field(default_factory=set)
    unmapped_features: int = 0
    excluded_features: int = 0

    @property
    def raw(self) -> AbundanceMatrix:
        return self.snapshots['raw']

    @property
    def normalized(self) -> AbundanceMatrix:
        return self.snapshots['normalized']

    @property
    def imputed(self) -> AbundanceMatrix:
        return self.snapshots['imputed']

    @property
    def confounders(self) -> list:
        return [name for name, v in self.verdicts.items() if v.is_confounder]


class BiomarkerDiscoveryPipeline:
    """
    Complete biomarker discovery run on one abundance matrix.

    Parameters
    ----------
    config : PipelineConfig, optional
        Stage settings; defaults if None.

    Attributes
    ----------
    preprocessor_ : ProteomicsPreprocessor
        Preprocessor of the last run.
    detector_ : ConfounderDetector
        Confounder detector of the last run.
    search_ : RecursiveFeatureSearch
        Feature search of the last run.
    results_ : PipelineResult
        Result of the last run.

    Examples
    --------
    >>> pipeline = BiomarkerDiscoveryPipeline(PipelineConfig(rfe=RFEConfig(candidate_sizes=[5, 10, 20])))
    >>> result = pipeline.run(matrix, annotation, 'disease', ['batch', 'plate', 'age'],
    ...                       feature_to_gene, pathways)
    >>> result.rfe.ranked_features
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.preprocessor_: Optional[ProteomicsPreprocessor] = None
        self.detector_: Optional[ConfounderDetector] = None
        self.search_: Optional[RecursiveFeatureSearch] = None
        self.results_: Optional[PipelineResult] = None

    def _resolve_outcome(
        self,
        outcome: Union[str, pd.Series, np.ndarray, Sequence],
        annotation: SampleAnnotation
    ) -> pd.Series:
        if isinstance(outcome, str):
            return annotation.column(outcome)
        if isinstance(outcome, pd.Series):
            outcome = outcome.copy()
            outcome.index = outcome.index.astype(str)
            missing = annotation.sample_ids.difference(outcome.index)
            if len(missing) > 0:
                raise ValidationError(f"Outcome missing for {len(missing)} samples")
            return outcome.loc[annotation.sample_ids]
        values = np.asarray(outcome)
        if len(values) != len(annotation):
            raise ValidationError(
                f"Outcome of length {len(values)} does not match {len(annotation)} samples"
            )
        return pd.Series(values, index=annotation.sample_ids)

    def run(
        self,
        matrix: AbundanceMatrix,
        annotation: SampleAnnotation,
        outcome: Union[str, pd.Series, np.ndarray, Sequence],
        confounder_covariates: Sequence[Union[str, Covariate]],
        feature_to_gene: Optional[Mapping[str, Optional[str]]],
        gene_sets: Mapping[str, Iterable[str]],
        universe: Optional[Iterable[str]] = None
    ) -> PipelineResult:
        """
        Run every stage.

        Parameters
        ----------
        matrix : AbundanceMatrix
            Raw matrix; log2-scale unless ``config.log_transform`` is set.
        annotation : SampleAnnotation
            Sample covariates; aligned to the matrix samples.
        outcome : str or pd.Series or array-like
            Annotation column name, or outcome values per sample.
        confounder_covariates : sequence of str or Covariate
            Covariates screened for confounding; empty skips the screen.
        feature_to_gene : mapping or None
            Feature ID -> gene ID. None uses the gene IDs of the matrix
            feature metadata.
        gene_sets : mapping
            Gene set ID -> member genes.
        universe : iterable of str, optional
            Enrichment background. Defaults to the genes of all matrix
            features.

        Returns
        -------
        PipelineResult
        """
        cfg = self.config
        logger.info(f"Starting biomarker discovery on {matrix}")
        annotation = annotation.align(matrix)

        self.preprocessor_ = ProteomicsPreprocessor(cfg.normalization, cfg.imputation)
        snapshots = self.preprocessor_.create_stage_snapshots(
            matrix, log_transform=cfg.log_transform, pseudocount=cfg.pseudocount
        )
        imputed = snapshots['imputed']

        verdicts: Dict[str, ConfounderVerdict] = {}
        self.detector_ = ConfounderDetector(cfg.confounder)
        if confounder_covariates:
            summary = summarize_samples(imputed, cfg.sample_statistic)
            verdicts = self.detector_.detect(summary, confounder_covariates, annotation)
        else:
            logger.info("No covariates given; skipping the confounder screen")

        complete_rows = ~imputed.missing_mask().any(axis=1)
        excluded = int((~complete_rows).sum())
        if excluded:
            logger.warning(f"Excluding {excluded} features with missing values from the feature search")
        search_matrix = imputed.select_features(imputed.feature_ids[complete_rows])

        y = self._resolve_outcome(outcome, annotation)
        has_outcome = y.notna()
        if not has_outcome.all():
            logger.info(f"Excluding {(~has_outcome).sum()} samples without an outcome from the feature search")
        X = search_matrix.samples_by_features().loc[has_outcome.to_numpy()]
        y = y[has_outcome]

        self.search_ = RecursiveFeatureSearch(cfg.rfe)
        rfe_result = self.search_.fit(X, y)

        mapping = feature_to_gene if feature_to_gene is not None else matrix.gene_mapping()
        panel_genes, unmapped = map_features_to_genes(mapping, rfe_result.ranked_features)
        if universe is None:
            universe, _ = map_features_to_genes(mapping, matrix.feature_ids)

        enrichment = PathwayEnrichmentAnalyzer(cfg.enrichment).analyze(panel_genes, universe, gene_sets)

        self.results_ = PipelineResult(
            snapshots=snapshots,
            imputation_report=self.preprocessor_.imputation_report_,
            verdicts=verdicts,
            rfe=rfe_result,
            enrichment=enrichment,
            panel_genes=panel_genes,
            unmapped_features=unmapped,
            excluded_features=excluded
        )
        logger.info(
            f"Pipeline finished: panel of {rfe_result.best_size} features, "
            f"{len(verdicts)} covariates screened, "
            f"{len(enrichment.significant_sets)} significant gene sets"
        )
        return self.results_
