"""
Pathway enrichment analysis of selected feature panels.

Key Components:
    - PathwayEnrichmentAnalyzer: Hypergeometric over-representation test
    - EnrichmentConfig: Significance, correction and gene set size settings
    - EnrichmentResult: Enrichment table plus similarity of significant sets
    - assign_modules: Groups redundant gene sets into modules

Example Usage:
    >>> from proteomarker.enrichment import enrich, map_features_to_genes, assign_modules
    >>>
    >>> genes, n_unmapped = map_features_to_genes(feature_to_gene, panel)
    >>> result = enrich(genes, universe, pathways, alpha=0.05)
    >>> modules = assign_modules(result.similarity)
"""

from .analysis import (
    EnrichmentConfig,
    EnrichmentResult,
    PathwayEnrichmentAnalyzer,
    enrich,
    hypergeometric_test,
    adjust_pvalues,
    gene_set_similarity,
    assign_modules,
    map_features_to_genes
)

__all__ = [
    'EnrichmentConfig',
    'EnrichmentResult',
    'PathwayEnrichmentAnalyzer',
    'enrich',
    'hypergeometric_test',
    'adjust_pvalues',
    'gene_set_similarity',
    'assign_modules',
    'map_features_to_genes'
]
