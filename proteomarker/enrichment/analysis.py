"""
Hypergeometric pathway enrichment of a selected feature panel.

The query genes (usually the genes behind an RFE panel) are tested against
every gene set of a catalogue. All sets are tested in one vectorised
hypergeometric call, the p-values are corrected for multiple testing, and
the significant sets are compared to each other by member overlap so that
redundant pathways can be grouped into modules.

Classes:
    EnrichmentConfig: Configuration dataclass for enrichment analysis
    EnrichmentResult: Enrichment table, similarity matrix and bookkeeping
    PathwayEnrichmentAnalyzer: Runs the test for one query

Functions:
    enrich: Convenience function for a single enrichment analysis
    hypergeometric_test: One-sided P(X >= k), vectorised
    adjust_pvalues: Multiple testing correction
    gene_set_similarity: Pairwise Jaccard or overlap coefficient
    assign_modules: Average-linkage grouping of similar gene sets
    map_features_to_genes: Feature IDs to canonical gene IDs
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from statsmodels.stats.multitest import multipletests

from ..data.matrix import AbundanceMatrix, FeatureMeta
from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

CORRECTION_METHODS = ('fdr_bh', 'fdr_by', 'bonferroni', 'holm', 'hommel', 'none')
SIMILARITY_METHODS = ('jaccard', 'overlap')

TABLE_COLUMNS = [
    'gene_set_id', 'overlap_count', 'geneset_size', 'universe_size', 'query_size',
    'p_value', 'p_adjusted', 'fold_enrichment', 'overlap_genes', 'significant'
]


@dataclass
class EnrichmentConfig:
    """
    Configuration for enrichment analysis.

    Attributes:
        alpha: Adjusted p-value threshold for significance (default: 0.05)
        correction_method: Multiple testing correction passed to statsmodels
            (default: 'fdr_bh'); 'none' keeps raw p-values
        min_gene_set_size: Smallest gene set, after restriction to the
            universe, that is tested (default: 1)
        max_gene_set_size: Largest gene set that is tested; None for no limit
        similarity_method: 'jaccard' or 'overlap' coefficient for the
            similarity matrix (default: 'jaccard')

    Example:
        >>> config = EnrichmentConfig(alpha=0.01, min_gene_set_size=15)
        >>> analyzer = PathwayEnrichmentAnalyzer(config=config)
    """
    alpha: float = 0.05
    correction_method: str = "fdr_bh"
    min_gene_set_size: int = 1
    max_gene_set_size: Optional[int] = None
    similarity_method: str = "jaccard"

    def __post_init__(self):
        if not 0 < self.alpha <= 1:
            raise ValidationError(f"alpha must be in (0, 1], got {self.alpha}")
        if self.correction_method not in CORRECTION_METHODS:
            raise ValidationError(
                f"Unknown correction method '{self.correction_method}'; "
                f"choose from {CORRECTION_METHODS}"
            )
        if self.min_gene_set_size < 1:
            raise ValidationError("min_gene_set_size must be at least 1")
        if self.max_gene_set_size is not None and self.max_gene_set_size < self.min_gene_set_size:
            raise ValidationError("max_gene_set_size must not be below min_gene_set_size")
        if self.similarity_method not in SIMILARITY_METHODS:
            raise ValidationError(
                f"Unknown similarity method '{self.similarity_method}'; "
                f"choose from {SIMILARITY_METHODS}"
            )


@dataclass
class EnrichmentResult:
    """
    Container for the result of one enrichment analysis.

    Attributes:
        table: One row per tested gene set, sorted by p-value
        significant_sets: Gene set IDs with adjusted p-value <= alpha
        similarity: Symmetric similarity matrix over the significant sets
        alpha: Significance threshold used
        universe_size: Number of genes in the universe
        query_size: Number of query genes inside the universe
        dropped_query_genes: Query genes absent from the universe
        skipped_gene_sets: Sets not tested (empty or outside the size range)
        failed_gene_sets: Sets whose test produced a non-finite p-value
    """
    table: pd.DataFrame
    significant_sets: List[str]
    similarity: pd.DataFrame
    alpha: float
    universe_size: int
    query_size: int
    dropped_query_genes: int = 0
    skipped_gene_sets: List[str] = field(default_factory=list)
    failed_gene_sets: List[str] = field(default_factory=list)

    @property
    def n_tested(self) -> int:
        return len(self.table)

    def significant_table(self) -> pd.DataFrame:
        """Rows of the significant gene sets only."""
        return self.table[self.table['significant']].reset_index(drop=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary format."""
        records = self.table.to_dict(orient='records')
        for record in records:
            record['overlap_genes'] = ';'.join(record['overlap_genes'])
        return {
            'alpha': self.alpha,
            'universe_size': self.universe_size,
            'query_size': self.query_size,
            'dropped_query_genes': self.dropped_query_genes,
            'skipped_gene_sets': list(self.skipped_gene_sets),
            'failed_gene_sets': list(self.failed_gene_sets),
            'significant_sets': list(self.significant_sets),
            'results': records
        }


def hypergeometric_test(
    overlap: Union[int, np.ndarray],
    universe_size: int,
    gene_set_size: Union[int, np.ndarray],
    query_size: int
) -> Union[float, np.ndarray]:
    """
    Calculate hypergeometric p-values for gene set enrichment.

    Uses the survival function of the hypergeometric distribution:
    - M: Total population size (universe_size)
    - n: Number of success states in population (gene_set_size)
    - N: Number of draws (query_size)
    - k: Number of observed successes (overlap)

    P(X >= k) = sf(k - 1)

    Args:
        overlap: Observed overlap, scalar or one value per gene set
        universe_size: Total size of the gene universe
        gene_set_size: Gene set size, scalar or one value per gene set
        query_size: Number of query genes

    Returns:
        P-value(s), clipped to [0, 1]

    Example:
        >>> hypergeometric_test(np.array([5, 0]), 1000, np.array([20, 40]), 25)
    """
    k = np.asarray(overlap)
    p_values = stats.hypergeom.sf(k - 1, universe_size, gene_set_size, query_size)
    p_values = np.clip(p_values, 0.0, 1.0)
    return float(p_values) if np.ndim(p_values) == 0 else p_values


def adjust_pvalues(pvalues: np.ndarray, method: str = 'fdr_bh') -> np.ndarray:
    """
    Adjust p-values for multiple testing.

    Args:
        pvalues: Array of raw p-values.
        method: statsmodels correction method, or 'none'.

    Returns:
        Adjusted p-values (same shape as input).
    """
    pvalues = np.asarray(pvalues, dtype=float)
    if len(pvalues) == 0 or method == 'none':
        return pvalues.copy()

    pvalues_clean = np.clip(np.nan_to_num(pvalues, nan=1.0), 0, 1)
    _, adjusted, _, _ = multipletests(pvalues_clean, method=method)
    logger.debug(f"Applied {method} correction to {len(pvalues)} p-values")
    return adjusted


def gene_set_similarity(
    gene_sets: Mapping[str, Iterable[str]],
    method: str = 'jaccard'
) -> pd.DataFrame:
    """
    Pairwise similarity of gene sets by shared members.

    Args:
        gene_sets: Gene set ID -> member genes.
        method: 'jaccard' (|A & B| / |A | B|) or 'overlap'
            (|A & B| / min(|A|, |B|)).

    Returns:
        Symmetric DataFrame indexed by gene set ID, diagonal 1.
    """
    if method not in SIMILARITY_METHODS:
        raise ValidationError(f"Unknown similarity method '{method}'")

    ids = list(gene_sets)
    members = [set(gene_sets[i]) for i in ids]
    sim = np.eye(len(ids))
    for i in range(len(ids)):
        for j in range(i + 1, len(ids)):
            shared = len(members[i] & members[j])
            if method == 'jaccard':
                denom = len(members[i] | members[j])
            else:
                denom = min(len(members[i]), len(members[j]))
            sim[i, j] = sim[j, i] = shared / denom if denom else 0.0
    return pd.DataFrame(sim, index=ids, columns=ids)


def assign_modules(similarity: pd.DataFrame, min_similarity: float = 0.3) -> pd.Series:
    """
    Group gene sets into functional modules.

    Average-linkage hierarchical clustering on ``1 - similarity``, cut at
    distance ``1 - min_similarity``.

    Args:
        similarity: Square similarity matrix from ``gene_set_similarity``.
        min_similarity: Average similarity at which sets join a module.

    Returns:
        Module number per gene set, numbered from 1 in order of first
        appearance.

    Example:
        >>> modules = assign_modules(result.similarity, min_similarity=0.5)
        >>> modules.groupby(modules).size()
    """
    ids = list(similarity.index)
    if len(ids) == 0:
        return pd.Series(dtype=int, name='module')
    if len(ids) == 1:
        return pd.Series([1], index=ids, name='module')

    distance = 1.0 - similarity.to_numpy(dtype=float)
    np.fill_diagonal(distance, 0.0)
    distance = np.clip((distance + distance.T) / 2, 0.0, 1.0)
    tree = linkage(squareform(distance, checks=False), method='average')
    labels = fcluster(tree, t=1.0 - min_similarity, criterion='distance')

    renumber: Dict[int, int] = {}
    modules = [renumber.setdefault(label, len(renumber) + 1) for label in labels]
    return pd.Series(modules, index=ids, name='module')


def map_features_to_genes(
    mapping: Union[Mapping[str, Optional[str]], Sequence[FeatureMeta], AbundanceMatrix],
    features: Iterable[str]
) -> Tuple[Set[str], int]:
    """
    Translate feature IDs to canonical gene IDs.

    Args:
        mapping: Feature ID -> gene ID dictionary, FeatureMeta records, or an
            AbundanceMatrix whose feature metadata carries gene IDs.
        features: Feature IDs to translate.

    Returns:
        Tuple of (set of gene IDs, number of features without a gene).

    Example:
        >>> genes, n_unmapped = map_features_to_genes(feature_to_gene, result.ranked_features)
    """
    if isinstance(mapping, AbundanceMatrix):
        mapping = mapping.gene_mapping()
    elif not isinstance(mapping, Mapping):
        mapping = {m.feature_id: m.gene_id for m in mapping}

    genes: Set[str] = set()
    unmapped = 0
    for feature in features:
        gene = mapping.get(feature)
        if gene is None or (isinstance(gene, float) and np.isnan(gene)) or gene == '':
            unmapped += 1
        else:
            genes.add(str(gene))
    if unmapped:
        logger.info(f"{unmapped} features have no gene mapping and are excluded from enrichment")
    return genes, unmapped


class PathwayEnrichmentAnalyzer:
    """
    Over-representation analysis of a query gene list against a catalogue.

    Attributes:
        config: EnrichmentConfig
        results_: EnrichmentResult of the last analysis

    Example:
        >>> analyzer = PathwayEnrichmentAnalyzer(EnrichmentConfig(alpha=0.05))
        >>> result = analyzer.analyze(panel_genes, measured_genes, pathways)
        >>> print(result.significant_table()[['gene_set_id', 'p_adjusted']])
    """

    def __init__(self, config: Optional[EnrichmentConfig] = None):
        self.config = config or EnrichmentConfig()
        self.results_: Optional[EnrichmentResult] = None

    def _restrict_sets(
        self,
        gene_sets: Mapping[str, Iterable[str]],
        universe: Set[str]
    ) -> Tuple[Dict[str, Set[str]], List[str]]:
        cfg = self.config
        tested: Dict[str, Set[str]] = {}
        skipped: List[str] = []
        for set_id, members in gene_sets.items():
            restricted = set(members) & universe
            size = len(restricted)
            too_big = cfg.max_gene_set_size is not None and size > cfg.max_gene_set_size
            if size == 0 or size < cfg.min_gene_set_size or too_big:
                skipped.append(str(set_id))
                continue
            tested[str(set_id)] = restricted
        return tested, skipped

    def analyze(
        self,
        query_genes: Iterable[str],
        universe: Iterable[str],
        gene_sets: Mapping[str, Iterable[str]]
    ) -> EnrichmentResult:
        """
        Test every gene set for over-representation of the query genes.

        Args:
            query_genes: Genes of interest
            universe: All genes that could have been selected
            gene_sets: Gene set ID -> member genes

        Returns:
            EnrichmentResult

        Raises:
            ValidationError: If the universe is empty.
        """
        cfg = self.config
        universe = set(universe)
        if not universe:
            raise ValidationError("Gene universe is empty")

        query_all = set(query_genes)
        query = query_all & universe
        dropped = len(query_all) - len(query)
        if dropped:
            logger.warning(f"Dropped {dropped} query genes absent from the universe")
        if not query:
            logger.warning("No query genes inside the universe; no set can be enriched")

        tested, skipped = self._restrict_sets(gene_sets, universe)
        if skipped:
            logger.info(f"Skipped {len(skipped)} gene sets outside the size range")

        logger.info(
            f"Testing {len(tested)} gene sets: {len(query)} query genes, "
            f"universe of {len(universe)}"
        )

        ids = list(tested)
        overlaps = [sorted(query & tested[i]) for i in ids]
        k = np.array([len(o) for o in overlaps], dtype=int)
        n = np.array([len(tested[i]) for i in ids], dtype=int)
        M, N = len(universe), len(query)

        p_values = hypergeometric_test(k, M, n, N) if ids else np.array([], dtype=float)
        p_values = np.atleast_1d(p_values)
        finite = np.isfinite(p_values)
        failed = [i for i, ok in zip(ids, finite) if not ok]
        if failed:
            logger.warning(f"Hypergeometric test failed for {len(failed)} gene sets: {failed}")

        keep = np.where(finite)[0]
        adjusted = adjust_pvalues(p_values[keep], method=cfg.correction_method)
        with np.errstate(divide='ignore', invalid='ignore'):
            fold = (k[keep] / N) / (n[keep] / M) if N else np.full(len(keep), np.nan)

        table = pd.DataFrame({
            'gene_set_id': [ids[i] for i in keep],
            'overlap_count': k[keep],
            'geneset_size': n[keep],
            'universe_size': M,
            'query_size': N,
            'p_value': p_values[keep],
            'p_adjusted': adjusted,
            'fold_enrichment': fold,
            'overlap_genes': [overlaps[i] for i in keep],
            'significant': adjusted <= cfg.alpha
        }, columns=TABLE_COLUMNS)
        table = table.sort_values(['p_value', 'gene_set_id'], kind='mergesort').reset_index(drop=True)

        significant = table.loc[table['significant'], 'gene_set_id'].tolist()
        similarity = gene_set_similarity(
            {s: tested[s] for s in significant}, method=cfg.similarity_method
        )

        logger.info(f"Found {len(significant)} significant gene sets at alpha={cfg.alpha}")

        self.results_ = EnrichmentResult(
            table=table,
            significant_sets=significant,
            similarity=similarity,
            alpha=cfg.alpha,
            universe_size=M,
            query_size=N,
            dropped_query_genes=dropped,
            skipped_gene_sets=skipped,
            failed_gene_sets=failed
        )
        return self.results_


def enrich(
    query_genes: Iterable[str],
    universe: Iterable[str],
    gene_sets: Mapping[str, Iterable[str]],
    alpha: Optional[float] = None,
    config: Optional[EnrichmentConfig] = None
) -> EnrichmentResult:
    """
    Convenience function for a single enrichment analysis.

    Args:
        query_genes: Genes of interest
        universe: Background gene universe
        gene_sets: Gene set ID -> member genes
        alpha: Adjusted p-value threshold; overrides ``config.alpha`` when given
        config: Optional EnrichmentConfig (alpha defaults to 0.05)

    Returns:
        EnrichmentResult

    Example:
        >>> result = enrich({'TP53', 'BAX'}, all_genes, {'apoptosis': {'TP53', 'BAX', 'BCL2'}})
        >>> result.table.head()
    """
    config = config or EnrichmentConfig()
    if alpha is not None and alpha != config.alpha:
        config = EnrichmentConfig(
            alpha=alpha,
            correction_method=config.correction_method,
            min_gene_set_size=config.min_gene_set_size,
            max_gene_set_size=config.max_gene_set_size,
            similarity_method=config.similarity_method
        )
    return PathwayEnrichmentAnalyzer(config).analyze(query_genes, universe, gene_sets)
