"""Tests for enrichment analysis module."""
import pytest
import numpy as np
from scipy import stats

from proteomarker.data.matrix import FeatureMeta
from proteomarker.enrichment.analysis import (
    EnrichmentConfig,
    PathwayEnrichmentAnalyzer,
    adjust_pvalues,
    assign_modules,
    enrich,
    gene_set_similarity,
    hypergeometric_test,
    map_features_to_genes,
)
from proteomarker.exceptions import ValidationError


@pytest.fixture
def universe():
    """200-gene universe."""
    return {f"G{i:03d}" for i in range(200)}


@pytest.fixture
def catalogue():
    """Gene sets of different size and overlap."""
    return {
        "SET_A": {f"G{i:03d}" for i in range(10)},
        "SET_B": {f"G{i:03d}" for i in range(5, 40)},
        "SET_C": {f"G{i:03d}" for i in range(100, 160)},
        "SET_D": {f"G{i:03d}" for i in range(0, 12)},
    }


class TestEnrichmentConfig:
    """Tests for EnrichmentConfig."""

    def test_default_values(self):
        """Default config should have reasonable values."""
        config = EnrichmentConfig()
        assert config.alpha == 0.05
        assert config.correction_method == "fdr_bh"
        assert config.similarity_method == "jaccard"

    def test_invalid_alpha(self):
        """Alpha must be a probability."""
        with pytest.raises(ValidationError):
            EnrichmentConfig(alpha=0.0)

    def test_invalid_size_range(self):
        """The maximum size cannot be below the minimum."""
        with pytest.raises(ValidationError):
            EnrichmentConfig(min_gene_set_size=10, max_gene_set_size=5)


class TestHypergeometricTest:
    """Tests for hypergeometric_test."""

    def test_matches_scipy(self):
        """P(X >= k) should equal the scipy survival function at k - 1."""
        pval = hypergeometric_test(3, 1000, 10, 5)
        assert pval == pytest.approx(stats.hypergeom.sf(2, 1000, 10, 5))

    def test_no_overlap(self):
        """Zero overlap gives p = 1."""
        assert hypergeometric_test(0, 1000, 10, 5) == pytest.approx(1.0)

    def test_vectorised(self):
        """Arrays of overlaps and sizes give one p-value each."""
        pvals = hypergeometric_test(np.array([5, 0, 2]), 20000, np.array([7, 50, 100]), 5)
        assert pvals.shape == (3,)
        assert pvals[0] < 0.05
        assert pvals[1] == pytest.approx(1.0)


class TestAdjustPvalues:
    """Tests for adjust_pvalues."""

    def test_correction_increases(self):
        """Correction should adjust p-values upward."""
        pvalues = np.array([0.01, 0.03, 0.05, 0.10])
        corrected = adjust_pvalues(pvalues, method="fdr_bh")
        assert len(corrected) == len(pvalues)
        assert all(c >= p for c, p in zip(corrected, pvalues))

    def test_empty(self):
        """Empty input is returned unchanged."""
        assert len(adjust_pvalues(np.array([]))) == 0


class TestPathwayEnrichmentAnalyzer:
    """Tests for PathwayEnrichmentAnalyzer."""

    def test_query_equal_to_universe(self, universe, catalogue):
        """Querying the whole universe carries no enrichment signal."""
        result = enrich(universe, universe, catalogue)
        np.testing.assert_allclose(result.table["p_value"], 1.0)
        assert result.significant_sets == []

    def test_query_equal_to_gene_set(self, universe, catalogue):
        """A query equal to one set's membership gives that set the smallest p-value."""
        result = enrich(catalogue["SET_A"], universe, catalogue)
        assert result.table.iloc[0]["gene_set_id"] == "SET_A"
        assert result.table.iloc[0]["overlap_count"] == 10
        assert "SET_A" in result.significant_sets

    def test_table_columns(self, universe, catalogue):
        """The table should carry the counts behind every test."""
        result = enrich(catalogue["SET_A"], universe, catalogue)
        row = result.table.set_index("gene_set_id").loc["SET_B"]
        assert row["geneset_size"] == 35
        assert row["universe_size"] == 200
        assert row["query_size"] == 10
        assert row["overlap_count"] == 5
        assert row["overlap_genes"] == [f"G{i:03d}" for i in range(5, 10)]
        assert row["p_adjusted"] >= row["p_value"]
        assert row["fold_enrichment"] == pytest.approx((5 / 10) / (35 / 200))

    def test_query_genes_outside_universe_counted(self, universe, catalogue):
        """Genes absent from the universe are dropped and counted."""
        query = set(catalogue["SET_A"]) | {"NOT_MEASURED_1", "NOT_MEASURED_2"}
        result = enrich(query, universe, catalogue)
        assert result.dropped_query_genes == 2
        assert result.query_size == 10

    def test_gene_sets_restricted_to_universe(self, universe):
        """Set members outside the universe do not count towards the set size."""
        catalogue = {"S": {"G000", "G001", "OUTSIDE"}}
        result = enrich({"G000"}, universe, catalogue)
        assert result.table.iloc[0]["geneset_size"] == 2

    def test_size_filter_skips_sets(self, universe, catalogue):
        """Sets outside the size range are skipped and reported."""
        config = EnrichmentConfig(min_gene_set_size=11, max_gene_set_size=50)
        result = PathwayEnrichmentAnalyzer(config).analyze(catalogue["SET_A"], universe, catalogue)
        assert sorted(result.skipped_gene_sets) == ["SET_A", "SET_C"]
        assert set(result.table["gene_set_id"]) == {"SET_B", "SET_D"}

    def test_empty_gene_set_skipped(self, universe):
        """A set with no member in the universe is skipped, not tested."""
        result = enrich({"G000"}, universe, {"EMPTY": {"X", "Y"}, "S": {"G000", "G001"}})
        assert result.skipped_gene_sets == ["EMPTY"]
        assert result.n_tested == 1

    def test_similarity_over_significant_sets(self, universe, catalogue):
        """Similarity is symmetric with unit diagonal over significant sets."""
        result = enrich(catalogue["SET_D"], universe, catalogue)
        assert len(result.significant_sets) >= 2
        sim = result.similarity
        assert list(sim.index) == result.significant_sets
        np.testing.assert_allclose(sim.to_numpy(), sim.to_numpy().T)
        np.testing.assert_allclose(np.diag(sim.to_numpy()), 1.0)

    def test_configured_alpha_kept(self, universe, catalogue):
        """The config's alpha applies unless an explicit alpha is passed."""
        config = EnrichmentConfig(alpha=0.001)
        assert enrich(catalogue["SET_A"], universe, catalogue, config=config).alpha == 0.001
        assert enrich(catalogue["SET_A"], universe, catalogue).alpha == 0.05
        overridden = enrich(catalogue["SET_A"], universe, catalogue, alpha=0.2, config=config)
        assert overridden.alpha == 0.2
        assert config.alpha == 0.001

    def test_empty_universe(self, catalogue):
        """An empty universe is invalid input."""
        with pytest.raises(ValidationError):
            enrich({"G000"}, set(), catalogue)

    def test_to_dict(self, universe, catalogue):
        """Overlap genes are joined for export."""
        result = enrich(catalogue["SET_A"], universe, catalogue)
        exported = result.to_dict()
        assert exported["query_size"] == 10
        assert isinstance(exported["results"][0]["overlap_genes"], str)


class TestGeneSetSimilarity:
    """Tests for gene_set_similarity and assign_modules."""

    def test_jaccard_and_overlap(self):
        """Jaccard divides by the union, overlap by the smaller set."""
        sets = {"a": {"1", "2", "3", "4"}, "b": {"3", "4"}}
        jaccard = gene_set_similarity(sets, "jaccard")
        overlap = gene_set_similarity(sets, "overlap")
        assert jaccard.loc["a", "b"] == pytest.approx(0.5)
        assert overlap.loc["a", "b"] == pytest.approx(1.0)

    def test_assign_modules(self):
        """Overlapping sets share a module, disjoint sets do not."""
        sets = {
            "a": {"1", "2", "3", "4"},
            "b": {"1", "2", "3", "5"},
            "c": {"7", "8", "9"},
        }
        modules = assign_modules(gene_set_similarity(sets), min_similarity=0.5)
        assert modules["a"] == modules["b"]
        assert modules["a"] != modules["c"]
        assert modules["a"] == 1

    def test_assign_modules_single_set(self):
        """A single set forms its own module."""
        modules = assign_modules(gene_set_similarity({"a": {"1"}}))
        assert modules.tolist() == [1]


class TestMapFeaturesToGenes:
    """Tests for map_features_to_genes."""

    def test_mapping_dict(self):
        """Unmapped features are counted."""
        genes, unmapped = map_features_to_genes(
            {"P1": "TP53", "P2": "TP53", "P3": None}, ["P1", "P2", "P3", "P4"]
        )
        assert genes == {"TP53"}
        assert unmapped == 2

    def test_feature_meta(self):
        """FeatureMeta records carry the gene IDs."""
        meta = [FeatureMeta("P1", "p1", gene_id="EGFR"), FeatureMeta("P2", "p2")]
        genes, unmapped = map_features_to_genes(meta, ["P1", "P2"])
        assert genes == {"EGFR"}
        assert unmapped == 1
