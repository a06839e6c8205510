"""Shared pytest fixtures for proteomarker tests."""
import pytest
import numpy as np
import pandas as pd

from proteomarker.data.matrix import AbundanceMatrix, FeatureMeta, SampleAnnotation


SAMPLE_IDS = [f"S{i:02d}" for i in range(10)]


@pytest.fixture
def sample_ids():
    """Ten sample identifiers."""
    return list(SAMPLE_IDS)


@pytest.fixture
def mock_disease_labels():
    """Balanced binary outcome (case vs control) over ten samples."""
    return pd.Series(
        ["case"] * 5 + ["control"] * 5,
        index=SAMPLE_IDS,
        name="disease",
    )


@pytest.fixture
def mock_abundance_df(mock_disease_labels):
    """Log2 abundances (50 proteins x 10 samples), 10% missing, first 5 proteins separate cases."""
    np.random.seed(42)
    n_features, n_samples = 50, 10
    means = np.random.uniform(18, 26, size=(n_features, 1))
    values = means + np.random.normal(0, 0.5, size=(n_features, n_samples))
    is_case = (mock_disease_labels == "case").to_numpy()
    values[:5, is_case] += 2.0

    mask = np.random.rand(n_features, n_samples) < 0.10
    # keep at least two observed values per protein
    mask[:, :2] = False
    values[mask] = np.nan

    return pd.DataFrame(
        values,
        index=[f"P{i:05d}" for i in range(n_features)],
        columns=SAMPLE_IDS,
    )


@pytest.fixture
def mock_abundance_matrix(mock_abundance_df):
    """AbundanceMatrix with a gene ID for every protein except the last two."""
    meta = [
        FeatureMeta(fid, f"{fid}_HUMAN", gene_id=f"GENE{i}" if i < 48 else None)
        for i, fid in enumerate(mock_abundance_df.index)
    ]
    return AbundanceMatrix.from_dataframe(mock_abundance_df, feature_meta=meta)


@pytest.fixture
def mock_feature_to_gene(mock_abundance_matrix):
    """Feature ID -> gene ID mapping."""
    return mock_abundance_matrix.gene_mapping()


@pytest.fixture
def mock_covariates_df(mock_disease_labels):
    """Covariates: 3-level batch, 2-level sex, numeric age, collection date, outcome."""
    np.random.seed(7)
    return pd.DataFrame({
        "batch": ["B1", "B2", "B3", "B1", "B2", "B3", "B1", "B2", "B3", "B1"],
        "sex": ["F", "M", "M", "F", "F", "M", "F", "M", "F", "M"],
        "age": np.random.uniform(30, 70, size=10).round(1),
        "collected": pd.date_range("2021-01-04", periods=10, freq="7D"),
        "disease": mock_disease_labels.to_numpy(),
    }, index=SAMPLE_IDS)


@pytest.fixture
def mock_annotation(mock_covariates_df):
    """SampleAnnotation with declared covariate kinds."""
    return SampleAnnotation(
        mock_covariates_df,
        kinds={"batch": "categorical", "sex": "categorical", "age": "numeric",
               "collected": "date", "disease": "categorical"},
    )


@pytest.fixture
def mock_gene_sets():
    """Three synthetic pathways over GENE0..GENE47."""
    return {
        "PANEL_PATHWAY": {f"GENE{i}" for i in range(5)},
        "MIXED_PATHWAY": {f"GENE{i}" for i in range(3, 15)},
        "BACKGROUND_PATHWAY": {f"GENE{i}" for i in range(20, 45)},
    }


@pytest.fixture
def heteroscedastic_matrix():
    """Matrix whose spread grows with abundance: x = sinh(z), z uniform in [-3, 3]."""
    np.random.seed(42)
    n_features, n_samples = 1000, 6
    latent = np.random.uniform(-3, 3, size=(n_features, 1))
    z = latent + np.random.normal(0, 0.3, size=(n_features, n_samples))
    return AbundanceMatrix(
        np.sinh(z),
        [f"F{i:04d}" for i in range(n_features)],
        [f"S{j}" for j in range(n_samples)],
        stage="log2",
    )
