#!/usr/bin/env python3
"""
Basic Analysis Example for proteomic biomarker discovery

This example demonstrates how to use the proteomarker package to:
1. Build an abundance matrix and sample annotation from synthetic data
2. Normalize and impute the matrix
3. Screen technical covariates for confounding
4. Search for a small predictive protein panel
5. Test the panel for pathway enrichment
"""

import logging

import numpy as np
import pandas as pd

from proteomarker import AbundanceMatrix, FeatureMeta, SampleAnnotation
from proteomarker.enrichment import assign_modules
from proteomarker.features import RFEConfig
from proteomarker.pipeline import BiomarkerDiscoveryPipeline, PipelineConfig


def create_sample_data(n_proteins=200, n_samples=40, missing_rate=0.1, random_state=42):
    """Synthetic intensities with a disease signal in the first 10 proteins."""
    rng = np.random.default_rng(random_state)
    sample_ids = [f"S{i:03d}" for i in range(n_samples)]
    disease = np.array(["case", "control"] * (n_samples // 2))

    log2 = rng.uniform(16, 28, size=(n_proteins, 1)) + rng.normal(0, 0.6, size=(n_proteins, n_samples))
    log2[:10, disease == "case"] += 1.5
    batch = rng.choice(["B1", "B2", "B3"], size=n_samples)
    log2[:, batch == "B3"] += 0.4

    intensities = np.power(2.0, log2)
    intensities[rng.random(intensities.shape) < missing_rate] = np.nan

    meta = [
        FeatureMeta.from_compound_id(f"sp|P{i:05d}|PROT{i}_HUMAN").with_gene(f"GENE{i}")
        for i in range(n_proteins)
    ]
    matrix = AbundanceMatrix(intensities, [m.feature_id for m in meta], sample_ids, feature_meta=meta)

    covariates = pd.DataFrame({
        "disease": disease,
        "batch": batch,
        "age": rng.uniform(30, 75, size=n_samples).round(),
        "collected": pd.Timestamp("2022-01-03") + pd.to_timedelta(rng.integers(0, 300, n_samples), unit="D"),
    }, index=sample_ids)
    annotation = SampleAnnotation(covariates, kinds={"disease": "categorical", "batch": "categorical"})

    pathways = {
        "SIGNAL_PATHWAY": {f"GENE{i}" for i in range(0, 15)},
        "INFLAMMATION": {f"GENE{i}" for i in range(8, 40)},
        "HOUSEKEEPING": {f"GENE{i}" for i in range(100, 160)},
    }
    return matrix, annotation, pathways


def main():
    """Run basic analysis example."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=== Proteomic Biomarker Discovery Example ===")
    print()

    print("1. Generating synthetic proteomics data...")
    matrix, annotation, pathways = create_sample_data()
    print(f"   Matrix: {matrix}")
    print(f"   Missing rate: {matrix.missing_rate():.1%}")
    print()

    print("2. Running the pipeline...")
    config = PipelineConfig(
        log_transform=True,
        rfe=RFEConfig(candidate_sizes=[5, 10, 20, 50], folds=5, repeats=3, seed=42, n_jobs=2),
    )
    result = BiomarkerDiscoveryPipeline(config).run(
        matrix,
        annotation,
        outcome="disease",
        confounder_covariates=["batch", "age", "collected"],
        feature_to_gene=None,
        gene_sets=pathways,
    )
    print()

    print("3. Confounder screen:")
    for name, verdict in result.verdicts.items():
        flag = "CONFOUNDER" if verdict.is_confounder else "ok"
        print(f"   {name:<10} max change {verdict.max_relative_change:8.2f}%  {flag}")
    print()

    print("4. Feature search:")
    print(result.rfe.performance.to_string(index=False))
    print(f"   Best panel size: {result.rfe.best_size}")
    print(f"   Panel: {', '.join(result.rfe.ranked_features)}")
    print()

    print("5. Pathway enrichment:")
    table = result.enrichment.table[["gene_set_id", "overlap_count", "p_value", "p_adjusted"]]
    print(table.to_string(index=False))
    if len(result.enrichment.significant_sets) > 1:
        print(f"   Modules: {assign_modules(result.enrichment.similarity).to_dict()}")

    print()
    print("=== Analysis Complete ===")


if __name__ == "__main__":
    main()
