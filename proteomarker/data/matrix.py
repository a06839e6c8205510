"""
Containers for proteomic abundance data and sample annotations.

This module defines the typed containers every downstream component consumes:

Classes:
    FeatureMeta: Per-feature identifier, display name and canonical gene ID
    AbundanceMatrix: Immutable features x samples matrix with NaN as missing
    CovariateKind: Enumeration of supported covariate types
    Covariate: Name/kind pair describing one annotation column
    SampleAnnotation: Sample covariate table keyed by sample ID

Each preprocessing stage returns a new ``AbundanceMatrix`` rather than
mutating its input, so the raw, normalized and imputed snapshots can be kept
side by side for quality-control plots.

Example:
    >>> matrix = AbundanceMatrix.from_dataframe(intensities).log2()
    >>> annotation = SampleAnnotation(covariates_df, kinds={'batch': 'categorical'})
    >>> annotation = annotation.align(matrix)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..exceptions import ValidationError, format_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureMeta:
    """
    Read-only attributes of one matrix row.

    Attributes:
        feature_id: Stable identifier of the feature (e.g. a UniProt accession).
        display_name: Human-readable name shown in reports.
        gene_id: Canonical gene identifier, filled by an external mapping step.
        source: Optional source/prefix of the compound row key.
    """
    feature_id: str
    display_name: str
    gene_id: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def from_compound_id(cls, row_id: str, sep: str = "|") -> 'FeatureMeta':
        """
        Parse a compound row key of the form ``source|feature_id|display_name``.

        Keys with two parts are read as ``feature_id|display_name`` and keys
        without a separator use the whole key for both fields.

        Example:
            >>> FeatureMeta.from_compound_id("sp|P04637|P53_HUMAN")
            FeatureMeta(feature_id='P04637', display_name='P53_HUMAN', gene_id=None, source='sp')
        """
        parts = [p.strip() for p in str(row_id).split(sep)]
        if len(parts) >= 3:
            return cls(feature_id=parts[1], display_name=sep.join(parts[2:]), source=parts[0])
        if len(parts) == 2:
            return cls(feature_id=parts[0], display_name=parts[1])
        return cls(feature_id=parts[0], display_name=parts[0])

    def with_gene(self, gene_id: Optional[str]) -> 'FeatureMeta':
        """Return a copy carrying the given canonical gene identifier."""
        return FeatureMeta(self.feature_id, self.display_name, gene_id, self.source)


class AbundanceMatrix:
    """
    Immutable feature-by-sample abundance matrix.

    Values are stored as a float array with NaN marking missing entries.
    Row and column identifiers are unique and fixed at construction; every
    transformation returns a new matrix with the same row order.

    Attributes:
        values: Read-only float array of shape (n_features, n_samples).
        feature_ids: Row identifiers.
        sample_ids: Column identifiers.
        feature_meta: One FeatureMeta per row.
        stage: Name of the processing stage that produced the values.
        history: Names of all stages applied so far, oldest first.
    """

    def __init__(
        self,
        values: np.ndarray,
        feature_ids: Sequence[str],
        sample_ids: Sequence[str],
        feature_meta: Optional[Sequence[FeatureMeta]] = None,
        stage: str = "raw",
        history: Optional[Tuple[str, ...]] = None
    ) -> None:
        values = np.array(values, dtype=float, copy=True)
        if values.ndim != 2:
            raise ValidationError(f"Expected a 2D matrix, got {values.ndim}D")

        feature_ids = pd.Index([str(f) for f in feature_ids])
        sample_ids = pd.Index([str(s) for s in sample_ids])

        if values.shape != (len(feature_ids), len(sample_ids)):
            raise ValidationError(
                f"Matrix shape {values.shape} does not match "
                f"{len(feature_ids)} feature IDs x {len(sample_ids)} sample IDs"
            )
        if feature_ids.has_duplicates:
            dupes = feature_ids[feature_ids.duplicated()].unique()
            raise ValidationError(f"Duplicate feature IDs: {format_ids(dupes)}")
        if sample_ids.has_duplicates:
            dupes = sample_ids[sample_ids.duplicated()].unique()
            raise ValidationError(f"Duplicate sample IDs: {format_ids(dupes)}")
        if np.isinf(values).any():
            rows = feature_ids[np.isinf(values).any(axis=1)]
            raise ValidationError(f"Infinite values in features: {format_ids(rows)}")

        if feature_meta is None:
            feature_meta = [FeatureMeta(f, f) for f in feature_ids]
        feature_meta = list(feature_meta)
        if len(feature_meta) != len(feature_ids):
            raise ValidationError(
                f"Got {len(feature_meta)} feature annotations for {len(feature_ids)} features"
            )
        mismatched = [m.feature_id for m, f in zip(feature_meta, feature_ids) if m.feature_id != f]
        if mismatched:
            raise ValidationError(
                f"Feature annotations out of order or unknown: {format_ids(mismatched)}"
            )

        values.setflags(write=False)
        self._values = values
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._feature_meta = tuple(feature_meta)
        self._stage = stage
        self._history = tuple(history) if history is not None else (stage,)

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        feature_meta: Optional[Sequence[FeatureMeta]] = None,
        stage: str = "raw"
    ) -> 'AbundanceMatrix':
        """
        Build a matrix from a DataFrame with features as rows and samples as columns.

        Args:
            df: Numeric DataFrame; NaN marks missing values.
            feature_meta: Optional row annotations in row order.
            stage: Stage label of the values.

        Returns:
            New AbundanceMatrix.
        """
        try:
            values = df.to_numpy(dtype=float)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Abundance table is not numeric: {e}") from e
        return cls(values, df.index, df.columns, feature_meta=feature_meta, stage=stage)

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def feature_meta(self) -> Tuple[FeatureMeta, ...]:
        return self._feature_meta

    @property
    def stage(self) -> str:
        return self._stage

    @property
    def history(self) -> Tuple[str, ...]:
        return self._history

    @property
    def shape(self) -> Tuple[int, int]:
        return self._values.shape

    @property
    def n_features(self) -> int:
        return self._values.shape[0]

    @property
    def n_samples(self) -> int:
        return self._values.shape[1]

    @property
    def n_missing(self) -> int:
        return int(np.isnan(self._values).sum())

    def missing_mask(self) -> np.ndarray:
        """Boolean array, True where a value is missing."""
        return np.isnan(self._values)

    def missing_rate(self, axis: Optional[int] = None) -> Union[float, pd.Series]:
        """
        Fraction of missing values overall, per feature (axis=1) or per sample (axis=0).
        """
        mask = self.missing_mask()
        if axis is None:
            return float(mask.mean()) if mask.size else 0.0
        if axis == 1:
            return pd.Series(mask.mean(axis=1), index=self._feature_ids)
        if axis == 0:
            return pd.Series(mask.mean(axis=0), index=self._sample_ids)
        raise ValidationError(f"Invalid axis: {axis}")

    def with_values(self, values: np.ndarray, stage: str) -> 'AbundanceMatrix':
        """Return a new matrix with the same identifiers and new values."""
        return AbundanceMatrix(
            values,
            self._feature_ids,
            self._sample_ids,
            feature_meta=self._feature_meta,
            stage=stage,
            history=self._history + (stage,)
        )

    def select_features(self, feature_ids: Iterable[str]) -> 'AbundanceMatrix':
        """
        Subset rows, keeping the matrix's own row order.

        Raises:
            ValidationError: If any requested ID is not a row of this matrix.
        """
        wanted = set(str(f) for f in feature_ids)
        unknown = wanted.difference(self._feature_ids)
        if unknown:
            raise ValidationError(f"Unknown feature IDs: {format_ids(sorted(unknown))}")
        mask = self._feature_ids.isin(wanted)
        return AbundanceMatrix(
            self._values[mask],
            self._feature_ids[mask],
            self._sample_ids,
            feature_meta=[m for m, keep in zip(self._feature_meta, mask) if keep],
            stage=self._stage,
            history=self._history
        )

    def with_feature_meta(self, feature_meta: Sequence[FeatureMeta]) -> 'AbundanceMatrix':
        """Return a copy carrying new row annotations (e.g. after gene mapping)."""
        return AbundanceMatrix(
            self._values, self._feature_ids, self._sample_ids,
            feature_meta=feature_meta, stage=self._stage, history=self._history
        )

    def log2(self, pseudocount: float = 0.0) -> 'AbundanceMatrix':
        """
        Log2-transform raw intensities.

        Args:
            pseudocount: Added before the transform. With the default of zero,
                non-positive observed intensities are rejected.

        Raises:
            ValidationError: If a shifted observed value is not positive.
        """
        shifted = self._values + pseudocount
        bad = (shifted <= 0) & ~np.isnan(shifted)
        if bad.any():
            rows = self._feature_ids[bad.any(axis=1)]
            raise ValidationError(
                f"Non-positive intensities cannot be log-transformed in features: "
                f"{format_ids(rows)}"
            )
        return self.with_values(np.log2(shifted), stage="log2")

    def to_dataframe(self) -> pd.DataFrame:
        """Features x samples DataFrame copy of the values."""
        return pd.DataFrame(self._values.copy(), index=self._feature_ids, columns=self._sample_ids)

    def samples_by_features(self) -> pd.DataFrame:
        """Samples x features DataFrame, the orientation scikit-learn expects."""
        return self.to_dataframe().T

    def gene_mapping(self) -> Dict[str, str]:
        """Feature ID -> gene ID for rows with a canonical gene identifier."""
        return {m.feature_id: m.gene_id for m in self._feature_meta if m.gene_id}

    def __repr__(self) -> str:
        return (
            f"AbundanceMatrix(n_features={self.n_features}, n_samples={self.n_samples}, "
            f"stage='{self._stage}', missing={self.n_missing})"
        )


class CovariateKind(str, Enum):
    """Supported covariate types."""
    CATEGORICAL = "categorical"
    NUMERIC = "numeric"
    DATE = "date"


@dataclass(frozen=True)
class Covariate:
    """Name and kind of one annotation column."""
    name: str
    kind: CovariateKind


def infer_kinds(df: pd.DataFrame) -> Dict[str, CovariateKind]:
    """
    Guess covariate kinds from DataFrame dtypes.

    Datetime columns become DATE, numeric (non-boolean) columns NUMERIC and
    everything else CATEGORICAL.
    """
    kinds = {}
    for col in df.columns:
        dtype = df[col].dtype
        if pd.api.types.is_datetime64_any_dtype(dtype):
            kinds[col] = CovariateKind.DATE
        elif pd.api.types.is_bool_dtype(dtype):
            kinds[col] = CovariateKind.CATEGORICAL
        elif pd.api.types.is_numeric_dtype(dtype):
            kinds[col] = CovariateKind.NUMERIC
        else:
            kinds[col] = CovariateKind.CATEGORICAL
    return kinds


class SampleAnnotation:
    """
    Covariate table keyed by sample ID.

    Each column is declared as categorical, numeric or date; undeclared
    columns are inferred from their dtype.

    Attributes:
        data: DataFrame indexed by sample ID, one column per covariate.
        kinds: Covariate name -> CovariateKind.

    Example:
        >>> annotation = SampleAnnotation(
        ...     covariates_df,
        ...     kinds={'batch': 'categorical', 'age': 'numeric'}
        ... )
        >>> annotation = annotation.day_difference('diagnosis', 'death', 'survival_days')
    """

    def __init__(
        self,
        data: pd.DataFrame,
        kinds: Optional[Mapping[str, Union[str, CovariateKind]]] = None
    ) -> None:
        data = data.copy()
        data.index = pd.Index([str(s) for s in data.index], name=data.index.name)
        if data.index.has_duplicates:
            dupes = data.index[data.index.duplicated()].unique()
            raise ValidationError(f"Duplicate annotation records for samples: {format_ids(dupes)}")

        resolved = infer_kinds(data)
        for name, kind in (kinds or {}).items():
            if name not in data.columns:
                raise ValidationError(f"Declared covariate '{name}' is not in the annotation table")
            try:
                resolved[name] = CovariateKind(kind)
            except ValueError as e:
                raise ValidationError(f"Unknown covariate kind for '{name}': {kind}") from e

        for name, kind in resolved.items():
            if kind == CovariateKind.DATE:
                data[name] = pd.to_datetime(data[name], errors="raise")
            elif kind == CovariateKind.NUMERIC:
                try:
                    data[name] = pd.to_numeric(data[name], errors="raise").astype(float)
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"Covariate '{name}' is declared numeric: {e}") from e
            else:
                data[name] = data[name].astype("category")

        self._data = data
        self._kinds = resolved

    @property
    def data(self) -> pd.DataFrame:
        return self._data.copy()

    @property
    def kinds(self) -> Dict[str, CovariateKind]:
        return dict(self._kinds)

    @property
    def sample_ids(self) -> pd.Index:
        return self._data.index

    @property
    def covariates(self) -> List[Covariate]:
        return [Covariate(name, kind) for name, kind in self._kinds.items()]

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, name: str) -> bool:
        return name in self._kinds

    def covariate(self, name: str) -> Covariate:
        """Look up a covariate by name."""
        if name not in self._kinds:
            raise ValidationError(
                f"Unknown covariate '{name}'. Available: {list(self._kinds)}"
            )
        return Covariate(name, self._kinds[name])

    def column(self, name: str) -> pd.Series:
        """Values of one covariate, coerced according to its kind."""
        self.covariate(name)
        return self._data[name].copy()

    def align(self, matrix: 'AbundanceMatrix') -> 'SampleAnnotation':
        """
        Restrict and order the records to the matrix's samples.

        Records for samples absent from the matrix are dropped (logged, not an
        error). A matrix sample without a record is an error.

        Raises:
            ValidationError: If any matrix sample has no annotation record.
        """
        missing = matrix.sample_ids.difference(self._data.index)
        if len(missing) > 0:
            raise ValidationError(
                f"Samples without annotation records: {format_ids(missing)}"
            )
        extra = self._data.index.difference(matrix.sample_ids)
        if len(extra) > 0:
            logger.info(f"Dropping {len(extra)} annotation records for samples absent from the matrix")
        return SampleAnnotation(self._data.loc[matrix.sample_ids], kinds=self._kinds)

    def day_difference(self, start: str, end: str, name: str) -> 'SampleAnnotation':
        """
        Add a numeric covariate holding the absolute day difference of two dates.

        Args:
            start: Name of the first date covariate.
            end: Name of the second date covariate.
            name: Name of the derived numeric covariate.

        Returns:
            New SampleAnnotation with the derived column.
        """
        for col in (start, end):
            if self.covariate(col).kind != CovariateKind.DATE:
                raise ValidationError(f"Covariate '{col}' is not a date covariate")
        data = self._data.copy()
        data[name] = (data[end] - data[start]).dt.days.abs().astype(float)
        kinds = dict(self._kinds)
        kinds[name] = CovariateKind.NUMERIC
        return SampleAnnotation(data, kinds=kinds)

    def __repr__(self) -> str:
        kinds = ", ".join(f"{k}:{v.value}" for k, v in self._kinds.items())
        return f"SampleAnnotation(n_samples={len(self)}, covariates=[{kinds}])"
