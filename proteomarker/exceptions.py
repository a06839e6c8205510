"""
Exception hierarchy for the proteomarker package.

Structural problems with the input (mismatched identifiers, too few samples,
an impossible cross-validation layout) fail fast with one of the
``ValidationError`` subclasses. Numerical problems inside a single row or
gene set are not raised; they are counted and reported on the result object
of the component that hit them.
"""

from typing import Iterable


class ProteomarkerError(Exception):
    """Base class for all errors raised by proteomarker."""

    pass


class ValidationError(ProteomarkerError, ValueError):
    """Raised when input shapes or identifiers are malformed or inconsistent."""

    pass


class DegenerateInputError(ValidationError):
    """Raised when there is not enough information to fit a model.

    Examples are fewer than two samples, a sample with no observed values,
    or a covariate with zero variance.
    """

    pass


class StratificationError(ValidationError):
    """Raised when a class has fewer members than cross-validation folds."""

    pass


class ConvergenceError(ProteomarkerError, RuntimeError):
    """Raised when an optimizer or model fit does not converge."""

    pass


class NonEstimableCoefficientError(ProteomarkerError, LookupError):
    """Raised when the value of a collinear (non-estimable) coefficient is requested.

    The confounder detector never raises this; it reports non-estimability
    through ``CoefficientEstimate.estimable``. The error exists so that code
    reading a ``RegressionFit`` cannot mistake an undefined coefficient for zero.
    """

    pass


class SearchCancelledError(ProteomarkerError):
    """Raised when a feature search is cancelled before it completes."""

    pass


def format_ids(ids: Iterable, limit: int = 10) -> str:
    """Render a list of identifiers for an error message, truncating long lists."""
    ids = [str(i) for i in ids]
    if len(ids) <= limit:
        return ", ".join(ids)
    return ", ".join(ids[:limit]) + f", ... ({len(ids) - limit} more)"
