"""Exceptions raised by the erosion pipeline."""

from __future__ import annotations


class ErosionWatchError(Exception):
    """Base class for pipeline errors."""


class DomainError(ErosionWatchError, ValueError):
    """Physical inputs outside their valid domain.

    Raised for data-quality problems upstream of the pipeline (negative
    reflectance, zero reference area, mismatched grids, ...). Never
    silently reinterpreted as zero.
    """


class UnderdeterminedModelError(ErosionWatchError, ValueError):
    """The regression design matrix is rank deficient.

    Reduce the harmonic order or supply more samples.
    """


class TileProcessingError(ErosionWatchError, RuntimeError):
    """A tile failed or did not complete before the deadline."""
