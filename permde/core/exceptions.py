"""Exception and warning types raised by permde."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid test configuration or group labelling (caller misuse)."""


class InvalidInputError(ValueError):
    """Count matrix outside the non-negative, finite count domain."""


class NumericDegeneracyWarning(RuntimeWarning):
    """Per-feature statistic undefined; the row carries NaN sentinels."""
