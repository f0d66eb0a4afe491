"""Core algorithms for permutation differential-mean testing."""

from .config import PermDEConfig
from .exceptions import ConfigurationError, InvalidInputError, NumericDegeneracyWarning
from .filtering import select_features
from .grouped import CountMatrix, GroupLabels, as_count_matrix, grouped_means
from .permutation import NullSummary, permutation_null
from .pvalue import adjust_pvalues, permutation_pvalues

__all__ = [
    "ConfigurationError",
    "CountMatrix",
    "GroupLabels",
    "InvalidInputError",
    "NullSummary",
    "NumericDegeneracyWarning",
    "PermDEConfig",
    "adjust_pvalues",
    "as_count_matrix",
    "grouped_means",
    "permutation_null",
    "permutation_pvalues",
    "select_features",
]
