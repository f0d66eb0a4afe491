"""
permde: Permutation Differential-Mean Testing for Sparse Count Data

Non-parametric differential expression between two groups of cells,
scaled to tens of thousands of genes and repeated one-vs-rest sweeps.

Features
--------
- Geometric group means computed over non-zero entries only, O(nnz)
- Label-shuffle null reduced on the fly, memory independent of R
- Empirical (b + 1) / (R + 1) and Gaussian-approximation p-values
- Benjamini-Hochberg adjustment of both p-value flavours
- Reproducible per-shuffle seeding, parallel over genes with Numba
- AnnData/Scanpy ecosystem integration

Quick Start
-----------
>>> from permde import PermDE
>>> result = PermDE(n_perm=199).test(counts, in_group)
>>> print(result.significant_genes())

With AnnData (scanpy-style):

>>> import permde
>>> permde.tl.permutation_test(adata, groupby="cell_type", group="B")
>>> sig = adata.var.query("permde_pval_adj < 0.05")
"""

__version__ = "0.1.0"

# Main API
from .model import (
    PermDE,
    PermDEResult,
)
from .core.config import PermDEConfig
from .core.exceptions import (
    ConfigurationError,
    InvalidInputError,
    NumericDegeneracyWarning,
)

# Scanpy-style submodule
from . import tl

# Utilities (for advanced users building custom pipelines)
from .core.pvalue import adjust_pvalues

__all__ = [
    "__version__",
    # Main API
    "PermDE",
    "PermDEConfig",
    "PermDEResult",
    # Errors
    "ConfigurationError",
    "InvalidInputError",
    "NumericDegeneracyWarning",
    # Scanpy-style submodule
    "tl",
    # Utilities
    "adjust_pvalues",
]


def __getattr__(name: str):
    """Lazy import for optional AnnData integration."""
    if name == "run_permde":
        from .io import run_permde
        return run_permde
    raise AttributeError(f"module 'permde' has no attribute '{name}'")
