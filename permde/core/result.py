"""
Base result class for differential tests.

Provides a unified interface for per-gene test results: significance
filtering and DataFrame conversion.
"""

from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray


@dataclass
class DifferentialTestResult(ABC):
    """
    Base class for differential test results.

    Provides common functionality for all testing methods:
    - P-value and q-value storage
    - Effect size (log2 fold change)
    - Significant gene filtering
    - DataFrame conversion

    Subclasses add method-specific fields.
    """

    gene_names: list[str]
    """Names of tested genes, in input order."""

    pvalues: NDArray[np.floating]
    """Raw p-values."""

    qvalues: NDArray[np.floating]
    """Multiple testing corrected q-values (FDR)."""

    statistics: NDArray[np.floating]
    """Test statistics."""

    effect_size: NDArray[np.floating]
    """Effect size measure (log2 fold change)."""

    n_tested: int
    """Number of genes tested."""

    n_significant: int = field(init=False)
    """Number of significant genes (q < 0.05)."""

    def __post_init__(self):
        self.n_significant = int(np.sum(self.qvalues < 0.05))

    def significant_genes(
        self,
        q_threshold: float = 0.05,
        effect_threshold: float | None = None,
    ) -> list[str]:
        """
        Get list of significant genes.

        Parameters
        ----------
        q_threshold : float, default=0.05
            Q-value (FDR) threshold.
        effect_threshold : float, optional
            Minimum absolute effect size.

        Returns
        -------
        genes : list[str]
            Names of significant genes.
        """
        mask = self.qvalues < q_threshold
        if effect_threshold is not None:
            mask = mask & (np.abs(self.effect_size) >= effect_threshold)
        return [g for g, m in zip(self.gene_names, mask) if m]

    def _build_dataframe_dict(self) -> dict:
        """
        Build base dictionary for DataFrame conversion.

        Subclasses should call this and extend with additional columns.
        """
        return {
            "gene": self.gene_names,
            "log2FC": self.effect_size,
            "zscore": self.statistics,
            "pval": self.pvalues,
            "pval_adj": self.qvalues,
        }

    def to_dataframe(self, sort_by: str | None = None):
        """
        Convert results to pandas DataFrame.

        Parameters
        ----------
        sort_by : str, optional
            Column to sort by (ascending). ``None`` keeps input gene order.

        Returns
        -------
        df : pd.DataFrame
            One row per tested gene, indexed by gene name.
        """
        try:
            import pandas as pd
        except ImportError:
            raise ImportError("pandas required for to_dataframe()")

        df = pd.DataFrame(self._build_dataframe_dict()).set_index("gene")
        if sort_by is not None:
            df = df.sort_values(sort_by, kind="stable")
        return df
