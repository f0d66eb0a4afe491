"""
P-value computation and multiple testing correction.

Provides:
- Empirical and Gaussian-approximation p-values from a summarised
  shuffle null
- Benjamini-Hochberg multiple testing adjustment
"""

from __future__ import annotations

import warnings
from typing import Literal

import numpy as np
from numpy.typing import NDArray
from scipy.stats import norm as _norm_dist

from .exceptions import NumericDegeneracyWarning
from .permutation import NullSummary


def empirical_pvalues(n_extreme: NDArray[np.integer], n_perm: int) -> NDArray[np.floating]:
    """
    Two-tailed permutation p-value with pseudocount.

    p = (b + 1) / (R + 1), where b counts null samples at least as extreme
    as the observed value. Never 0 and never below 1 / (R + 1).
    """
    n_extreme = np.asarray(n_extreme, dtype=np.float64)
    return (n_extreme + 1.0) / (n_perm + 1.0)


def null_sd(summary: NullSummary) -> NDArray[np.floating]:
    """Root mean square of the null samples about zero, sqrt(sum(x^2) / (R - 1)).

    Undefined (NaN) for R = 1.
    """
    if summary.n < 2:
        return np.full(summary.total_sq.shape, np.nan)
    return np.sqrt(summary.total_sq / (summary.n - 1))


def permutation_pvalues(
    observed: NDArray[np.floating],
    summary: NullSummary,
) -> tuple[NDArray[np.floating], NDArray[np.floating], NDArray[np.floating]]:
    """
    Turn observed differences and their null summaries into p-values.

    Parameters
    ----------
    observed : ndarray (n_genes,)
        Observed ``diff_mean`` per gene.
    summary : NullSummary
        Shuffle null of the same genes.

    Returns
    -------
    emp_pval : ndarray
        Empirical p-values, (b + 1) / (R + 1).
    zscore : ndarray
        (observed - mean(null)) / sd, NaN where sd is zero or undefined.
    pval : ndarray
        Two-sided normal tail probability 2 * Phi(-|z|), NaN with zscore.

    Warns
    -----
    NumericDegeneracyWarning
        Once per call if any gene has a degenerate null.
    """
    observed = np.asarray(observed, dtype=np.float64)
    emp_pval = empirical_pvalues(summary.n_extreme, summary.n)

    sd = null_sd(summary)
    degenerate = ~(sd > 0)
    safe_sd = np.where(degenerate, 1.0, sd)
    zscore = np.where(degenerate, np.nan, (observed - summary.mean) / safe_sd)
    pval = np.where(degenerate, np.nan, 2.0 * _norm_dist.sf(np.abs(np.nan_to_num(zscore))))

    n_degenerate = int(np.sum(degenerate))
    if n_degenerate:
        warnings.warn(
            f"Null distribution has zero or undefined spread for {n_degenerate} of "
            f"{len(sd)} genes (R={summary.n}); their zscore and pval are NaN",
            NumericDegeneracyWarning,
            stacklevel=2,
        )

    return emp_pval, zscore, pval


def _bh(pvalues: NDArray[np.floating]) -> NDArray[np.floating]:
    """Benjamini-Hochberg step-up adjustment of finite p-values."""
    m = len(pvalues)
    order = np.argsort(pvalues, kind="stable")
    scaled = pvalues[order] * m / np.arange(1, m + 1)
    # Running minimum from the largest rank down
    scaled = np.minimum(np.minimum.accumulate(scaled[::-1])[::-1], 1.0)
    adjusted = np.empty(m)
    adjusted[order] = scaled
    return adjusted


def adjust_pvalues(
    pvalues: NDArray[np.floating],
    method: Literal["bh", "none"] = "bh",
) -> NDArray[np.floating]:
    """
    Adjust P-values for multiple testing.

    Parameters
    ----------
    pvalues : ndarray
        Raw P-values. NaN entries are left as NaN and excluded from the
        number of tests.
    method : {'bh', 'none'}, default='bh'
        'bh' for Benjamini-Hochberg FDR control, 'none' to return the raw
        values.

    Returns
    -------
    adjusted : ndarray
        Adjusted P-values, in input order.
    """
    if method not in ("bh", "none"):
        raise ValueError(f"Unknown method: {method}")

    pvalues = np.asarray(pvalues, dtype=float)
    valid = ~np.isnan(pvalues)
    finite = pvalues[valid]
    if finite.size and (finite.min() < 0.0 or finite.max() > 1.0):
        raise ValueError(
            f"P-values must be in [0, 1], got range [{finite.min():.6g}, {finite.max():.6g}]"
        )

    adjusted = pvalues.copy()
    if method == "bh" and finite.size:
        adjusted[valid] = _bh(finite)
    return adjusted
