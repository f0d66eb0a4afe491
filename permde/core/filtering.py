"""Pre-test gene selection."""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from .grouped import GroupedMeans


def filter_mask(
    observed: GroupedMeans,
    log2fc_th: float,
    mean_th: float,
    min_nonzero: int,
    only_pos: bool = False,
) -> NDArray[np.bool_]:
    """
    Threshold filters on the observed statistics.

    A gene passes when ``|log2FC| >= log2fc_th``, ``max(mean1, mean2) >=
    mean_th`` and the higher-mean group has at least ``min_nonzero``
    non-zero observations. With ``only_pos`` it must also have
    ``mean1 > mean2``. A threshold of 0 disables that filter.
    """
    log2fc = observed.log2fc
    mean1 = observed.mean1
    mean2 = observed.mean2

    group1_higher = mean1 >= mean2
    nnz_high = np.where(group1_higher, observed.n_nonzero1, observed.n_nonzero2)

    mask = (
        (np.abs(log2fc) >= log2fc_th)
        & (np.maximum(mean1, mean2) >= mean_th)
        & (nnz_high >= min_nonzero)
    )
    if only_pos:
        mask &= mean1 > mean2
    return mask


def top_n(scores: NDArray[np.floating], candidates: NDArray[np.intp], n: int) -> NDArray[np.intp]:
    """The ``n`` candidates with largest score; ties go to the lower index."""
    candidates = np.asarray(candidates, dtype=np.intp)
    if n >= len(candidates):
        return candidates
    order = np.argsort(-scores[candidates], kind="stable")
    return np.sort(candidates[order[:n]])


def select_features(
    observed: GroupedMeans,
    log2fc_th: float = np.log2(1.2),
    mean_th: float = 0.05,
    min_nonzero: int = 5,
    only_pos: bool = False,
    only_top_n: int | None = None,
) -> NDArray[np.intp]:
    """
    Genes to submit to permutation testing.

    Parameters
    ----------
    observed : GroupedMeans
        Observed statistics of all candidate genes.
    log2fc_th, mean_th, min_nonzero, only_pos
        See ``filter_mask``.
    only_top_n : int, optional
        Keep only the N passing genes with largest ``|log2FC|``. Trades
        completeness for a bounded permutation cost.

    Returns
    -------
    selected : ndarray
        Positions into ``observed`` (not matrix rows), ascending.
    """
    mask = filter_mask(observed, log2fc_th, mean_th, min_nonzero, only_pos)
    selected = np.flatnonzero(mask).astype(np.intp)
    if only_top_n is not None:
        selected = top_n(np.abs(observed.log2fc), selected, only_top_n)
    return selected
