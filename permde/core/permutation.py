"""
Label-shuffle null distributions, reduced on the fly.

The null distribution of ``diff_mean`` is never stored as a genes x R
matrix. Shuffles are evaluated in batches of ``batch_size`` and each batch
is folded into running accumulators (``NullSummary``), so memory is
O(n_genes * batch_size) regardless of R.

Every shuffle draws from its own Generator spawned from one SeedSequence,
which makes the result independent of batch size and evaluation order.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .grouped import (
    CountMatrix,
    GroupLabels,
    _grouped_row_sums,
    _resolve_rows,
    check_labels,
    means_from_log_sums,
)
from .exceptions import ConfigurationError


@dataclass
class NullSummary:
    """Running summary of a per-gene null distribution.

    ``n_extreme`` counts null samples with ``|null| >= |observed|``.
    """

    n: int
    total: NDArray[np.float64]
    total_sq: NDArray[np.float64]
    minimum: NDArray[np.float64]
    maximum: NDArray[np.float64]
    n_extreme: NDArray[np.int64]

    @classmethod
    def empty(cls, n_genes: int) -> "NullSummary":
        return cls(
            n=0,
            total=np.zeros(n_genes),
            total_sq=np.zeros(n_genes),
            minimum=np.full(n_genes, np.inf),
            maximum=np.full(n_genes, -np.inf),
            n_extreme=np.zeros(n_genes, dtype=np.int64),
        )

    @property
    def mean(self) -> NDArray[np.float64]:
        return self.total / self.n

    def update(self, null: NDArray[np.float64], observed: NDArray[np.float64]) -> None:
        """Fold a (n_genes, B) block of null samples into the summary."""
        null = np.asarray(null, dtype=np.float64)
        if null.ndim == 1:
            null = null[:, None]
        if null.shape[1] == 0:
            return
        self.n += null.shape[1]
        self.total += null.sum(axis=1)
        self.total_sq += np.sum(null ** 2, axis=1)
        self.minimum = np.minimum(self.minimum, null.min(axis=1))
        self.maximum = np.maximum(self.maximum, null.max(axis=1))
        self.n_extreme += np.sum(
            np.abs(null) >= np.abs(observed)[:, None], axis=1
        ).astype(np.int64)


def spawn_generators(
    seed: int | np.random.SeedSequence | None,
    n: int,
) -> list[np.random.Generator]:
    """One independent Generator per shuffle, derived from ``seed``."""
    ss = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    return [np.random.default_rng(child) for child in ss.spawn(n)]


def shuffled_diff_means(
    matrix: CountMatrix,
    labels: GroupLabels,
    rows: NDArray[np.intp],
    generators: list[np.random.Generator],
) -> NDArray[np.float64]:
    """
    ``mean1 - mean2`` under one shuffle per generator.

    Returns
    -------
    null : ndarray of shape (len(rows), len(generators))
    """
    codes = np.stack([rng.permutation(labels.codes) for rng in generators])
    sums = _grouped_row_sums(matrix.indptr, matrix.indices, matrix.log_data, codes, rows)
    mean_log1, mean_log2 = means_from_log_sums(sums, labels.n1, labels.n2)
    return matrix.eps * (np.expm1(mean_log1) - np.expm1(mean_log2))


def permutation_null(
    matrix: CountMatrix,
    labels: GroupLabels,
    rows: NDArray[np.intp] | None,
    n_perm: int,
    observed: NDArray[np.float64],
    seed: int | np.random.SeedSequence | None = 0,
    batch_size: int = 16,
    verbose: bool = False,
) -> NullSummary:
    """
    Build the shuffle null of ``diff_mean`` for the requested rows.

    Parameters
    ----------
    matrix : CountMatrix
        Validated count matrix.
    labels : GroupLabels
        Observed partition; shuffles preserve its group sizes.
    rows : ndarray or None
        Rows to test. ``None`` tests all rows.
    n_perm : int
        Number of shuffles (R).
    observed : ndarray of shape (len(rows),)
        Observed ``diff_mean`` of the same rows, for the exceedance tally.
    seed : int or SeedSequence, optional
        Root of the per-shuffle seed tree.
    batch_size : int, default=16
        Shuffles per kernel call.
    verbose : bool, default=False
        Print progress information.

    Returns
    -------
    summary : NullSummary
    """
    if n_perm < 1:
        raise ConfigurationError(f"n_perm must be >= 1, got {n_perm}")
    if batch_size < 1:
        raise ConfigurationError(f"batch_size must be >= 1, got {batch_size}")
    check_labels(labels, matrix.n_obs)
    rows = _resolve_rows(matrix, rows)
    observed = np.asarray(observed, dtype=np.float64)
    if observed.shape != rows.shape:
        raise ConfigurationError(
            f"observed length ({observed.shape[0]}) does not match rows ({rows.shape[0]})"
        )

    generators = spawn_generators(seed, n_perm)
    summary = NullSummary.empty(len(rows))

    for start in range(0, n_perm, batch_size):
        if verbose and start % (batch_size * 10) == 0:
            print(f"Permutation {start}/{n_perm}...")
        batch = generators[start:start + batch_size]
        summary.update(shuffled_diff_means(matrix, labels, rows, batch), observed)

    return summary
