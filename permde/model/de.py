"""
PermDE: permutation differential-mean test for sparse count data.

For every gene the observed difference of group geometric means is compared
with its distribution under random relabelling of the observations. Two
significance estimates come from the same shuffles: an empirical p-value
(b + 1) / (R + 1) and a Gaussian approximation of the null. Both are
FDR-adjusted across the tested genes.

Complexity:
- observed pass: O(nnz) over all genes
- shuffles:      O(R·nnz_selected) for the genes passing the filters
- Memory:        O(G·batch_size), the genes x R null is never stored
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from ..core.config import PermDEConfig
from ..core.exceptions import ConfigurationError, InvalidInputError
from ..core.filtering import select_features
from ..core.grouped import (
    CountMatrix,
    GroupedMeans,
    GroupLabels,
    as_count_matrix,
    check_labels,
    group_labels,
    grouped_means,
)
from ..core.permutation import permutation_null
from ..core.pvalue import adjust_pvalues, permutation_pvalues
from ..core.result import DifferentialTestResult


@dataclass
class PermDEResult(DifferentialTestResult):
    """
    Results of a permutation differential-mean test.

    Only tested genes are included, in input gene order. ``statistics``
    holds z-scores and ``effect_size`` holds log2 fold changes; the
    Gaussian-approximation p-values are ``pvalues``/``qvalues`` and the
    empirical ones ``emp_pvalues``/``emp_qvalues``.

    Genes whose null distribution had zero spread carry NaN in
    ``statistics``, ``pvalues`` and ``qvalues``.
    """

    mean1: NDArray[np.floating]
    """Geometric mean in group 1."""

    mean2: NDArray[np.floating]
    """Geometric mean in group 2."""

    diff_mean: NDArray[np.floating]
    """mean1 - mean2."""

    emp_pvalues: NDArray[np.floating]
    """Empirical permutation p-values, (b + 1) / (R + 1)."""

    emp_qvalues: NDArray[np.floating]
    """FDR-adjusted empirical p-values."""

    n_nonzero1: NDArray[np.integer]
    """Number of non-zero observations in group 1."""

    n_nonzero2: NDArray[np.integer]
    """Number of non-zero observations in group 2."""

    feature_index: NDArray[np.intp]
    """Row of each tested gene in the input matrix."""

    n_perm: int = 0
    """Number of shuffles used for the null."""

    group: str | None = None
    """Name of group 1, when labels were categorical."""

    reference: str | None = None
    """Name of group 2 ("rest" for one-vs-rest), when labels were categorical."""

    def __post_init__(self):
        super().__post_init__()
        n = len(self.gene_names)
        if self.n_tested != n:
            raise ValueError(
                f"n_tested ({self.n_tested}) does not match number of genes ({n})"
            )
        for name in (
            "pvalues", "qvalues", "statistics", "effect_size", "mean1", "mean2",
            "diff_mean", "emp_pvalues", "emp_qvalues", "n_nonzero1", "n_nonzero2",
            "feature_index",
        ):
            length = len(getattr(self, name))
            if length != n:
                raise ValueError(f"{name} length ({length}) does not match number of genes ({n})")

    def significant_genes(
        self,
        q_threshold: float = 0.05,
        effect_threshold: float | None = None,
        empirical: bool = False,
    ) -> list[str]:
        """
        Get list of significant genes.

        Parameters
        ----------
        q_threshold : float, default=0.05
            Q-value (FDR) threshold.
        effect_threshold : float, optional
            Minimum absolute log2 fold change.
        empirical : bool, default=False
            Use the empirical q-values instead of the Gaussian ones.
        """
        if not empirical:
            return super().significant_genes(q_threshold, effect_threshold)
        mask = self.emp_qvalues < q_threshold
        if effect_threshold is not None:
            mask = mask & (np.abs(self.effect_size) >= effect_threshold)
        return [g for g, m in zip(self.gene_names, mask) if m]

    def _build_dataframe_dict(self) -> dict:
        """Base columns plus group means and empirical p-values, in table order."""
        d = super()._build_dataframe_dict()
        return {
            "gene": d["gene"],
            "mean1": self.mean1,
            "mean2": self.mean2,
            "log2FC": d["log2FC"],
            "diff_mean": self.diff_mean,
            "zscore": d["zscore"],
            "emp_pval": self.emp_pvalues,
            "pval": d["pval"],
            "emp_pval_adj": self.emp_qvalues,
            "pval_adj": d["pval_adj"],
            "n_nonzero1": self.n_nonzero1,
            "n_nonzero2": self.n_nonzero2,
        }


def assemble_result(
    observed: GroupedMeans,
    selected: NDArray[np.intp],
    gene_names: list[str],
    emp_pval: NDArray[np.floating],
    zscore: NDArray[np.floating],
    pval: NDArray[np.floating],
    emp_pval_adj: NDArray[np.floating],
    pval_adj: NDArray[np.floating],
    n_perm: int,
    group: str | None = None,
    reference: str | None = None,
) -> PermDEResult:
    """
    Merge observed statistics of the selected genes with their test outcomes.

    ``selected`` indexes into ``observed``; the test arrays are aligned with
    ``selected``. Genes outside ``selected`` are dropped and the remaining
    rows keep input order.
    """
    selected = np.asarray(selected, dtype=np.intp)
    order = np.argsort(observed.rows[selected], kind="stable")
    idx = selected[order]
    rows = observed.rows[idx]

    return PermDEResult(
        gene_names=[gene_names[r] for r in rows],
        pvalues=np.asarray(pval, dtype=np.float64)[order],
        qvalues=np.asarray(pval_adj, dtype=np.float64)[order],
        statistics=np.asarray(zscore, dtype=np.float64)[order],
        effect_size=observed.log2fc[idx],
        n_tested=len(idx),
        mean1=observed.mean1[idx],
        mean2=observed.mean2[idx],
        diff_mean=observed.diff_mean[idx],
        emp_pvalues=np.asarray(emp_pval, dtype=np.float64)[order],
        emp_qvalues=np.asarray(emp_pval_adj, dtype=np.float64)[order],
        n_nonzero1=observed.n_nonzero1[idx],
        n_nonzero2=observed.n_nonzero2[idx],
        feature_index=rows,
        n_perm=n_perm,
        group=group,
        reference=reference,
    )


class PermDE:
    """
    Permutation differential-mean test for sparse count matrices.

    Compares per-gene geometric means of two groups of observations and
    assesses the difference against label shuffles. Genes are pre-filtered
    on fold change, expression level and support so that shuffles are only
    evaluated where a difference is plausible.

    Complexity
    ----------
    - Observed pass: O(nnz)
    - Null: O(R·nnz_selected), parallel over genes
    - Memory: O(G·batch_size) for the null, independent of R

    Parameters
    ----------
    config : PermDEConfig, optional
        Full configuration. Keyword options override its fields.
    **options
        Any ``PermDEConfig`` field (``n_perm``/``R``, ``log2fc_th``/
        ``log2FC_th``, ``mean_th``, ``min_nonzero``, ``only_pos``,
        ``only_top_n``, ``eps``, ``seed``, ``adjustment``, ``batch_size``).

    Examples
    --------
    >>> import numpy as np
    >>> from scipy import sparse
    >>> from permde import PermDE
    >>>
    >>> counts = sparse.random(2000, 500, density=0.05, format="csr") * 10
    >>> in_group = np.arange(500) < 200
    >>> result = PermDE(n_perm=199, seed=0).test(counts.floor(), in_group)
    >>> print(result.to_dataframe().head())
    """

    def __init__(self, config: PermDEConfig | None = None, **options):
        if config is None:
            config = PermDEConfig.from_dict(options)
        elif options:
            config = config.replace(**options)
        self.config = config

    def __repr__(self) -> str:
        return f"PermDE({self.config!r})"

    def _prepare(self, X, gene_names: list[str] | None) -> tuple[CountMatrix, list[str]]:
        matrix = as_count_matrix(X, eps=self.config.eps)
        n_genes = matrix.n_features
        if gene_names is None:
            gene_names = [f"Gene_{i}" for i in range(n_genes)]
        elif len(gene_names) != n_genes:
            raise InvalidInputError(
                f"gene_names length ({len(gene_names)}) does not match "
                f"number of genes ({n_genes})"
            )
        return matrix, list(gene_names)

    def test(
        self,
        X,
        labels,
        gene_names: list[str] | None = None,
        group=None,
        reference=None,
        verbose: bool = False,
    ) -> PermDEResult:
        """
        Test every gene for a difference between two groups.

        Parameters
        ----------
        X : array-like or sparse matrix of shape (n_genes, n_obs)
            Non-negative counts, genes in rows.
        labels : array-like (n_obs,) or GroupLabels
            Boolean/0-1 membership of group 1 when ``group`` is None,
            otherwise the category of every observation.
        gene_names : list of str, optional
            Gene names. If None, uses indices.
        group : optional
            Category forming group 1.
        reference : optional
            Category forming group 2. ``None`` compares against all other
            observations.
        verbose : bool, default=False
            Print progress information.

        Returns
        -------
        result : PermDEResult
            Test results for the genes passing the filters.
        """
        matrix, gene_names = self._prepare(X, gene_names)

        if group is None:
            if reference is not None:
                raise ConfigurationError("reference requires group to be set")
            if not isinstance(labels, GroupLabels):
                labels = GroupLabels.from_mask(labels)
            return self._test_two_groups(
                matrix, labels, gene_names, np.random.SeedSequence(self.config.seed), verbose,
            )

        labels = np.asarray(labels)
        if labels.shape != (matrix.n_obs,):
            raise ConfigurationError(
                f"Group labels length ({labels.shape[0] if labels.ndim else 0}) does not "
                f"match number of observations ({matrix.n_obs})"
            )
        categories = list(np.unique(labels))
        seeds = np.random.SeedSequence(self.config.seed).spawn(len(categories))
        seed = seeds[categories.index(group)] if group in categories else None
        return self._test_category(matrix, labels, gene_names, group, reference, seed, verbose)

    def test_groups(
        self,
        X,
        labels,
        gene_names: list[str] | None = None,
        groups: list | None = None,
        reference=None,
        verbose: bool = False,
    ) -> dict[str, PermDEResult]:
        """
        Test each group against the rest (or against ``reference``).

        Groups are processed one at a time, so peak memory does not grow with
        the number of groups. Every group draws shuffles from its own seed,
        derived from the configured seed and the group's position among the
        sorted categories, so its result does not depend on ``groups``.

        Parameters
        ----------
        X : array-like or sparse matrix of shape (n_genes, n_obs)
            Non-negative counts, genes in rows.
        labels : array-like (n_obs,)
            Category of every observation.
        gene_names : list of str, optional
            Gene names. If None, uses indices.
        groups : list, optional
            Categories to test. ``None`` tests every category (except
            ``reference``).
        reference : optional
            Common comparison group. ``None`` means one-vs-rest.
        verbose : bool, default=False
            Print progress information.

        Returns
        -------
        results : dict[str, PermDEResult]
            Keyed by ``str(group)``, in category order.
        """
        matrix, gene_names = self._prepare(X, gene_names)
        labels = np.asarray(labels)
        if labels.shape != (matrix.n_obs,):
            raise ConfigurationError(
                f"Group labels length ({labels.shape[0] if labels.ndim else 0}) does not "
                f"match number of observations ({matrix.n_obs})"
            )

        categories = list(np.unique(labels))
        if groups is None:
            groups = [c for c in categories if c != reference]
        missing = [g for g in groups if g not in categories]
        if missing:
            raise ConfigurationError(f"Groups not found in labels: {missing}")
        if reference is not None and reference not in categories:
            raise ConfigurationError(f"Reference group {reference!r} not found in labels")

        seeds = np.random.SeedSequence(self.config.seed).spawn(len(categories))
        results: dict[str, PermDEResult] = {}
        for g in sorted(groups, key=categories.index):
            if verbose:
                print(f"Testing group {g!r} vs {reference if reference is not None else 'rest'!r}...")
            results[str(g)] = self._test_category(
                matrix, labels, gene_names, g, reference, seeds[categories.index(g)], verbose,
            )
        return results

    def _test_category(
        self,
        matrix: CountMatrix,
        labels: NDArray,
        gene_names: list[str],
        group,
        reference,
        seed: np.random.SeedSequence | None,
        verbose: bool,
    ) -> PermDEResult:
        binary, keep = group_labels(labels, group, reference)
        if keep is not None:
            matrix = matrix.subset_obs(keep)
        return self._test_two_groups(
            matrix, binary, gene_names, seed, verbose,
            group=str(group),
            reference="rest" if reference is None else str(reference),
        )

    def _test_two_groups(
        self,
        matrix: CountMatrix,
        labels: GroupLabels,
        gene_names: list[str],
        seed: np.random.SeedSequence | None,
        verbose: bool,
        group: str | None = None,
        reference: str | None = None,
    ) -> PermDEResult:
        cfg = self.config
        check_labels(labels, matrix.n_obs)

        observed = grouped_means(matrix, labels)
        selected = select_features(
            observed,
            log2fc_th=cfg.log2fc_th,
            mean_th=cfg.mean_th,
            min_nonzero=cfg.min_nonzero,
            only_pos=cfg.only_pos,
            only_top_n=cfg.only_top_n,
        )
        if verbose:
            print(
                f"Group sizes {labels.n1}/{labels.n2}: "
                f"{len(selected)}/{matrix.n_features} genes pass filters"
            )

        observed_diff = observed.diff_mean[selected]
        if len(selected) == 0:
            empty = np.empty(0)
            return assemble_result(
                observed, selected, gene_names, empty, empty, empty, empty, empty,
                n_perm=cfg.n_perm, group=group, reference=reference,
            )

        summary = permutation_null(
            matrix,
            labels,
            observed.rows[selected],
            n_perm=cfg.n_perm,
            observed=observed_diff,
            seed=seed,
            batch_size=cfg.batch_size,
            verbose=verbose,
        )
        emp_pval, zscore, pval = permutation_pvalues(observed_diff, summary)

        # FDR correction across all tested genes of this comparison
        emp_pval_adj = adjust_pvalues(emp_pval, method=cfg.adjustment)
        pval_adj = adjust_pvalues(pval, method=cfg.adjustment)

        return assemble_result(
            observed, selected, gene_names,
            emp_pval, zscore, pval, emp_pval_adj, pval_adj,
            n_perm=cfg.n_perm, group=group, reference=reference,
        )
