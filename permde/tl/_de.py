"""Permutation differential-mean tests (scanpy-style API)."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import anndata as ad

from ..io.anndata import _extract_adata, _results_frame, _store_result
from ..model.de import PermDE, PermDEResult


def _run_and_store(
    adata: "ad.AnnData",
    groupby: str,
    group,
    reference,
    layer: str | None,
    genes: list[str] | None,
    key_added: str,
    verbose: bool,
    options: dict,
) -> PermDEResult:
    """Run PermDE on *adata* and store results in adata.var / adata.uns.

    Shared by ``permde.tl.permutation_test`` and ``permde.io.run_permde``.
    Labels are read from ``adata.obs`` as strings, so ``group`` and
    ``reference`` are matched by their string form.
    """
    X, labels, gene_names = _extract_adata(adata, groupby, layer, genes)
    model = PermDE(**options)
    result = model.test(
        X, labels, gene_names,
        group=str(group),
        reference=None if reference is None else str(reference),
        verbose=verbose,
    )

    _store_result(
        adata=adata,
        result=result,
        key_added=key_added,
        metadata={"groupby": groupby, "config": model.config.to_dict()},
    )
    return result


def permutation_test(
    adata: "ad.AnnData",
    groupby: str,
    group,
    reference=None,
    layer: str | None = None,
    genes: list[str] | None = None,
    key_added: str = "permde",
    copy: bool = False,
    verbose: bool = False,
    **options,
) -> "ad.AnnData | None":
    """
    Test one group against the rest (or a reference group) for every gene.

    Parameters
    ----------
    adata
        Annotated data object with counts in ``adata.X`` or ``layer``.
    groupby
        Column of ``adata.obs`` holding the group labels.
    group
        Category forming group 1.
    reference
        Category forming group 2. ``None`` means all other cells.
    layer
        Count layer to use. ``None`` means ``adata.X``.
    genes
        Subset of genes to test. ``None`` tests all genes.
    key_added
        Key prefix for results in ``adata.var`` and ``adata.uns``.
    copy
        Whether to return a modified copy instead of updating in place.
    verbose
        Print progress information.
    **options
        ``PermDEConfig`` options (``n_perm``, ``log2fc_th``, ``seed``, ...).

    Returns
    -------
    Returns ``None`` if ``copy=False`` (results stored in ``adata``),
    otherwise a modified copy of ``adata``.

    The following fields are added:

    ``adata.var['{key_added}_mean1']``, ``adata.var['{key_added}_mean2']``
        Group geometric means.
    ``adata.var['{key_added}_log2FC']``
        Log2 fold change.
    ``adata.var['{key_added}_zscore']``, ``adata.var['{key_added}_pval']``
        Gaussian-approximation z-score and p-value.
    ``adata.var['{key_added}_emp_pval']``
        Empirical permutation p-value.
    ``adata.var['{key_added}_pval_adj']``, ``adata.var['{key_added}_emp_pval_adj']``
        FDR-adjusted p-values.
    ``adata.uns['{key_added}']``
        Dictionary with metadata (n_tested, n_significant, config).

    Genes that did not pass the filters have NaN in the float columns and 0
    in the non-zero count columns.

    Examples
    --------
    >>> import scanpy as sc
    >>> import permde
    >>> adata = sc.read_h5ad("pbmc_counts.h5ad")
    >>> permde.tl.permutation_test(adata, "cell_type", "B")
    >>> sig = adata.var.query("permde_pval_adj < 0.05")
    """
    if copy:
        adata = adata.copy()

    _run_and_store(
        adata, groupby, group, reference, layer, genes, key_added, verbose, options,
    )
    return adata if copy else None


def rank_groups(
    adata: "ad.AnnData",
    groupby: str,
    groups: list | None = None,
    reference=None,
    layer: str | None = None,
    genes: list[str] | None = None,
    key_added: str = "permde_groups",
    copy: bool = False,
    verbose: bool = False,
    **options,
) -> "ad.AnnData | None":
    """
    Test every group against the rest (or against ``reference``).

    Results of all groups are stored as one long DataFrame with a ``group``
    column in ``adata.uns[key_added]['results']``.

    Parameters
    ----------
    adata
        Annotated data object with counts in ``adata.X`` or ``layer``.
    groupby
        Column of ``adata.obs`` holding the group labels.
    groups
        Groups to test. ``None`` tests all of them.
    reference
        Common comparison group. ``None`` means one-vs-rest.
    layer, genes, key_added, copy, verbose, **options
        As in ``permutation_test``.

    Returns
    -------
    Returns ``None`` if ``copy=False``, otherwise a modified copy of ``adata``.
    """
    if copy:
        adata = adata.copy()

    X, labels, gene_names = _extract_adata(adata, groupby, layer, genes)
    model = PermDE(**options)
    if groups is not None:
        groups = [str(g) for g in groups]
    results = model.test_groups(
        X, labels, gene_names,
        groups=groups,
        reference=None if reference is None else str(reference),
        verbose=verbose,
    )

    adata.uns[key_added] = {
        "groupby": groupby,
        "reference": "rest" if reference is None else str(reference),
        "n_tested": {g: r.n_tested for g, r in results.items()},
        "config": model.config.to_dict(),
        "results": _results_frame(results),
    }

    return adata if copy else None
