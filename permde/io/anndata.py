"""
AnnData integration for permde.

Provides seamless integration with the Scanpy ecosystem. AnnData stores
cells x genes; matrices are transposed to genes x cells before testing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from scipy import sparse

from ..core.result import DifferentialTestResult
from ..model.de import PermDEResult

if TYPE_CHECKING:
    import anndata as ad


def _store_result(
    adata: "ad.AnnData",
    result: PermDEResult,
    key_added: str,
    metadata: dict | None = None,
) -> None:
    """
    Store a test result in AnnData.var.

    Every result column becomes ``adata.var[f"{key_added}_{column}"]``.
    Genes that were not tested get NaN (0 for count columns).

    Parameters
    ----------
    adata : AnnData
        Target AnnData object.
    result : PermDEResult
        Test result to store.
    key_added : str
        Key prefix for columns.
    metadata : dict, optional
        Metadata to store in adata.uns[key_added].
    """
    columns = result._build_dataframe_dict()
    gene_names = columns.pop("gene")

    gene_mask = np.isin(gene_names, adata.var_names)
    valid_genes = [g for g, m in zip(gene_names, gene_mask) if m]
    valid_indices = np.where(gene_mask)[0]

    for col_name, values in columns.items():
        arr = np.asarray(values)
        if np.issubdtype(arr.dtype, np.integer):
            default = 0
        else:
            default = np.nan
        key = f"{key_added}_{col_name}"
        adata.var[key] = default
        if len(valid_genes) > 0:
            adata.var.loc[valid_genes, key] = arr[valid_indices]

    adata.uns[key_added] = {
        "n_tested": result.n_tested,
        "n_significant": result.n_significant,
        "n_perm": result.n_perm,
        "group": result.group,
        "reference": result.reference,
        **(metadata or {}),
    }


def _results_frame(results: dict[str, DifferentialTestResult]):
    """Concatenate per-group results into one long DataFrame."""
    import pandas as pd

    frames = []
    for group, res in results.items():
        df = res.to_dataframe().reset_index()
        df.insert(0, "group", group)
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=["group", "gene"])
    return pd.concat(frames, ignore_index=True)


def run_permde(
    adata: "ad.AnnData",
    groupby: str,
    group,
    reference=None,
    layer: str | None = None,
    genes: list[str] | None = None,
    copy: bool = False,
    key_added: str = "permde",
    verbose: bool = False,
    **options,
) -> PermDEResult | "ad.AnnData":
    """
    Run a permutation differential-mean test on an AnnData object.

    Parameters
    ----------
    adata : AnnData
        Annotated data object with counts in ``adata.X`` or ``layer``.
    groupby : str
        Column of adata.obs holding the group labels.
    group
        Category forming group 1.
    reference : optional
        Category forming group 2. If None, group 1 is compared to the rest.
    layer : str, optional
        Layer to use for counts. If None, uses adata.X.
    genes : list of str, optional
        Subset of genes to test. If None, tests all genes.
    copy : bool, default=False
        Whether to return a copy of adata.
    key_added : str, default='permde'
        Key prefix for storing results in adata.var.
    verbose : bool, default=False
        Print progress information.
    **options
        PermDEConfig options (n_perm, log2fc_th, mean_th, ...).

    Returns
    -------
    result : PermDEResult or AnnData
        PermDEResult if copy=False (results also stored in adata.var).
        Modified AnnData copy if copy=True.

    Examples
    --------
    >>> import scanpy as sc
    >>> from permde.io import run_permde
    >>>
    >>> adata = sc.read_h5ad("pbmc_counts.h5ad")
    >>> result = run_permde(adata, groupby="cell_type", group="B", n_perm=199)
    >>> result.to_dataframe(sort_by="pval").head()
    """
    if copy:
        adata = adata.copy()

    from ..tl._de import _run_and_store

    result = _run_and_store(
        adata, groupby, group, reference, layer, genes, key_added, verbose, options,
    )

    return adata if copy else result


def _extract_adata(
    adata: "ad.AnnData",
    groupby: str,
    layer: str | None,
    genes: list[str] | None,
):
    """
    Extract a genes x cells count matrix, labels and gene names from AnnData.
    """
    if groupby not in adata.obs:
        raise KeyError(
            f"Group labels not found at adata.obs['{groupby}']. "
            f"Available columns: {list(adata.obs.columns)}"
        )
    labels = np.asarray(adata.obs[groupby].astype(str))

    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer '{layer}' not found in adata.layers")
        X = adata.layers[layer]
    else:
        X = adata.X

    gene_names = list(adata.var_names)

    if genes is not None:
        if not adata.var_names.is_unique:
            raise ValueError(
                "adata.var_names must be unique when selecting genes by name; "
                "call adata.var_names_make_unique() first"
            )

        name_to_idx = {name: i for i, name in enumerate(gene_names)}
        seen: set[str] = set()
        selected_indices: list[int] = []
        selected_names: list[str] = []
        for gene in genes:
            # Keep user order; skip duplicate requests.
            if gene in seen:
                continue
            seen.add(gene)
            idx = name_to_idx.get(gene)
            if idx is not None:
                selected_indices.append(idx)
                selected_names.append(gene)

        if not selected_indices:
            raise ValueError("None of the specified genes found in adata")
        X = X[:, np.asarray(selected_indices, dtype=np.intp)]
        gene_names = selected_names

    # cells x genes -> genes x cells
    if sparse.issparse(X):
        X = sparse.csr_matrix(X.T)
    else:
        X = np.asarray(X).T

    return X, labels, gene_names
