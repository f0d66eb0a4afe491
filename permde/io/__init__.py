"""AnnData input/output helpers."""

from .anndata import run_permde

__all__ = ["run_permde"]
