from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest
from scipy import sparse

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def small_counts(rng: np.random.Generator) -> sparse.csr_matrix:
    """12 genes x 60 cells of sparse Poisson counts."""
    data = sparse.random(
        12,
        60,
        density=0.3,
        format="csr",
        random_state=rng,
        data_rvs=lambda n: (rng.poisson(2, size=n) + 1).astype(np.float64),
    )
    return data


@pytest.fixture
def small_dense_counts(small_counts: sparse.csr_matrix) -> np.ndarray:
    return small_counts.toarray()


@pytest.fixture
def in_group() -> np.ndarray:
    mask = np.zeros(60, dtype=bool)
    mask[:25] = True
    return mask


@pytest.fixture
def gene_names() -> list[str]:
    return [f"Gene_{i}" for i in range(12)]


@pytest.fixture
def no_filter() -> dict:
    """Options that switch off every pre-test filter."""
    return {"log2fc_th": 0.0, "mean_th": 0.0, "min_nonzero": 0}
