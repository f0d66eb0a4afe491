from __future__ import annotations

import numpy as np
import pytest
from scipy import sparse

from permde.core.exceptions import ConfigurationError, InvalidInputError
from permde.core.grouped import (
    GroupLabels,
    _grouped_row_sums,
    as_count_matrix,
    group_labels,
    grouped_means,
    shuffle_labels,
)


def _explicit_gmean(dense: np.ndarray, mask: np.ndarray, eps: float) -> np.ndarray:
    return np.exp(np.mean(np.log(dense[:, mask] + eps), axis=1)) - eps


def test_grouped_row_sums_matches_dense_computation(small_counts, small_dense_counts, rng) -> None:
    matrix = as_count_matrix(small_counts)
    codes = np.stack([rng.permutation(np.repeat([0, 1], [25, 35])) for _ in range(3)]).astype(np.int8)
    rows = np.array([0, 3, 7, 11], dtype=np.intp)

    got = _grouped_row_sums.py_func(matrix.indptr, matrix.indices, matrix.log_data, codes, rows)

    logs = np.log1p(small_dense_counts[rows])
    assert got.shape == (4, 3, 2)
    for b in range(3):
        np.testing.assert_allclose(got[:, b, 0], logs[:, codes[b] == 0].sum(axis=1), atol=1e-12)
        np.testing.assert_allclose(got[:, b, 1], logs[:, codes[b] == 1].sum(axis=1), atol=1e-12)


def test_grouped_means_eps_one_is_expm1_of_mean_log1p(small_counts, small_dense_counts, in_group) -> None:
    matrix = as_count_matrix(small_counts)
    means = grouped_means(matrix, GroupLabels.from_mask(in_group))

    expected1 = np.expm1(np.mean(np.log1p(small_dense_counts[:, in_group]), axis=1))
    expected2 = np.expm1(np.mean(np.log1p(small_dense_counts[:, ~in_group]), axis=1))
    np.testing.assert_allclose(means.mean1, expected1, rtol=1e-12, atol=1e-12)
    np.testing.assert_allclose(means.mean2, expected2, rtol=1e-12, atol=1e-12)
    np.testing.assert_array_equal(means.n_nonzero1, (small_dense_counts[:, in_group] > 0).sum(axis=1))
    np.testing.assert_array_equal(means.n_nonzero2, (small_dense_counts[:, ~in_group] > 0).sum(axis=1))


def test_grouped_means_general_pseudocount(small_counts, small_dense_counts, in_group) -> None:
    eps = 0.25
    means = grouped_means(as_count_matrix(small_counts, eps=eps), GroupLabels.from_mask(in_group))

    np.testing.assert_allclose(
        means.mean1, _explicit_gmean(small_dense_counts, in_group, eps), rtol=1e-10, atol=1e-12,
    )
    np.testing.assert_allclose(
        means.mean2, _explicit_gmean(small_dense_counts, ~in_group, eps), rtol=1e-10, atol=1e-12,
    )
    expected_fc = np.log2((means.mean1 + eps) / (means.mean2 + eps))
    np.testing.assert_allclose(means.log2fc, expected_fc, rtol=1e-10, atol=1e-12)


def test_log2fc_is_finite_when_one_group_is_all_zero() -> None:
    dense = np.array([[0, 0, 0, 4, 5, 6], [1, 2, 3, 0, 0, 0]], dtype=float)
    labels = GroupLabels.from_mask(np.array([True, True, True, False, False, False]))
    means = grouped_means(as_count_matrix(dense), labels)

    assert means.mean1[0] == 0.0
    assert means.mean2[1] == 0.0
    assert np.all(np.isfinite(means.log2fc))
    assert means.log2fc[0] < 0 < means.log2fc[1]


def test_log2fc_sign_matches_diff_mean(small_counts, in_group) -> None:
    means = grouped_means(as_count_matrix(small_counts), GroupLabels.from_mask(in_group))
    nonzero = means.diff_mean != 0
    np.testing.assert_array_equal(
        np.sign(means.log2fc[nonzero]), np.sign(means.diff_mean[nonzero])
    )


def test_shuffle_preserves_row_totals_and_group_sizes(small_counts, small_dense_counts, in_group, rng) -> None:
    matrix = as_count_matrix(small_counts)
    labels = GroupLabels.from_mask(in_group)

    rows = np.arange(matrix.n_features, dtype=np.intp)

    for _ in range(5):
        shuffled = shuffle_labels(labels, rng)
        assert shuffled.n1 == labels.n1
        assert shuffled.n2 == labels.n2

        totals = _grouped_row_sums.py_func(
            matrix.indptr, matrix.indices, matrix.data, shuffled.codes.reshape(1, -1), rows,
        )[:, 0, :]
        np.testing.assert_allclose(totals.sum(axis=1), small_dense_counts.sum(axis=1))
        np.testing.assert_allclose(
            totals[:, 0], small_dense_counts[:, shuffled.codes == 0].sum(axis=1),
        )


def test_shuffle_requires_explicit_rng(small_counts, in_group) -> None:
    matrix = as_count_matrix(small_counts)
    with pytest.raises(ConfigurationError, match="explicit rng"):
        grouped_means(matrix, GroupLabels.from_mask(in_group), shuffle=True)


def test_shuffled_means_are_reproducible_given_seed(small_counts, in_group) -> None:
    matrix = as_count_matrix(small_counts)
    labels = GroupLabels.from_mask(in_group)
    a = grouped_means(matrix, labels, shuffle=True, rng=np.random.default_rng(5))
    b = grouped_means(matrix, labels, shuffle=True, rng=np.random.default_rng(5))
    np.testing.assert_array_equal(a.diff_mean, b.diff_mean)


def test_empty_group_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="non-empty"):
        GroupLabels.from_mask(np.ones(10, dtype=bool))
    with pytest.raises(ConfigurationError, match="non-empty"):
        GroupLabels.from_mask(np.zeros(10, dtype=bool))


def test_labels_length_mismatch_is_rejected(small_counts) -> None:
    matrix = as_count_matrix(small_counts)
    labels = GroupLabels.from_mask(np.arange(59) < 20)
    with pytest.raises(ConfigurationError, match="does not match"):
        grouped_means(matrix, labels)


def test_non_binary_mask_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="boolean or 0/1"):
        GroupLabels.from_mask(np.array([0, 1, 2, 1]))
    labels = GroupLabels.from_mask(np.array([0, 1, 1, 0]))
    np.testing.assert_array_equal(labels.codes, [1, 0, 0, 1])


def test_group_codes_outside_zero_one_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="must be 0 or 1"):
        GroupLabels(np.array([0, 2, 1, 2, 0, 1]))
    with pytest.raises(ConfigurationError, match="must be 0 or 1"):
        GroupLabels(np.array([0, -1, 1, 1]))
    with pytest.raises(ConfigurationError, match="1D"):
        GroupLabels(np.array([[0, 1], [1, 0]]))

    labels = GroupLabels(np.array([0, 1, 1, 0], dtype=np.int64))
    assert labels.codes.dtype == np.int8
    assert labels.n1 == 2 and labels.n2 == 2


def test_negative_and_non_finite_counts_are_rejected() -> None:
    with pytest.raises(InvalidInputError, match="non-negative"):
        as_count_matrix(sparse.csr_matrix(np.array([[1.0, -2.0], [0.0, 3.0]])))
    with pytest.raises(InvalidInputError, match="NaN or infinite"):
        as_count_matrix(np.array([[1.0, np.nan], [0.0, 3.0]]))
    with pytest.raises(InvalidInputError, match="2D"):
        as_count_matrix(np.arange(5))


def test_as_count_matrix_does_not_modify_input() -> None:
    X = sparse.csr_matrix(np.array([[0.0, 2.0, 0.0], [1.0, 0.0, 3.0]]))
    X.data[0] = 0.0  # explicit zero
    before = X.data.copy()

    matrix = as_count_matrix(X)

    np.testing.assert_array_equal(X.data, before)
    assert X.nnz == 3
    assert matrix.data.size == 2


def test_group_labels_one_vs_rest_and_reference() -> None:
    cats = np.array(["a", "b", "c", "a", "b", "c", "a"])

    labels, keep = group_labels(cats, "a")
    assert keep is None
    assert labels.n1 == 3 and labels.n2 == 4

    labels, keep = group_labels(cats, "a", reference="c")
    np.testing.assert_array_equal(keep, [True, False, True, True, False, True, True])
    assert labels.n1 == 3 and labels.n2 == 2

    with pytest.raises(ConfigurationError, match="not found"):
        group_labels(cats, "z")
    with pytest.raises(ConfigurationError, match="must differ"):
        group_labels(cats, "a", reference="a")


def test_subset_obs_keeps_selected_columns(small_counts, small_dense_counts) -> None:
    matrix = as_count_matrix(small_counts)
    keep = np.arange(60) % 3 == 0
    sub = matrix.subset_obs(keep)
    assert sub.shape == (12, 20)
    np.testing.assert_allclose(
        sparse.csr_matrix((sub.data, sub.indices, sub.indptr), shape=sub.shape).toarray(),
        small_dense_counts[:, keep],
    )
