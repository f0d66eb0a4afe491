from __future__ import annotations

import warnings

import numpy as np
import pytest
from scipy.stats import norm

from permde.core.exceptions import NumericDegeneracyWarning
from permde.core.permutation import NullSummary
from permde.core.pvalue import (
    adjust_pvalues,
    empirical_pvalues,
    null_sd,
    permutation_pvalues,
)


def _summary(null: np.ndarray, observed: np.ndarray) -> NullSummary:
    s = NullSummary.empty(null.shape[0])
    s.update(null, observed)
    return s


def test_adjust_pvalues_range_and_nan_handling() -> None:
    p = np.array([0.01, 0.2, np.nan, 0.7, 1.0])
    q = adjust_pvalues(p, method="bh")

    assert np.isnan(q[2])
    finite = q[~np.isnan(q)]
    assert np.all((finite >= 0.0) & (finite <= 1.0))


def test_adjust_pvalues_bh_known_values_in_input_order() -> None:
    p = np.array([0.01, 0.04, 0.03, 0.5])
    q = adjust_pvalues(p, method="bh")
    np.testing.assert_allclose(q, [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.5])


def test_adjust_pvalues_bh_monotone_and_not_below_raw() -> None:
    p = np.sort(np.random.default_rng(0).uniform(size=50))
    q = adjust_pvalues(p, method="bh")
    assert np.all(q >= p - 1e-15)
    assert np.all(np.diff(q) >= -1e-12)
    assert q.max() <= 1.0


def test_adjust_pvalues_nan_not_counted_as_test() -> None:
    with_nan = adjust_pvalues(np.array([0.01, np.nan, 0.02]), method="bh")
    without = adjust_pvalues(np.array([0.01, 0.02]), method="bh")
    np.testing.assert_allclose(with_nan[[0, 2]], without)


def test_adjust_pvalues_rejects_out_of_range() -> None:
    with pytest.raises(ValueError, match=r"P-values must be in \[0, 1\]"):
        adjust_pvalues(np.array([-0.1, 0.2, 0.5]), "bh")

    with pytest.raises(ValueError, match=r"P-values must be in \[0, 1\]"):
        adjust_pvalues(np.array([0.2, 1.5]), "none")


def test_adjust_pvalues_empty_all_nan_and_none() -> None:
    empty = np.array([], dtype=float)
    np.testing.assert_array_equal(adjust_pvalues(empty, method="bh"), empty)

    all_nan = np.array([np.nan, np.nan], dtype=float)
    assert np.isnan(adjust_pvalues(all_nan, method="bh")).all()

    p = np.array([0.01, 0.2, np.nan, 0.9], dtype=float)
    np.testing.assert_array_equal(adjust_pvalues(p, method="none"), p)

    for method in ("holm", "storey", "bad"):
        with pytest.raises(ValueError, match="Unknown method"):
            adjust_pvalues(p, method=method)  # type: ignore[arg-type]


def test_empirical_pvalues_bounds() -> None:
    n_perm = 99
    b = np.array([0, 1, 50, 99])
    p = empirical_pvalues(b, n_perm)
    np.testing.assert_allclose(p, [0.01, 0.02, 0.51, 1.0])
    assert p.min() >= 1.0 / (n_perm + 1)
    assert p.max() <= 1.0


def test_null_sd_is_rms_about_zero() -> None:
    null = np.array([[1.0, 2.0, 3.0, 4.0]])
    s = _summary(null, np.array([0.0]))
    # sqrt(sum(x^2) / (R - 1)), not the sample standard deviation
    np.testing.assert_allclose(null_sd(s), [np.sqrt(30.0 / 3.0)])
    assert null_sd(s)[0] != pytest.approx(np.std(null, ddof=1))


def test_permutation_pvalues_formulas() -> None:
    null = np.array([
        [0.1, -0.2, 0.05, -0.3, 0.25],
        [1.0, 1.5, 0.5, 2.0, 1.0],
    ])
    observed = np.array([0.28, -0.4])
    emp, z, p = permutation_pvalues(observed, _summary(null, observed))

    np.testing.assert_allclose(emp, [(1 + 1) / 6, (5 + 1) / 6])
    sd = np.sqrt((null ** 2).sum(axis=1) / 4)
    expected_z = (observed - null.mean(axis=1)) / sd
    np.testing.assert_allclose(z, expected_z)
    np.testing.assert_allclose(p, 2 * norm.cdf(-np.abs(expected_z)))


def test_degenerate_null_gives_nan_without_affecting_other_rows() -> None:
    null = np.array([
        [0.0, 0.0, 0.0],
        [0.3, -0.1, 0.2],
    ])
    observed = np.array([0.0, 0.5])

    with pytest.warns(NumericDegeneracyWarning, match="1 of 2 genes"):
        emp, z, p = permutation_pvalues(observed, _summary(null, observed))

    assert np.isnan(z[0]) and np.isnan(p[0])
    assert emp[0] == 1.0
    assert np.isfinite(z[1]) and 0.0 < p[1] < 1.0


def test_single_permutation_has_undefined_spread() -> None:
    null = np.array([[0.4], [-0.2]])
    observed = np.array([0.1, 0.1])
    with pytest.warns(NumericDegeneracyWarning):
        emp, z, p = permutation_pvalues(observed, _summary(null, observed))
    assert np.isnan(z).all() and np.isnan(p).all()
    np.testing.assert_allclose(emp, [1.0, 1.0])


def test_no_warning_when_all_rows_valid() -> None:
    null = np.array([[0.3, -0.1, 0.2]])
    observed = np.array([0.5])
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        permutation_pvalues(observed, _summary(null, observed))
