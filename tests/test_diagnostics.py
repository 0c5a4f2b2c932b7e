# tests/test_diagnostics.py

import pytest
import pandas as pd
import numpy as np
from riftmatch.diagnostics import (
    compute_weighted_stats,
    covariate_balance,
    create_summary_table,
    flag_balance_worsening,
    sample_sizes,
    weighted_ecdf_stats,
)
from riftmatch.exceptions import BalanceWarning


@pytest.fixture
def two_groups():
    return pd.DataFrame({
        'treat': [1, 1, 1, 0, 0, 0, 0],
        'x':     [4.0, 5.0, 6.0, 1.0, 2.0, 5.0, 6.0],
    })


def test_unit_weights_match_sample_variance():
    x = np.array([1.0, 2.0, 4.0, 7.0])
    stats = compute_weighted_stats(x, np.ones(4))
    assert stats['mean'] == pytest.approx(3.5)
    assert stats['var'] == pytest.approx(np.var(x, ddof=1))

def test_empty_weights_give_nan():
    stats = compute_weighted_stats(np.array([1.0, 2.0]), np.zeros(2))
    assert np.isnan(stats['mean'])

def test_identical_groups_are_balanced():
    df = pd.DataFrame({'treat': [1, 1, 0, 0], 'x': [1.0, 3.0, 1.0, 3.0]})
    table = covariate_balance(df, ['x'], 'treat')
    assert table.loc['x', 'Mean Diff'] == 0
    assert table.loc['x', 'Var Ratio'] == pytest.approx(1.0)
    assert table.loc['x', 'eCDF Max'] == 0

def test_ecdf_stats_for_disjoint_groups():
    mean, mx = weighted_ecdf_stats(np.array([3.0, 4.0]), np.ones(2), np.array([1.0, 2.0]), np.ones(2))
    assert mx == pytest.approx(1.0)
    # Grid 1..4: |0-.5|, |0-1|, |.5-1|, |1-1|
    assert mean == pytest.approx((0.5 + 1.0 + 0.5 + 0.0) / 4)

def test_pooled_smd(two_groups):
    weights = pd.Series(1.0, index=two_groups.index)
    unmatched, matched = create_summary_table(two_groups, ['x'], 'treat', weights)

    var_t = two_groups.loc[two_groups.treat == 1, 'x'].var()
    var_c = two_groups.loc[two_groups.treat == 0, 'x'].var()
    expected = (5.0 - 3.5) / np.sqrt((var_t + var_c) / 2)
    assert unmatched.loc['x', 'Std. Mean Diff.'] == pytest.approx(expected)
    assert matched.loc['x', 'Std. Mean Diff.'] == pytest.approx(expected)

def test_treated_denominator(two_groups):
    weights = pd.Series(1.0, index=two_groups.index)
    unmatched, _ = create_summary_table(two_groups, ['x'], 'treat', weights, std_denominator='estimand')
    assert unmatched.loc['x', 'Std. Mean Diff.'] == pytest.approx(1.5 / 1.0)

def test_weighting_removes_imbalance(two_groups):
    # Keep only the controls that mirror the treated values
    weights = pd.Series([1, 1, 1, 0, 0, 1, 1], index=two_groups.index, dtype=float)
    unmatched, matched = create_summary_table(two_groups, ['x'], 'treat', weights)

    assert abs(matched.loc['x', 'Std. Mean Diff.']) < abs(unmatched.loc['x', 'Std. Mean Diff.'])
    assert matched.loc['x', 'Means Control'] == pytest.approx(5.5)

def test_unknown_denominator(two_groups):
    with pytest.raises(ValueError):
        create_summary_table(two_groups, ['x'], 'treat', pd.Series(1.0, index=two_groups.index),
                             std_denominator='median')

def test_flag_balance_worsening():
    unmatched = pd.DataFrame({'Std. Mean Diff.': [0.5, 0.05]}, index=['a', 'b'])
    matched = pd.DataFrame({'Std. Mean Diff.': [0.1, -0.2]}, index=['a', 'b'])

    with pytest.warns(BalanceWarning, match="b"):
        flagged = flag_balance_worsening(unmatched, matched)
    assert flagged == ['b']

def test_flag_balance_worsening_quiet_when_improved():
    unmatched = pd.DataFrame({'Std. Mean Diff.': [0.5]}, index=['a'])
    matched = pd.DataFrame({'Std. Mean Diff.': [0.1]}, index=['a'])
    assert flag_balance_worsening(unmatched, matched) == []

def test_sample_sizes():
    treatment = pd.Series([1, 1, 1, 0, 0, 0])
    weights = pd.Series([1.0, 1.0, 0.0, 1.0, 0.0, 1.0])
    kept = pd.Series([True, True, False, True, True, True])
    sizes = sample_sizes(treatment, weights, kept)

    assert sizes.loc['All', 'Treated'] == 3
    assert sizes.loc['Matched', 'Treated'] == 2
    assert sizes.loc['Discarded', 'Treated'] == 1
    assert sizes.loc['Unmatched', 'Treated'] == 0
    assert sizes.loc['Unmatched', 'Control'] == 1
