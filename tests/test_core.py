# tests/test_core.py

import pytest
import pandas as pd
import numpy as np
from riftmatch.core import MatchIt, balance, match
from riftmatch.effect import EffectEstimate
from riftmatch.exceptions import MissingDataError

# 1. Basic Synthetic Data
@pytest.fixture
def synthetic_data():
    # 10 rows: 5 Treated (1), 5 Control (0)
    # Designed to have some overlap
    df = pd.DataFrame({
        'treat': [1, 1, 1, 1, 1, 0, 0, 0, 0, 0],
        'age':   [25, 30, 45, 22, 28, 50, 24, 29, 35, 40],
        'educ':  [12, 16, 12, 10, 14, 11, 15, 12, 12, 12],
        'income':[50, 60, 55, 40, 52, 58, 45, 48, 49, 51],
        'win_rate': [0.51, 0.49, 0.53, 0.50, 0.52, 0.48, 0.50, 0.49, 0.51, 0.47]
    })
    return df

# 2. Units with a known score, so cut points and weights can be worked by hand
@pytest.fixture
def scored_data():
    df = pd.DataFrame({
        'treat': [0, 0, 1, 0, 1, 1, 0, 1],
        'score': [0.1, 0.2, 0.3, 0.4, 0.6, 0.7, 0.8, 0.9],
    })
    return df

# 3. Champion-like data with real imbalance between tanks and the rest
@pytest.fixture
def champions():
    rng = np.random.default_rng(7)
    n_tank, n_other = 40, 160
    df = pd.DataFrame({
        'tank': [1] * n_tank + [0] * n_other,
        'difficulty': np.concatenate([rng.normal(1.5, 0.6, n_tank), rng.normal(2.2, 0.6, n_other)]),
        'base_hp': np.concatenate([rng.normal(650, 25, n_tank), rng.normal(600, 30, n_other)]),
        'melee': np.concatenate([rng.binomial(1, 0.9, n_tank), rng.binomial(1, 0.5, n_other)]),
    })
    df['win_rate'] = (0.5 + 0.002 * (df['difficulty'] - 2) + rng.normal(0, 0.01, len(df))).clip(0, 1)
    return df

def test_nearest_neighbor_default(synthetic_data):
    """
    Test standard Propensity Score Matching (ATT).
    """
    model = MatchIt(synthetic_data, method='nearest', distance='glm')
    model.fit("treat ~ age + educ")

    assert model.data['propensity_score'] is not None
    assert ((model.propensity_scores > 0) & (model.propensity_scores < 1)).all()
    assert not model.matched_data.empty
    # For ATT, treated weights should be 1
    assert np.all(model.matched_data[model.matched_data['treat']==1]['weights'] == 1.0)

def test_nearest_neighbor_pairs_are_disjoint(synthetic_data):
    model = MatchIt(synthetic_data, method='nearest')
    model.fit("treat ~ age + educ")

    used = [c for controls in model.matched_indices.values() for c in controls]
    assert len(used) == len(set(used))
    # 5 vs 5 at 1:1 leaves nothing unmatched
    assert model.n_unmatched == 0
    assert len(model.matched_data) == 10

def test_mahalanobis_matching(synthetic_data):
    """
    Test Mahalanobis distance (should skip GLM/Propensity Score).
    """
    model = MatchIt(synthetic_data, method='nearest', distance='mahalanobis')
    model.fit("treat ~ age + educ")

    # Check that PS was skipped
    assert model.propensity_scores is None

    # Check that matching still happened
    assert not model.matched_data.empty
    assert 'weights' in model.data.columns
    assert model.data['weights'].sum() > 0

def test_full_matching_uses_every_unit(synthetic_data):
    model = MatchIt(synthetic_data, method='full')
    model.fit("treat ~ age + educ")

    assert (model.weights > 0).all()
    for _, members in model.data.groupby('subclass'):
        assert members['treat'].nunique() == 2

def test_optimal_matching(synthetic_data):
    model = MatchIt(synthetic_data, method='optimal')
    model.fit("treat ~ age + educ")

    assert len(model.matched_indices) == 5
    assert np.allclose(model.weights, 1.0)

def test_subclassification(synthetic_data):
    """
    Test Subclassification (should produce weights but no 'pair' indices).
    """
    # Use fewer subclasses because dataset is tiny (N=10)
    model = MatchIt(synthetic_data, method='subclass', subclass=3)
    model.fit("treat ~ age + educ")

    # Subclassification weights all units (usually), none should be dropped
    # unless bins are empty.
    assert 'weights' in model.data.columns
    assert model.matched_indices == {}

    # Check that we have weights for both groups
    w_treat = model.data.loc[model.data['treat']==1, 'weights']
    w_control = model.data.loc[model.data['treat']==0, 'weights']

    assert w_treat.sum() > 0
    assert w_control.sum() > 0

def test_ate_vs_att_logic(scored_data):
    """
    Test that ATE and ATT produce different weights in Subclassification.
    """
    # 1. Run ATT: cut at the treated median (0.65)
    model_att = MatchIt(scored_data, method='subclass', estimand='ATT', subclass=2,
                        distance=scored_data['score'])
    model_att.fit("treat ~ score")
    weights_att = model_att.weights.copy()

    # 2. Run ATE: cut at the overall median (0.5)
    model_ate = MatchIt(scored_data, method='subclass', estimand='ATE', subclass=2,
                        distance=scored_data['score'])
    model_ate.fit("treat ~ score")
    weights_ate = model_ate.weights.copy()

    # 3. Compare
    # In ATT, treated weights are always 1.0
    assert np.allclose(weights_att[scored_data['treat']==1], 1.0)
    assert np.allclose(weights_att[[0, 1, 3]], 2 / 3)
    assert weights_att[6] == pytest.approx(2.0)

    assert np.allclose(weights_ate[[2, 6]], 2.0)
    assert np.allclose(weights_ate[[4, 5, 7, 0, 1, 3]], 2 / 3)

    is_different = not np.allclose(weights_ate, weights_att)
    assert is_different, "ATE and ATT weights should differ"

def test_discard_both(scored_data):
    model = MatchIt(scored_data, method='nearest', distance=scored_data['score'], discard='both')
    model.fit("treat ~ score")

    # Common support is [0.3, 0.8]
    assert list(model._mask_kept[~model._mask_kept].index) == [0, 1, 7]
    assert (model.weights[[0, 1, 7]] == 0).all()

    sizes = model.summary(print_output=False)['sample_sizes']
    assert sizes.loc['Discarded', 'Control'] == 2
    assert sizes.loc['Discarded', 'Treated'] == 1

def test_summary_output_structure(synthetic_data):
    """
    Test that summary returns the expected dictionary and DataFrame structure.
    """
    model = MatchIt(synthetic_data)
    model.fit("treat ~ age")
    summary = model.summary(print_output=False)

    assert isinstance(summary, dict)
    assert 'matched' in summary
    assert 'unmatched' in summary
    assert 'Std. Mean Diff.' in summary['matched'].columns
    assert list(summary['matched'].index) == ['distance', 'age']
    assert summary['sample_sizes'].loc['All', 'Treated'] == 5

def test_summary_expands_categorical_terms(champions):
    champions['lane'] = np.where(champions['melee'] == 1, 'top', 'mid')
    model = MatchIt(champions, method='full')
    model.fit("tank ~ difficulty + C(lane)")
    summary = model.summary(print_output=False)

    assert 'C(lane)[T.top]' in summary['matched'].index

def test_matching_improves_balance(champions):
    model = MatchIt(champions, method='full')
    model.fit("tank ~ difficulty + base_hp + melee")
    summary = model.summary(print_output=False)

    before = summary['unmatched']['Std. Mean Diff.'].abs()
    after = summary['matched']['Std. Mean Diff.'].abs()
    assert after['distance'] < before['distance']
    assert after.mean() < before.mean()

def test_estimate_effect_from_model(champions):
    model = MatchIt(champions, method='full')
    model.fit("tank ~ difficulty + base_hp + melee")
    est = model.estimate_effect('win_rate', cluster='subclass')

    assert isinstance(est, EffectEstimate)
    assert np.isfinite(est.effect) and np.isfinite(est.std_error)
    assert 0 <= est.p_value <= 1
    assert est.formula == "win_rate ~ tank + difficulty + base_hp + melee"

def test_matching_is_deterministic(champions):
    runs = []
    for _ in range(2):
        model = MatchIt(champions, method='nearest', ratio=2)
        model.fit("tank ~ difficulty + base_hp")
        runs.append((model.matched_indices, model.weights))

    assert runs[0][0] == runs[1][0]
    pd.testing.assert_series_equal(runs[0][1], runs[1][1])

def test_invalid_option_combinations(synthetic_data):
    with pytest.raises(ValueError):
        MatchIt(synthetic_data, method='nearest', estimand='ATE').fit("treat ~ age")
    with pytest.raises(ValueError):
        MatchIt(synthetic_data, method='full', caliper=0.2).fit("treat ~ age")
    with pytest.raises(ValueError):
        MatchIt(synthetic_data, method='optimal', replace=True).fit("treat ~ age")
    with pytest.raises(NotImplementedError):
        MatchIt(synthetic_data, method='cem').fit("treat ~ age")

def test_input_validation(synthetic_data):
    with pytest.raises(ValueError, match="must contain '~'"):
        MatchIt(synthetic_data).fit("treat + age")

    bad = synthetic_data.copy()
    bad.loc[0, 'treat'] = 2
    with pytest.raises(ValueError, match="binary"):
        MatchIt(bad).fit("treat ~ age")

    dup = synthetic_data.copy()
    dup.index = [0] * len(dup)
    with pytest.raises(ValueError, match="unique"):
        MatchIt(dup).fit("treat ~ age")

    missing = synthetic_data.copy()
    missing['age'] = missing['age'].astype(float)
    missing.loc[3, 'age'] = np.nan
    with pytest.raises(MissingDataError):
        MatchIt(missing).fit("treat ~ age")

def test_functional_match_and_balance(scored_data):
    result = match(scored_data, 'treat', distance=scored_data['score'], method='nearest')
    assert result.n_matched == 8

    tables = balance(scored_data, ['score'], 'treat', weights=result.weights)
    assert set(tables) == {'unmatched', 'matched'}
    assert abs(tables['matched'].loc['score', 'Std. Mean Diff.']) <= \
        abs(tables['unmatched'].loc['score', 'Std. Mean Diff.'])

def test_functional_match_checks_options(scored_data):
    with pytest.raises(ValueError, match="ATE"):
        match(scored_data, 'treat', distance=scored_data['score'], method='nearest', estimand='ATE')
    with pytest.raises(ValueError, match="not recognized"):
        match(scored_data, 'treat', distance=scored_data['score'], estimand='ATX')
    with pytest.raises(ValueError, match="caliper"):
        match(scored_data, 'treat', distance=scored_data['score'], method='full', caliper=0.2)
    with pytest.raises(ValueError, match="ratio"):
        match(scored_data, 'treat', distance=scored_data['score'], method='full', ratio=2)

    # Full matching on covariates is allowed
    result = match(scored_data, 'treat', method='full', covariates=['score'], estimand='ATE')
    assert (result.weights > 0).all()

def test_estimate_effect_checks_outcome_range(synthetic_data):
    synthetic_data['win_pct'] = synthetic_data['win_rate'] * 100
    model = MatchIt(synthetic_data, method='nearest')
    model.fit("treat ~ age + educ")

    with pytest.raises(ValueError, match="win_pct"):
        model.estimate_effect('win_pct')

def test_cluster_on_subclass_after_replacement(synthetic_data):
    model = MatchIt(synthetic_data, method='nearest', replace=True)
    model.fit("treat ~ age + educ")

    with pytest.raises(MissingDataError, match="replacement"):
        model.estimate_effect('win_rate', cluster='subclass')
    # Without clustering the same sample still fits
    est = model.estimate_effect('win_rate', covariates=False)
    assert np.isfinite(est.effect)
