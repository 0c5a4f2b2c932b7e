# File: src/riftmatch/diagnostics.py

import logging
import warnings

import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Tuple

from .exceptions import BalanceWarning

logger = logging.getLogger(__name__)

STD_DENOMINATORS = ("pooled", "treated", "control", "estimand")


def compute_weighted_stats(x: np.ndarray, weights: np.ndarray) -> dict:
    """
    Computes weighted mean and variance.
    """
    if len(x) == 0 or np.sum(weights) == 0:
        return {'mean': np.nan, 'var': np.nan, 'std': np.nan}

    # Weighted Mean
    weighted_mean = np.average(x, weights=weights)

    # Weighted Variance (Reliability weights)
    numerator = np.sum(weights * (x - weighted_mean)**2)
    denominator = np.sum(weights) - np.sum(weights**2) / np.sum(weights)

    if denominator <= 0:
        weighted_var = 0.0
    else:
        weighted_var = numerator / denominator

    return {
        'mean': weighted_mean,
        'var': weighted_var,
        'std': np.sqrt(weighted_var)
    }


def weighted_ecdf_stats(x_t: np.ndarray, w_t: np.ndarray, x_c: np.ndarray, w_c: np.ndarray) -> Tuple[float, float]:
    """
    Mean and max absolute difference between the weighted empirical CDFs of
    the two groups, evaluated at every observed value.
    """
    keep_t, keep_c = w_t > 0, w_c > 0
    x_t, w_t, x_c, w_c = x_t[keep_t], w_t[keep_t], x_c[keep_c], w_c[keep_c]
    if len(x_t) == 0 or len(x_c) == 0:
        return np.nan, np.nan

    grid = np.unique(np.concatenate([x_t, x_c]))

    def ecdf(x, w):
        order = np.argsort(x, kind="stable")
        cum = np.cumsum(w[order]) / np.sum(w)
        pos = np.searchsorted(x[order], grid, side="right")
        return np.where(pos > 0, cum[np.maximum(pos - 1, 0)], 0.0)

    diff = np.abs(ecdf(x_t, w_t) - ecdf(x_c, w_c))
    return float(diff.mean()), float(diff.max())


def covariate_balance(
    data: pd.DataFrame,
    covariates: list,
    treatment_col: str,
    weights: Optional[pd.Series] = None
) -> pd.DataFrame:
    """
    Calculates raw stats (Means, Variance Ratios, eCDF) for the provided data/weights.
    SMD is calculated separately in create_summary_table.
    """
    if weights is None:
        weights = pd.Series(1.0, index=data.index)

    rows = []

    treated_mask = (data[treatment_col] == 1)
    control_mask = (data[treatment_col] == 0)

    for cov in covariates:
        # Extract data
        x_treat = data.loc[treated_mask, cov].to_numpy(dtype=float)
        w_treat = weights.loc[treated_mask].to_numpy(dtype=float)

        x_ctrl = data.loc[control_mask, cov].to_numpy(dtype=float)
        w_ctrl = weights.loc[control_mask].to_numpy(dtype=float)

        # Compute Weighted Stats
        stats_t = compute_weighted_stats(x_treat, w_treat)
        stats_c = compute_weighted_stats(x_ctrl, w_ctrl)

        # Raw Difference
        mean_diff = stats_t['mean'] - stats_c['mean']

        # Variance Ratio
        var_ratio = stats_t['var'] / stats_c['var'] if stats_c['var'] > 1e-9 else np.nan

        ecdf_mean, ecdf_max = weighted_ecdf_stats(x_treat, w_treat, x_ctrl, w_ctrl)

        rows.append({
            'Covariate': cov,
            'Means Treated': stats_t['mean'],
            'Means Control': stats_c['mean'],
            'Mean Diff': mean_diff,
            'Var Ratio': var_ratio,
            'eCDF Mean': ecdf_mean,
            'eCDF Max': ecdf_max,
        })

    return pd.DataFrame(rows).set_index('Covariate')


def standardization_factors(
    data: pd.DataFrame,
    covariates: list,
    treatment_col: str,
    estimand: str = "ATT",
    std_denominator: str = "pooled"
) -> Dict[str, float]:
    """
    Standard deviations used to scale mean differences, always taken from the
    unweighted (pre-matching) data so both tables share one scale.
    """
    if std_denominator not in STD_DENOMINATORS:
        raise ValueError(f"std_denominator '{std_denominator}' not recognized. Use one of {STD_DENOMINATORS}.")

    if std_denominator == "estimand":
        std_denominator = {"ATT": "treated", "ATC": "control"}.get(estimand, "pooled")

    treated = data[data[treatment_col] == 1]
    control = data[data[treatment_col] == 0]

    factors = {}
    for cov in covariates:
        if std_denominator == "treated":
            factors[cov] = treated[cov].std()
        elif std_denominator == "control":
            factors[cov] = control[cov].std()
        else:
            # sqrt((var_t + var_c) / 2)
            factors[cov] = np.sqrt((treated[cov].var() + control[cov].var()) / 2)
    return factors


def create_summary_table(
    original_data: pd.DataFrame,
    covariates: list,
    treatment_col: str,
    weights: pd.Series,
    estimand: str = "ATT",
    std_denominator: str = "pooled"
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Generates the balance tables for all data and for the matched data.
    """
    # 1. Unmatched Balance (All Data, weights=1)
    unmatched_balance = covariate_balance(
        original_data, covariates, treatment_col, weights=None
    )

    # 2. Matched Balance (weights align to the full data, 0 outside the sample)
    weights_aligned = weights.reindex(original_data.index).fillna(0)

    matched_balance = covariate_balance(
        original_data, covariates, treatment_col, weights=weights_aligned
    )

    # 3. SMD = (Mean_T_weighted - Mean_C_weighted) / Original_Std_Dev_Factor
    std_factors = standardization_factors(original_data, covariates, treatment_col, estimand, std_denominator)

    for table in (unmatched_balance, matched_balance):
        table['Std. Mean Diff.'] = [
            row['Mean Diff'] / std_factors[idx] if std_factors[idx] > 0 else np.nan
            for idx, row in table.iterrows()
        ]

    return unmatched_balance, matched_balance


def sample_sizes(
    treatment: pd.Series,
    weights: pd.Series,
    kept_mask: Optional[pd.Series] = None
) -> pd.DataFrame:
    """
    Counts of units per group: all, matched (weight > 0), unmatched and
    discarded by the common-support rule.
    """
    if kept_mask is None:
        kept_mask = pd.Series(True, index=treatment.index)
    weights = weights.reindex(treatment.index).fillna(0)

    table = {}
    for label, value in (("Control", 0), ("Treated", 1)):
        group = treatment == value
        matched = int((group & (weights > 0)).sum())
        discarded = int((group & ~kept_mask).sum())
        table[label] = {
            'All': int(group.sum()),
            'Matched': matched,
            'Unmatched': int(group.sum()) - matched - discarded,
            'Discarded': discarded,
        }
    return pd.DataFrame(table)


def flag_balance_worsening(
    unmatched: pd.DataFrame,
    matched: pd.DataFrame,
    tol: float = 1e-12
) -> List[str]:
    """
    Lists covariates whose absolute SMD grew after matching.
    Emits a BalanceWarning if there are any; never raises.
    """
    before = unmatched['Std. Mean Diff.'].abs()
    after = matched['Std. Mean Diff.'].abs().reindex(before.index)
    worse = after > before + tol
    flagged = list(before.index[worse.to_numpy()])

    if flagged:
        logger.info("Balance worsened after matching for: %s", ", ".join(flagged))
        warnings.warn(
            f"Matching increased the absolute standardized mean difference for: {', '.join(flagged)}",
            BalanceWarning,
            stacklevel=2,
        )
    return flagged
