# File: src/riftmatch/effect.py

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.stats.power import TTestIndPower

from .exceptions import DegenerateModelError, MissingDataError

logger = logging.getLogger(__name__)


@dataclass
class EffectEstimate:
    """Treatment coefficient from the weighted outcome regression."""
    effect: float
    std_error: float
    t_stat: float
    p_value: float
    conf_int: Tuple[float, float]
    n_obs: int
    formula: str

    def summary(self) -> pd.Series:
        return pd.Series({
            'Estimate': self.effect,
            'Std. Error': self.std_error,
            't value': self.t_stat,
            'Pr(>|t|)': self.p_value,
            'CI Lower': self.conf_int[0],
            'CI Upper': self.conf_int[1],
        })


def estimate_effect(
    matched_data: pd.DataFrame,
    outcome: str,
    treatment: str,
    covariates: Optional[Union[str, List[str]]] = None,
    weights: Optional[str] = "weights",
    cluster: Optional[str] = None,
    alpha: float = 0.05
) -> EffectEstimate:
    """
    Fits a weighted linear regression of `outcome` on `treatment` (plus
    covariates) and tests the treatment coefficient against zero.

    Args:
        matched_data (pd.DataFrame): Matched units, e.g. `MatchIt.matched_data`.
        outcome (str): Outcome column.
        treatment (str): Binary treatment column.
        covariates (str | list): Extra regressors, as a formula fragment or a list of terms.
        weights (str): Column holding matching weights. None for an unweighted fit.
        cluster (str): Column identifying matched sets for cluster-robust errors.
        alpha (float): Level for the confidence interval.

    Returns:
        EffectEstimate: effect, standard error, t statistic, two-sided p-value.

    Raises:
        DegenerateModelError: the fit leaves no residual degrees of freedom.
        MissingDataError: outcome, treatment or cluster values are missing.
    """
    for col in [outcome, treatment] + [c for c in (weights, cluster) if c]:
        if col not in matched_data.columns:
            raise ValueError(f"Column '{col}' not found in matched data.")

    data = matched_data
    if weights:
        data = data[data[weights] > 0]
    if data[[outcome, treatment]].isnull().any().any():
        raise MissingDataError("Outcome or treatment contains missing values (NaN).")
    if cluster and data[cluster].isnull().any():
        raise MissingDataError(
            f"Cluster column '{cluster}' has missing values. Units matched with replacement "
            "belong to no single matched set; fit without `cluster` or supply another grouping."
        )
    data = data.assign(**{treatment: data[treatment].astype(int)})

    # 1. Build the formula
    if isinstance(covariates, (list, tuple)):
        covariates = " + ".join(covariates)
    rhs = treatment if not covariates else f"{treatment} + {covariates}"
    formula = f"{outcome} ~ {rhs}"

    # 2. Fit WLS
    w = data[weights] if weights else np.ones(len(data))
    model = smf.wls(formula, data=data, weights=w)
    if model.df_resid <= 0:
        raise DegenerateModelError(
            f"No residual degrees of freedom ({int(model.nobs)} units for {int(model.rank)} parameters); "
            "the effect cannot be tested."
        )
    if cluster:
        result = model.fit(cov_type="cluster", cov_kwds={"groups": data[cluster].to_numpy()})
    else:
        result = model.fit()

    effect = float(result.params[treatment])
    std_error = float(result.bse[treatment])
    lo, hi = result.conf_int(alpha=alpha).loc[treatment]

    # A perfect fit leaves no residual variance; a zero effect is then certain
    if result.ssr <= 1e-20:
        if np.isclose(effect, 0.0, atol=1e-10):
            t_stat, p_value = 0.0, 1.0
        else:
            t_stat, p_value = math.copysign(np.inf, effect), 0.0
        lo, hi = effect, effect
    else:
        t_stat = float(result.tvalues[treatment])
        p_value = float(result.pvalues[treatment])

    logger.info("Effect of %s on %s: %.4f (SE %.4f, p=%.4g)", treatment, outcome, effect, std_error, p_value)

    return EffectEstimate(
        effect=effect,
        std_error=std_error,
        t_stat=t_stat,
        p_value=p_value,
        conf_int=(float(lo), float(hi)),
        n_obs=int(result.nobs),
        formula=formula,
    )


def required_sample_size(
    min_effect: float,
    sd: float,
    power: float = 0.8,
    alpha: float = 0.05,
    ratio: float = 1.0
) -> int:
    """
    Units needed in the first group of a two-sided, two-sample t-test to
    detect a difference of `min_effect` with outcome standard deviation `sd`.
    The second group needs `ratio` times as many.
    """
    if min_effect == 0 or sd <= 0:
        raise ValueError("min_effect must be non-zero and sd positive.")
    n1 = TTestIndPower().solve_power(
        effect_size=abs(min_effect) / sd,
        power=power,
        alpha=alpha,
        ratio=ratio,
        alternative="two-sided",
    )
    return int(math.ceil(float(np.squeeze(n1))))


def achieved_power(
    n1: int,
    min_effect: float,
    sd: float,
    alpha: float = 0.05,
    ratio: float = 1.0
) -> float:
    """Power of the same test with `n1` units in the first group."""
    if sd <= 0:
        raise ValueError("sd must be positive.")
    return float(TTestIndPower().power(
        effect_size=abs(min_effect) / sd,
        nobs1=n1,
        alpha=alpha,
        ratio=ratio,
        alternative="two-sided",
    ))
