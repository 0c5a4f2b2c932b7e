# File: src/riftmatch/core.py

import logging
import warnings

import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Union

from .data import validate_units
from .diagnostics import create_summary_table, flag_balance_worsening, sample_sizes, STD_DENOMINATORS
from .distance import LINKS, design_matrix, estimate_distance, split_formula
from .effect import EffectEstimate, estimate_effect
from .exceptions import MissingDataError
from .matchers import MatchResult, check_options, get_matcher

logger = logging.getLogger(__name__)

DISCARD_OPTIONS = ("none", "treated", "control", "both")


class MatchIt:
    """
    Propensity score matching in the style of R's MatchIt.

    Typical use:
        m = MatchIt(champions, method="full", estimand="ATE")
        m.fit("tank ~ difficulty + C(range_type)")
        m.summary()
        m.estimate_effect("win_rate")
    """

    def __init__(
        self,
        data: pd.DataFrame,
        method: str = "nearest",
        distance: Union[str, pd.Series, np.ndarray] = "glm",
        link: str = "logit",
        replace: bool = False,
        caliper: Optional[float] = None,
        ratio: int = 1,
        estimand: str = "ATT",
        subclass: int = 6,
        discard: str = "none",
        m_order: Optional[str] = None,
        std_denominator: str = "pooled"
    ):
        """
        Initialize the matching configuration.

        `distance` is 'glm' (fit a propensity model), 'mahalanobis' (match on
        the covariates directly) or a precomputed score per row of `data`.
        """
        self.data = data.copy()
        self.method = method
        self.distance = distance
        self.link = link
        self.replace = replace
        self.caliper = caliper
        self.ratio = ratio
        self.estimand = estimand
        self.subclass = subclass
        self.discard = discard
        self.m_order = m_order
        self.std_denominator = std_denominator

        # Storage for results
        self.formula = None
        self.propensity_scores = None
        self.distance_measure = None
        self.matched_data = None
        self.matched_indices = None
        self.weights = None
        self.subclasses = None
        self.n_unmatched = 0
        self._treatment_col = None
        self._rhs = None

        self._mask_kept = None

    @property
    def _is_mahalanobis(self) -> bool:
        return isinstance(self.distance, str) and self.distance == "mahalanobis"

    def fit(self, formula: str):
        self.formula = formula

        # 1. Input and option validation
        self._validate_options()
        self._validate_inputs(formula)

        # 2. Estimate Distance
        if self._is_mahalanobis:
            self.propensity_scores = None
            self.distance_measure = None
            logger.info("Distance 'mahalanobis' selected. Skipping propensity score estimation.")
        elif isinstance(self.distance, str):
            self.propensity_scores, self.distance_measure = estimate_distance(
                data=self.data,
                formula=formula,
                method=self.distance,
                link=self.link
            )
        else:
            self.distance_measure = self._user_distance(self.distance)
            self.propensity_scores = self.distance_measure.copy()

        if self.propensity_scores is not None:
            self.data['propensity_score'] = self.propensity_scores
            self.data['distance_measure'] = self.distance_measure

        # 3. Apply Common Support / Discard Logic
        if self.discard != "none" and self.distance_measure is not None:
            self._apply_discard_logic()
        else:
            self._mask_kept = pd.Series(True, index=self.data.index)

        # 4. Match
        self._match()
        return self

    def _validate_options(self):
        """Rejects unknown values and option combinations that have no meaning."""
        check_options(
            method=self.method,
            estimand=self.estimand,
            ratio=self.ratio,
            replace=self.replace,
            caliper=self.caliper,
            mahalanobis=self._is_mahalanobis,
            subclass=self.subclass,
            m_order=self.m_order,
        )
        if self.link not in LINKS:
            raise ValueError(f"Link '{self.link}' not recognized. Use one of {LINKS}.")
        if self.discard not in DISCARD_OPTIONS:
            raise ValueError(f"Discard option '{self.discard}' not recognized.")
        if self.std_denominator not in STD_DENOMINATORS:
            raise ValueError(f"std_denominator '{self.std_denominator}' not recognized.")

    def _validate_inputs(self, formula: str):
        """
        Performs rigorous checks on the input data and formula.
        """
        lhs, rhs = split_formula(formula)

        if lhs not in self.data.columns:
            raise ValueError(f"Treatment variable '{lhs}' not found in dataframe.")
        self._treatment_col = lhs
        self._rhs = rhs

        if self.data[lhs].isnull().any():
            raise MissingDataError(f"Treatment variable '{lhs}' contains missing values (NaN). Please drop or impute them.")

        # Unique index and strictly binary treatment
        validate_units(self.data, lhs)
        self.data[lhs] = self.data[lhs].astype(int)

        # Only the columns in the model need to be complete
        design_matrix(self.data, rhs)

    def _user_distance(self, values) -> pd.Series:
        if isinstance(values, pd.Series):
            dist = values.reindex(self.data.index)
        else:
            values = np.asarray(values, dtype=float)
            if values.shape != (len(self.data),):
                raise ValueError("A numeric distance must have one value per row of data.")
            dist = pd.Series(values, index=self.data.index)
        if dist.isnull().any():
            raise MissingDataError("The supplied distance contains missing values.")
        return dist.astype(float).rename("distance")

    def _apply_discard_logic(self):
        treat_mask = (self.data[self._treatment_col] == 1)
        control_mask = (self.data[self._treatment_col] == 0)

        scores = self.distance_measure

        t_min, t_max = scores[treat_mask].min(), scores[treat_mask].max()
        c_min, c_max = scores[control_mask].min(), scores[control_mask].max()

        keep_mask = pd.Series(True, index=self.data.index)

        if self.discard == "treated":
            cond_discard = treat_mask & ((scores < c_min) | (scores > c_max))
        elif self.discard == "control":
            cond_discard = control_mask & ((scores < t_min) | (scores > t_max))
        else:
            common_min = max(t_min, c_min)
            common_max = min(t_max, c_max)
            cond_discard = (scores < common_min) | (scores > common_max)
        keep_mask[cond_discard] = False

        n_dropped = int((~keep_mask).sum())
        if n_dropped > 0:
            logger.info("Discarding %d units outside common support (%s).", n_dropped, self.discard)
        self._mask_kept = keep_mask

    def _covariate_frame(self) -> pd.DataFrame:
        return design_matrix(self.data, self._rhs, intercept=False)

    def _match(self):
        logger.info("Performing %s matching (%s)...", self.method, self.estimand)

        matcher = get_matcher(
            method=self.method,
            ratio=self.ratio,
            replace=self.replace,
            caliper=self.caliper,
            mahalanobis=self._is_mahalanobis,
            subclass=self.subclass,
            m_order=self.m_order,
        )

        X_data = self._covariate_frame()

        # Apply discard mask (common support)
        kept = self._mask_kept
        active_treat = self.data.loc[kept, self._treatment_col]
        active_dist = self.distance_measure[kept] if self.distance_measure is not None else None
        active_covs = X_data.loc[kept]

        result = matcher.match(
            treatment=active_treat,
            distance_measure=active_dist,
            covariates=active_covs,
            estimand=self.estimand
        )

        self.matched_indices = result.matches
        self.n_unmatched = result.n_unmatched

        # Reassemble weights for full dataset
        self.weights = result.weights.reindex(self.data.index).fillna(0.0)
        self.subclasses = result.subclass.reindex(self.data.index)

        self.data['weights'] = self.weights
        self.data['subclass'] = self.subclasses
        self.matched_data = self.data[self.data['weights'] > 0].copy()

        n_matched = len(self.matched_data)
        logger.info("Matching complete. %d observations in matched set.", n_matched)

        if n_matched == 0:
            warnings.warn(
                f"No matches were found with '{self.method}' matching; "
                "the caliper or common-support rule may exclude all units."
            )

    def summary(self, print_output: bool = True) -> Dict[str, pd.DataFrame]:
        if self.matched_data is None:
            raise ValueError("You must run .fit() before .summary()")

        X = self._covariate_frame()
        covariates = list(X.columns)
        frame = X.copy()
        frame[self._treatment_col] = self.data[self._treatment_col]
        if self.distance_measure is not None:
            frame.insert(0, 'distance', self.distance_measure)

        unmatched, matched = create_summary_table(
            original_data=frame,
            covariates=list(frame.columns.drop(self._treatment_col)),
            treatment_col=self._treatment_col,
            weights=self.weights,
            estimand=self.estimand,
            std_denominator=self.std_denominator
        )
        sizes = sample_sizes(self.data[self._treatment_col], self.weights, self._mask_kept)

        flag_balance_worsening(unmatched.loc[covariates], matched.loc[covariates])

        if print_output:
            cols = ['Means Treated', 'Means Control', 'Std. Mean Diff.', 'Var Ratio', 'eCDF Mean', 'eCDF Max']
            print("\nSummary of Balance for All Data:")
            print(unmatched[cols])
            print("\nSummary of Balance for Matched Data:")
            print(matched[cols])
            print("\nSample Sizes:")
            print(sizes)

        return {'unmatched': unmatched, 'matched': matched, 'sample_sizes': sizes}

    def estimate_effect(
        self,
        outcome: str,
        covariates: Union[bool, str, List[str]] = True,
        cluster: Optional[str] = None,
        alpha: float = 0.05
    ) -> EffectEstimate:
        """
        Weighted outcome regression on the matched sample. With
        `covariates=True` the matching formula's covariates are adjusted for.
        """
        if self.matched_data is None:
            raise ValueError("You must run .fit() before .estimate_effect()")
        if outcome not in self.matched_data.columns:
            raise ValueError(f"Outcome '{outcome}' not found in data.")
        validate_units(self.matched_data, self._treatment_col, outcome=outcome)

        if covariates is True:
            covariates = self._rhs
        elif covariates is False:
            covariates = None

        return estimate_effect(
            self.matched_data,
            outcome=outcome,
            treatment=self._treatment_col,
            covariates=covariates,
            weights='weights',
            cluster=cluster,
            alpha=alpha
        )


def match(
    data: pd.DataFrame,
    treatment: str,
    distance: Optional[Union[pd.Series, np.ndarray]] = None,
    method: str = "nearest",
    covariates: Optional[List[str]] = None,
    estimand: str = "ATT",
    **options
) -> MatchResult:
    """
    Matches units on precomputed scores, or on `covariates` (Mahalanobis)
    when no scores are given. `options` are forwarded to the matcher
    (ratio, replace, caliper, subclass, m_order).
    Option combinations are checked the same way as in `MatchIt.fit`.
    """
    validate_units(data, treatment)
    treat = data[treatment].astype(int)

    if distance is not None:
        dist = distance.reindex(data.index) if isinstance(distance, pd.Series) \
            else pd.Series(np.asarray(distance, dtype=float), index=data.index)
        covs = None
    else:
        if not covariates:
            raise ValueError("Provide either a distance or covariates to match on.")
        dist = None
        covs = data[covariates].astype(float)

    check_options(method=method, estimand=estimand, mahalanobis=dist is None, **options)
    matcher = get_matcher(method=method, mahalanobis=dist is None, **options)
    return matcher.match(treatment=treat, distance_measure=dist, covariates=covs, estimand=estimand)


def balance(
    data: pd.DataFrame,
    covariates: List[str],
    treatment: str,
    weights: Optional[pd.Series] = None,
    estimand: str = "ATT",
    std_denominator: str = "pooled"
) -> Dict[str, pd.DataFrame]:
    """Balance tables before and after weighting, keyed 'unmatched' and 'matched'."""
    if weights is None:
        weights = pd.Series(1.0, index=data.index)
    unmatched, matched = create_summary_table(
        data, covariates, treatment, weights, estimand=estimand, std_denominator=std_denominator
    )
    return {'unmatched': unmatched, 'matched': matched}
