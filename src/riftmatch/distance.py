# File: src/riftmatch/distance.py

import logging
import warnings

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from sklearn.metrics import pairwise_distances
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)
from typing import Optional, Tuple

from .exceptions import DegenerateModelError, MissingDataError, PositivityWarning

logger = logging.getLogger(__name__)

LINKS = ("logit", "probit", "linear.logit", "linear.probit")


def split_formula(formula: str) -> Tuple[str, str]:
    """Splits an R-style formula into (treatment, right-hand side)."""
    if "~" not in formula:
        raise ValueError("Formula must contain '~' separating treatment and covariates.")
    lhs, rhs = formula.split("~", 1)
    return lhs.strip(), rhs.strip()


def design_matrix(data: pd.DataFrame, rhs: str, intercept: bool = True) -> pd.DataFrame:
    """
    Builds the covariate design matrix for the right-hand side of a formula.
    Categorical terms are expanded to dummies by patsy.
    """
    try:
        X = patsy.dmatrix(rhs, data, NA_action="raise", return_type="dataframe")
    except patsy.PatsyError as e:
        if "missing values" in str(e).lower():
            raise MissingDataError(
                "Covariates contain missing values (NaN). Complete data is required; "
                "drop or fill the affected rows first."
            ) from e
        raise ValueError(f"Error parsing formula or data: {str(e)}") from e

    if not intercept and "Intercept" in X.columns:
        X = X.drop(columns=["Intercept"])
    return X


def _family(link: str) -> sm.families.Family:
    if link in ("probit", "linear.probit"):
        return sm.families.Binomial(link=sm.families.links.Probit())
    if link in ("logit", "linear.logit"):
        return sm.families.Binomial(link=sm.families.links.Logit())
    raise ValueError(f"Link '{link}' not recognized. Use one of {LINKS}.")


def estimate_distance(
    data: pd.DataFrame,
    formula: str,
    method: str = "glm",
    link: str = "logit"
) -> Tuple[pd.Series, pd.Series]:
    """
    Estimates propensity scores and the distance measure used for matching.

    Args:
        data (pd.DataFrame): The units, one row each.
        formula (str): R-style formula (e.g., "tank ~ difficulty + C(range_type)").
        method (str): Estimation method. Only 'glm' is supported.
        link (str): 'logit' or 'probit' match on the propensity score itself;
                    'linear.logit' or 'linear.probit' match on the linear predictor.

    Returns:
        Tuple[pd.Series, pd.Series]:
            1. Propensity Scores (fitted probabilities)
            2. Distance Measure (values used for matching)

    Raises:
        MissingDataError: covariates or treatment contain NaN.
        DegenerateModelError: the design is collinear, separated, or the fit
            does not converge.
    """
    if method != "glm":
        raise NotImplementedError(f"Distance method '{method}' not implemented. Use 'glm'.")

    family = _family(link)
    lhs, rhs = split_formula(formula)

    if lhs not in data.columns:
        raise ValueError(f"Treatment variable '{lhs}' not found in dataframe.")
    if data[lhs].isnull().any():
        raise MissingDataError(f"Treatment variable '{lhs}' contains missing values (NaN).")

    # 1. Design matrix and collinearity check
    X = design_matrix(data, rhs)
    y = data[lhs].astype(float)

    rank = np.linalg.matrix_rank(X.to_numpy(dtype=float))
    if rank < X.shape[1]:
        raise DegenerateModelError(
            f"Propensity model design matrix is rank deficient (rank {rank} < {X.shape[1]} columns). "
            "Remove collinear covariates."
        )

    # 2. Fit the GLM, promoting separation / convergence warnings to errors
    with warnings.catch_warnings():
        warnings.simplefilter("error", PerfectSeparationWarning)
        warnings.simplefilter("error", ConvergenceWarning)
        try:
            result = sm.GLM(y, X, family=family).fit()
        except (PerfectSeparationError, PerfectSeparationWarning) as e:
            raise DegenerateModelError(
                "Perfect separation in the propensity model: treatment is fully "
                "determined by the covariates."
            ) from e
        except ConvergenceWarning as e:
            raise DegenerateModelError(f"Propensity model did not converge: {e}") from e
        except np.linalg.LinAlgError as e:
            raise DegenerateModelError(f"Failed to fit propensity score model: {e}") from e

    if not getattr(result, "converged", True):
        raise DegenerateModelError("Propensity model did not converge.")
    if np.allclose(np.asarray(result.fittedvalues), y.to_numpy(), atol=1e-6):
        raise DegenerateModelError(
            "Perfect separation in the propensity model: treatment is fully "
            "determined by the covariates."
        )

    # 3. Extract values
    propensity_scores = pd.Series(np.asarray(result.fittedvalues), index=data.index, name="propensity_score")
    linear_predictor = pd.Series(X.to_numpy(dtype=float) @ result.params.to_numpy(), index=data.index)

    if link.startswith("linear."):
        distance_measure = linear_predictor
    else:
        distance_measure = propensity_scores.copy()
    distance_measure.name = "distance"

    check_positivity(propensity_scores)
    logger.info("Fitted %s propensity model on %d units.", link, len(data))

    return propensity_scores, distance_measure


def fit_propensity(data: pd.DataFrame, formula: str, link: str = "logit") -> pd.Series:
    """Fits the propensity model and returns one score per unit."""
    scores, _ = estimate_distance(data, formula, method="glm", link=link)
    return scores


def check_positivity(scores: pd.Series, tol: float = 1e-8) -> pd.Index:
    """
    Returns the index of units whose score is not strictly inside (0, 1),
    allowing `tol` for floating point. Emits a PositivityWarning if any exist.
    """
    scores = pd.Series(scores)
    bad = ~((scores >= tol) & (scores <= 1 - tol))
    offenders = scores.index[bad.to_numpy()]
    if len(offenders) > 0:
        warnings.warn(
            f"{len(offenders)} propensity scores are at 0 or 1; positivity is violated.",
            PositivityWarning,
            stacklevel=2,
        )
    return offenders


def mahalanobis_distance_matrix(
    x_focal: np.ndarray,
    x_other: np.ndarray,
    cov: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Pairwise Mahalanobis distances between two covariate blocks.
    `cov` defaults to the covariance of the stacked blocks.
    """
    x_focal = np.asarray(x_focal, dtype=float)
    x_other = np.asarray(x_other, dtype=float)
    if cov is None:
        cov = np.atleast_2d(np.cov(np.vstack([x_focal, x_other]), rowvar=False))
    # pinv keeps constant columns from blowing up the inverse
    VI = np.linalg.pinv(cov)
    return pairwise_distances(x_focal, x_other, metric="mahalanobis", VI=VI)
