# File: src/riftmatch/matchers.py

import logging
import warnings
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional

import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .distance import mahalanobis_distance_matrix
from .exceptions import InfeasibleMatchingError

logger = logging.getLogger(__name__)

METHODS = ("nearest", "optimal", "full", "subclass")
ESTIMANDS = ("ATT", "ATC", "ATE")
M_ORDERS = ("largest", "smallest", "data")


@dataclass
class MatchResult:
    """Output of a matcher, aligned to the units it was given."""
    weights: pd.Series
    subclass: pd.Series
    matches: Dict[Hashable, List[Hashable]] = field(default_factory=dict)
    n_unmatched: int = 0

    @property
    def n_matched(self) -> int:
        return int((self.weights > 0).sum())


def weights_from_subclass(treatment: pd.Series, subclass: pd.Series, estimand: str = "ATT") -> pd.Series:
    """
    Converts matched-set membership into unit weights.

    ATT: treated get 1, controls get n_t / n_c of their set.
    ATC: controls get 1, treated get n_c / n_t of their set.
    ATE: treated get n / n_t, controls get n / n_c.
    Non-unit weights are rescaled per group to sum to that group's matched count.
    """
    weights = pd.Series(0.0, index=treatment.index)
    in_set = subclass.notna()

    for _, members in treatment[in_set].groupby(subclass[in_set]):
        treated = members.index[members == 1]
        control = members.index[members == 0]
        n_t, n_c, n = len(treated), len(control), len(members)
        if n_t == 0 or n_c == 0:
            raise InfeasibleMatchingError("Matched set without both treated and control units.")

        if estimand == "ATT":
            weights.loc[treated] = 1.0
            weights.loc[control] = n_t / n_c
        elif estimand == "ATC":
            weights.loc[control] = 1.0
            weights.loc[treated] = n_c / n_t
        elif estimand == "ATE":
            weights.loc[treated] = n / n_t
            weights.loc[control] = n / n_c
        else:
            raise ValueError(f"Estimand '{estimand}' not recognized.")

    rescale = {"ATT": (0,), "ATC": (1,), "ATE": (0, 1)}[estimand]
    for group in rescale:
        mask = in_set & (treatment == group)
        total = weights[mask].sum()
        if total > 0:
            weights[mask] *= mask.sum() / total

    return weights


class BaseMatcher(ABC):
    """
    Abstract Base Class for all matching algorithms.
    Enforces a consistent interface for the MatchIt core.
    """

    def __init__(self, ratio: int = 1, replace: bool = False, caliper: Optional[float] = None,
                 mahalanobis: bool = False):
        self.ratio = ratio
        self.replace = replace
        self.caliper = caliper
        self.mahalanobis = mahalanobis

    @abstractmethod
    def match(self,
              treatment: pd.Series,
              distance_measure: Optional[pd.Series],
              covariates: Optional[pd.DataFrame] = None,
              estimand: str = "ATT"
              ) -> MatchResult:
        """
        Execute the matching logic on the units in `treatment.index`.
        """

    @staticmethod
    def _split(treatment: pd.Series, focal_value: int):
        focal_idx = treatment.index[(treatment == focal_value).to_numpy()]
        other_idx = treatment.index[(treatment != focal_value).to_numpy()]
        if len(focal_idx) == 0 or len(other_idx) == 0:
            raise InfeasibleMatchingError("Both treated and control units are required for matching.")
        return focal_idx, other_idx

    def _distances(self, focal_idx, other_idx, distance_measure, covariates) -> np.ndarray:
        """Pairwise distance matrix, focal units in rows."""
        if self.mahalanobis:
            if covariates is None:
                raise ValueError("Mahalanobis matching requires covariates.")
            return mahalanobis_distance_matrix(covariates.loc[focal_idx].to_numpy(),
                                               covariates.loc[other_idx].to_numpy())
        d_focal = distance_measure.loc[focal_idx].to_numpy(dtype=float)
        d_other = distance_measure.loc[other_idx].to_numpy(dtype=float)
        return np.abs(d_focal[:, None] - d_other[None, :])

    def _threshold(self, distance_measure) -> float:
        if self.caliper is None:
            return np.inf
        return self.caliper * float(distance_measure.std())

    def _build_result(self, matches: Dict[Hashable, List[Hashable]], treatment: pd.Series,
                      n_focal: int) -> MatchResult:
        """
        Shared helper for pair-based methods: weights and set ids from the match map.
        """
        weights = pd.Series(0.0, index=treatment.index)
        subclass = pd.Series(np.nan, index=treatment.index)

        # Each matched unit carries 1 / (set size) for every set it appears in
        usage = defaultdict(float)
        for f_idx, o_list in matches.items():
            weights.loc[f_idx] = 1.0
            for o_idx in o_list:
                usage[o_idx] += 1.0 / len(o_list)

        if usage:
            scale = len(usage) / sum(usage.values())
            for o_idx, w in usage.items():
                weights.loc[o_idx] = w * scale

        # Set ids only make sense when no unit sits in two sets
        if not self.replace:
            position = {idx: pos for pos, idx in enumerate(treatment.index)}
            for set_id, f_idx in enumerate(sorted(matches, key=position.get), start=1):
                subclass.loc[f_idx] = set_id
                subclass.loc[matches[f_idx]] = set_id

        n_unmatched = n_focal - len(matches)
        if n_unmatched > 0:
            logger.info("%d focal units could not be matched and were dropped.", n_unmatched)
            warnings.warn(f"{n_unmatched} focal units were left unmatched and dropped from the matched sample.")

        return MatchResult(weights=weights, subclass=subclass, matches=matches, n_unmatched=n_unmatched)


class NearestNeighborMatcher(BaseMatcher):
    """
    Greedy nearest-neighbor matching.

    Focal units (treated for ATT, control for ATC) are visited in `m_order`;
    each takes the `ratio` closest units still available. Ties go to the unit
    that comes first in the data.
    """

    def __init__(self, ratio: int = 1, replace: bool = False, caliper: Optional[float] = None,
                 mahalanobis: bool = False, m_order: Optional[str] = None):
        super().__init__(ratio=ratio, replace=replace, caliper=caliper, mahalanobis=mahalanobis)
        if m_order is None:
            m_order = "data" if mahalanobis else "largest"
        if m_order not in M_ORDERS:
            raise ValueError(f"m_order '{m_order}' not recognized. Use one of {M_ORDERS}.")
        self.m_order = m_order

    def match(self,
              treatment: pd.Series,
              distance_measure: Optional[pd.Series],
              covariates: Optional[pd.DataFrame] = None,
              estimand: str = "ATT"
              ) -> MatchResult:

        # 1. Split Data
        focal_value = 0 if estimand == "ATC" else 1
        focal_idx, other_idx = self._split(treatment, focal_value)

        D = self._distances(focal_idx, other_idx, distance_measure, covariates)
        threshold = self._threshold(distance_measure) if distance_measure is not None else np.inf
        order = self._focal_order(focal_idx, distance_measure)

        # 2. Execute Matching Strategy
        if self.replace:
            matches = self._match_with_replacement(D, order, focal_idx, other_idx, threshold)
        else:
            matches = self._match_without_replacement(D, order, focal_idx, other_idx, threshold)

        # 3. Weights
        return self._build_result(matches, treatment, len(focal_idx))

    def _focal_order(self, focal_idx, distance_measure) -> np.ndarray:
        if self.m_order == "data" or distance_measure is None:
            return np.arange(len(focal_idx))
        values = distance_measure.loc[focal_idx].to_numpy(dtype=float)
        if self.m_order == "largest":
            return np.argsort(-values, kind="stable")
        return np.argsort(values, kind="stable")

    def _match_with_replacement(self, D, order, focal_idx, other_idx, threshold):
        matches = {}
        for i in order:
            nearest = np.argsort(D[i], kind="stable")[:self.ratio]
            found = [other_idx[j] for j in nearest if D[i, j] <= threshold]
            if found:
                matches[focal_idx[i]] = found
        return matches

    def _match_without_replacement(self, D, order, focal_idx, other_idx, threshold):
        available = np.ones(len(other_idx), dtype=bool)
        matches = {}

        for i in order:
            if not available.any():
                break
            found = []
            for _ in range(self.ratio):
                row = np.where(available, D[i], np.inf)
                j = int(np.argmin(row))
                if not available[j] or row[j] > threshold:
                    break
                found.append(other_idx[j])
                available[j] = False

            # Keep partial matches
            if found:
                matches[focal_idx[i]] = found

        return matches


class OptimalMatcher(BaseMatcher):
    """
    Optimal 1:k pair matching.

    Minimizes the summed distance over all pairs at once by solving a
    bipartite assignment problem in which every focal unit appears `ratio`
    times. Every focal unit must be able to receive its `ratio` matches.
    """

    # Cost assigned to pairs outside the caliper so the solver avoids them
    _PENALTY = 1e12

    def match(self,
              treatment: pd.Series,
              distance_measure: Optional[pd.Series],
              covariates: Optional[pd.DataFrame] = None,
              estimand: str = "ATT"
              ) -> MatchResult:

        focal_value = 0 if estimand == "ATC" else 1
        focal_idx, other_idx = self._split(treatment, focal_value)

        D = self._distances(focal_idx, other_idx, distance_measure, covariates)
        threshold = self._threshold(distance_measure) if distance_measure is not None else np.inf

        if len(other_idx) < self.ratio * len(focal_idx):
            raise InfeasibleMatchingError(
                f"Optimal {self.ratio}:1 matching needs {self.ratio * len(focal_idx)} candidates "
                f"for {len(focal_idx)} focal units; only {len(other_idx)} available."
            )

        cost = np.repeat(D, self.ratio, axis=0)
        cost = np.where(cost <= threshold, cost, self._PENALTY)
        rows, cols = linear_sum_assignment(cost)

        found = defaultdict(list)
        for r, c in sorted(zip(rows, cols)):
            i = r // self.ratio
            if D[i, c] <= threshold:
                found[i].append(c)

        matches = {
            focal_idx[i]: [other_idx[c] for c in sorted(found[i])]
            for i in sorted(found)
        }
        return self._build_result(matches, treatment, len(focal_idx))


class FullMatcher(BaseMatcher):
    """
    Optimal full matching.

    Every unit is placed in exactly one matched set, each set holding at
    least one treated and one control unit, so that the summed distance
    between matched units is minimal. The optimal partition is a minimum
    weight edge cover of the treated/control graph: a minimum-cost
    assignment on the reduced costs d(i, j) - min_i - min_j plus, for every
    unit left uncovered, the edge to its nearest counterpart.
    """

    def match(self,
              treatment: pd.Series,
              distance_measure: Optional[pd.Series],
              covariates: Optional[pd.DataFrame] = None,
              estimand: str = "ATT"
              ) -> MatchResult:

        treated_idx, control_idx = self._split(treatment, 1)
        D = self._distances(treated_idx, control_idx, distance_measure, covariates)
        n_t, n_c = D.shape

        # 1. Assignment on reduced costs
        min_t = D.min(axis=1)
        min_c = D.min(axis=0)
        reduced = D - min_t[:, None] - min_c[None, :]
        rows, cols = linear_sum_assignment(np.minimum(reduced, 0.0))

        edges = [(i, j) for i, j in zip(rows, cols) if reduced[i, j] < 0]
        covered_t = {i for i, _ in edges}
        covered_c = {j for _, j in edges}

        # 2. Cover the rest with their cheapest edge (first in data order on ties)
        edges += [(i, int(np.argmin(D[i]))) for i in range(n_t) if i not in covered_t]
        edges += [(int(np.argmin(D[:, j])), j) for j in range(n_c) if j not in covered_c]

        # 3. Matched sets are the connected components of the cover
        src = [i for i, _ in edges]
        dst = [n_t + j for _, j in edges]
        graph = coo_matrix((np.ones(len(edges)), (src, dst)), shape=(n_t + n_c, n_t + n_c))
        _, labels = connected_components(graph, directed=False)

        node_index = list(treated_idx) + list(control_idx)
        component = pd.Series(labels, index=node_index).reindex(treatment.index)

        # Number sets by the first unit of each in data order
        first_seen = {}
        for label in component:
            first_seen.setdefault(label, len(first_seen) + 1)
        subclass = component.map(first_seen).astype(float)

        logger.info("Full matching formed %d matched sets.", len(first_seen))

        weights = weights_from_subclass(treatment, subclass, estimand)
        return MatchResult(weights=weights, subclass=subclass)


class SubclassMatcher(BaseMatcher):
    """
    Subclassification on the distance measure.

    Cut points are quantiles of the distance among treated units (ATT),
    control units (ATC) or all units (ATE). Subclasses missing either group
    are merged into their neighbor.
    """

    def __init__(self, n_subclasses: int = 6):
        super().__init__()
        if n_subclasses < 1:
            raise ValueError("Number of subclasses must be at least 1.")
        self.n_subclasses = n_subclasses

    def match(self,
              treatment: pd.Series,
              distance_measure: Optional[pd.Series],
              covariates: Optional[pd.DataFrame] = None,
              estimand: str = "ATT"
              ) -> MatchResult:

        if distance_measure is None:
            raise ValueError("Subclassification requires a scalar distance measure.")
        self._split(treatment, 1)

        d = distance_measure.loc[treatment.index].to_numpy(dtype=float)
        treated = (treatment == 1).to_numpy()

        # 1. Cut points
        if estimand == "ATT":
            reference = d[treated]
        elif estimand == "ATC":
            reference = d[~treated]
        else:
            reference = d
        probs = np.linspace(0, 1, self.n_subclasses + 1)[1:-1]
        cuts = np.unique(np.quantile(reference, probs))
        bins = np.searchsorted(cuts, d, side="right")

        # 2. Merge subclasses lacking treated or control units
        groups = [[b] for b in np.unique(bins)]

        def has_both(group):
            members = np.isin(bins, group)
            return treated[members].any() and (~treated[members]).any()

        while len(groups) > 1:
            bad = next((k for k, g in enumerate(groups) if not has_both(g)), None)
            if bad is None:
                break
            target = bad + 1 if bad + 1 < len(groups) else bad - 1
            lo, hi = sorted((bad, target))
            groups[lo] = groups[lo] + groups[hi]
            del groups[hi]

        if not has_both(groups[0]):
            raise InfeasibleMatchingError("No subclass contains both treated and control units.")

        n_merged = len(np.unique(bins)) - len(groups)
        if n_merged > 0:
            logger.info("Merged %d subclasses lacking treated or control units.", n_merged)

        labels = np.empty(len(d), dtype=float)
        for set_id, group in enumerate(groups, start=1):
            labels[np.isin(bins, group)] = set_id
        subclass = pd.Series(labels, index=treatment.index)

        weights = weights_from_subclass(treatment, subclass, estimand)
        return MatchResult(weights=weights, subclass=subclass)


def get_matcher(method: str = "nearest", ratio: int = 1, replace: bool = False,
                caliper: Optional[float] = None, mahalanobis: bool = False,
                subclass: int = 6, m_order: Optional[str] = None) -> BaseMatcher:
    """Builds the matcher for `method` from the shared options."""
    if method == "nearest":
        return NearestNeighborMatcher(ratio=ratio, replace=replace, caliper=caliper,
                                      mahalanobis=mahalanobis, m_order=m_order)
    elif method == "optimal":
        return OptimalMatcher(ratio=ratio, caliper=caliper, mahalanobis=mahalanobis)
    elif method == "full":
        return FullMatcher(mahalanobis=mahalanobis)
    elif method == "subclass":
        return SubclassMatcher(n_subclasses=subclass)
    else:
        raise NotImplementedError(f"Method {method} not supported. Use one of {METHODS}.")


def check_options(method: str = "nearest", estimand: str = "ATT", ratio: int = 1, replace: bool = False,
                  caliper: Optional[float] = None, mahalanobis: bool = False,
                  subclass: int = 6, m_order: Optional[str] = None) -> None:
    """
    Rejects unknown values and option combinations that have no meaning,
    before any matching is done.
    """
    if method not in METHODS:
        raise NotImplementedError(f"Method {method} not supported. Use one of {METHODS}.")
    if estimand not in ESTIMANDS:
        raise ValueError(f"Estimand '{estimand}' not recognized. Use one of {ESTIMANDS}.")
    if m_order is not None and m_order not in M_ORDERS:
        raise ValueError(f"m_order '{m_order}' not recognized. Use one of {M_ORDERS}.")
    if not isinstance(ratio, (int, np.integer)) or ratio < 1:
        raise ValueError("ratio must be a positive integer.")
    if not isinstance(subclass, (int, np.integer)) or subclass < 1:
        raise ValueError("subclass must be a positive integer.")

    if estimand == "ATE" and method in ("nearest", "optimal"):
        raise ValueError(f"Estimand 'ATE' is not available for '{method}' matching; use 'full' or 'subclass'.")
    if ratio != 1 and method not in ("nearest", "optimal"):
        raise ValueError("ratio can only be used with 'nearest' or 'optimal' matching.")
    if caliper is not None:
        if method not in ("nearest", "optimal"):
            raise ValueError("A caliper can only be used with 'nearest' or 'optimal' matching.")
        if mahalanobis:
            raise ValueError("A caliper requires a scalar distance, not 'mahalanobis'.")
        if caliper <= 0:
            raise ValueError("caliper must be positive.")
    if replace and method != "nearest":
        raise ValueError("Matching with replacement is only available for 'nearest' matching.")
    if mahalanobis and method == "subclass":
        raise ValueError("Subclassification needs a propensity score; 'mahalanobis' is not supported.")
