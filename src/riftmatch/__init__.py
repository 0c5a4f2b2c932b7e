# File: src/riftmatch/__init__.py

import logging

from .core import MatchIt, balance, match
from .data import derive_treatment, fill_missing, join_units, percent_to_float, require_complete, validate_units
from .diagnostics import create_summary_table, flag_balance_worsening, sample_sizes
from .distance import check_positivity, estimate_distance, fit_propensity
from .effect import EffectEstimate, achieved_power, estimate_effect, required_sample_size
from .exceptions import (
    BalanceWarning,
    DegenerateModelError,
    InfeasibleMatchingError,
    MissingDataError,
    PositivityWarning,
    RiftMatchError,
    SchemaMismatchError,
)
from .matchers import MatchResult

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "MatchIt",
    "MatchResult",
    "EffectEstimate",
    "fit_propensity",
    "estimate_distance",
    "check_positivity",
    "match",
    "balance",
    "create_summary_table",
    "flag_balance_worsening",
    "sample_sizes",
    "estimate_effect",
    "required_sample_size",
    "achieved_power",
    "join_units",
    "percent_to_float",
    "derive_treatment",
    "fill_missing",
    "require_complete",
    "validate_units",
    "RiftMatchError",
    "MissingDataError",
    "SchemaMismatchError",
    "DegenerateModelError",
    "InfeasibleMatchingError",
    "PositivityWarning",
    "BalanceWarning",
]
