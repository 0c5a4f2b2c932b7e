# File: src/riftmatch/exceptions.py


class RiftMatchError(Exception):
    """Base class for all riftmatch errors."""


class MissingDataError(RiftMatchError, ValueError):
    """Raised when missing values reach a step that requires complete data."""


class SchemaMismatchError(RiftMatchError, KeyError):
    """Raised when a join key or required column is absent."""

    def __str__(self):
        # KeyError repr()s its message; keep it readable
        return str(self.args[0]) if self.args else ""


class DegenerateModelError(RiftMatchError, RuntimeError):
    """Raised when the propensity model cannot be fit (collinearity, separation)."""


class InfeasibleMatchingError(RiftMatchError, RuntimeError):
    """Raised when no valid matched set can be formed."""


class PositivityWarning(UserWarning):
    """Propensity scores at (or numerically at) 0 or 1."""


class BalanceWarning(UserWarning):
    """Matching made balance worse on one or more covariates."""
