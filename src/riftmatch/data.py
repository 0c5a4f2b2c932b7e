# File: src/riftmatch/data.py

import logging

import numpy as np
import pandas as pd
from typing import Dict, Iterable, Optional

from .exceptions import MissingDataError, SchemaMismatchError

logger = logging.getLogger(__name__)


def join_units(left: pd.DataFrame, right: pd.DataFrame, on: str = "name", how: str = "inner") -> pd.DataFrame:
    """
    Joins two tables of units on a shared key (e.g. champion name).

    Raises:
        SchemaMismatchError: the key is missing from, or duplicated within, either table.
    """
    for label, frame in (("left", left), ("right", right)):
        if on not in frame.columns:
            raise SchemaMismatchError(f"Join key '{on}' not found in {label} table.")
        dupes = frame[on][frame[on].duplicated()].unique()
        if len(dupes) > 0:
            raise SchemaMismatchError(f"Join key '{on}' is not unique in {label} table: {list(dupes)[:5]}")

    joined = left.merge(right, on=on, how=how, suffixes=("", "_right"))

    dropped = len(set(left[on]) ^ set(right[on]))
    if dropped > 0:
        logger.info("%d keys appear in only one table (%s join).", dropped, how)

    return joined.reset_index(drop=True)


def percent_to_float(values: pd.Series) -> pd.Series:
    """
    Converts percentages ("51.2%", "51.2" or 51.2) to fractions in [0, 1].

    Values without a "%" sign are read on the 0-100 scale. A column whose
    values all lie within [-1, 1] is most likely fractions already and is
    rejected rather than divided by 100 a second time.
    """
    marked = False
    if not pd.api.types.is_numeric_dtype(values):
        marked = values.astype(str).str.contains("%", regex=False).any()
        cleaned = values.astype(str).str.strip().str.rstrip("%").str.strip()
        cleaned = cleaned.replace({"": np.nan, "nan": np.nan, "None": np.nan})
        numeric = pd.to_numeric(cleaned, errors="raise")
    else:
        numeric = pd.to_numeric(values, errors="raise")

    present = numeric.dropna()
    if not marked and len(present) > 0 and (present.abs() <= 1).all():
        raise ValueError("Values look like fractions already (all within [-1, 1]); expected a 0-100 scale.")

    fraction = numeric / 100.0
    out_of_range = fraction.notna() & ((fraction < 0) | (fraction > 1))
    if out_of_range.any():
        raise ValueError(f"{int(out_of_range.sum())} values fall outside 0-100%.")
    return fraction


def derive_treatment(values: pd.Series, label: str, sep: Optional[str] = ",") -> pd.Series:
    """
    1 where `label` is one of the tags in a categorical column, 0 elsewhere.
    E.g. derive_treatment(df['class'], 'Tank') flags "Tank, Support".
    """
    if values.isnull().any():
        raise MissingDataError(f"Column '{values.name}' has missing values; cannot derive treatment.")

    def has_label(cell) -> bool:
        tags = str(cell).split(sep) if sep else [str(cell)]
        return label.lower() in (t.strip().lower() for t in tags)

    return values.map(has_label).astype(int).rename(label.lower())


def fill_missing(data: pd.DataFrame, key: str, fills: Dict[object, Dict[str, object]]) -> pd.DataFrame:
    """
    Applies hand-entered values to specific units, e.g.
    fill_missing(df, 'name', {'Ambessa': {'difficulty': 2}}).
    """
    if key not in data.columns:
        raise SchemaMismatchError(f"Key column '{key}' not found.")

    out = data.copy()
    for unit, values in fills.items():
        rows = out[key] == unit
        if not rows.any():
            raise SchemaMismatchError(f"No unit with {key} == {unit!r}.")
        for col, value in values.items():
            if col not in out.columns:
                raise SchemaMismatchError(f"Column '{col}' not found.")
            out.loc[rows, col] = value
    return out


def require_complete(data: pd.DataFrame, columns: Iterable[str]) -> None:
    """Raises MissingDataError naming every listed column that still has NaN."""
    columns = list(columns)
    absent = [c for c in columns if c not in data.columns]
    if absent:
        raise SchemaMismatchError(f"Columns not found: {absent}")

    counts = data[columns].isnull().sum()
    incomplete = counts[counts > 0]
    if not incomplete.empty:
        detail = ", ".join(f"{col} ({n})" for col, n in incomplete.items())
        raise MissingDataError(f"Missing values remain in: {detail}")


def validate_units(data: pd.DataFrame, treatment: str, outcome: Optional[str] = None) -> None:
    """
    Checks that the index is unique, treatment is binary and complete, and
    the outcome (if given) lies in [0, 1].
    """
    if not data.index.is_unique:
        raise ValueError("Input DataFrame index must be unique. Try running `df.reset_index(drop=True)`.")

    require_complete(data, [treatment] + ([outcome] if outcome else []))

    t_vals = data[treatment].unique()
    if not all(v in {0, 1, 0.0, 1.0, False, True} for v in t_vals):
        raise ValueError(f"Treatment variable must be binary (0 and 1). Found values: {t_vals}")

    if outcome is not None:
        y = data[outcome]
        if ((y < 0) | (y > 1)).any():
            raise ValueError(f"Outcome '{outcome}' must lie in [0, 1].")
