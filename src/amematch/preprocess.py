"""Ingestion: from user data frames to the encoded arrays a search runs on.

Covariates are categorical. Their labels are mapped to integer codes with one
mapping shared by ``data`` and ``holdout``, levels sorted so that relabelling
that preserves order (0- vs 1-indexing, say) yields identical codes. Missing
values become ``MISSING_CODE`` and are then handled by the configured
missing-data policies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from pandas.api import types as ptypes

from .config import AMEConfig
from .errors import ConfigError
from .impute import impute_codes
from .matching import MISSING_CODE
from .predictive_error import BINARY, CONTINUOUS, MULTICLASS, Holdout

logger = logging.getLogger(__name__)

HoldoutSpec = Union[float, pd.DataFrame, str, Path]


def load_tabular(path: Union[str, Path]) -> pd.DataFrame:
    """Load CSV, TSV or Parquet data based on file extension."""

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Data file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in {".parquet", ".pq"}:
        return pd.read_parquet(path)
    if suffix in {".csv", ".tsv"}:
        sep = "," if suffix == ".csv" else "\t"
        return pd.read_csv(path, sep=sep)

    raise ConfigError("Only CSV, TSV and Parquet inputs are supported.")


def split_holdout(
    data: Union[pd.DataFrame, str, Path],
    holdout: HoldoutSpec,
    *,
    random_state: int = 0,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Resolve ``data`` and ``holdout`` into two data frames.

    A float ``holdout`` in (0, 1) moves that share of the rows of ``data``,
    chosen at random, into the holdout set.
    """

    if not isinstance(data, pd.DataFrame):
        data = load_tabular(data)

    if isinstance(holdout, pd.DataFrame):
        return data, holdout
    if isinstance(holdout, (str, Path)):
        return data, load_tabular(holdout)
    if isinstance(holdout, bool) or not isinstance(holdout, (int, float)):
        raise ConfigError(f"holdout must be a fraction, a data frame or a path, got {type(holdout).__name__}")
    if not 0 < holdout < 1:
        raise ConfigError(f"holdout fraction must lie strictly between 0 and 1, got {holdout}")

    n_holdout = int(round(holdout * len(data)))
    if n_holdout == 0 or n_holdout == len(data):
        raise ConfigError(f"holdout fraction {holdout} leaves no rows for one of data or holdout")
    rng = np.random.default_rng(random_state)
    picked = np.zeros(len(data), dtype=bool)
    picked[rng.choice(len(data), size=n_holdout, replace=False)] = True
    return data.loc[~picked].copy(), data.loc[picked].copy()


def treatment_indicator(series: pd.Series, *, name: str) -> np.ndarray:
    """Validate a treatment column (logical or 0/1) and return it as booleans."""

    if series.isna().any():
        raise ConfigError(f"treatment column in {name} has missing values")
    values = set(pd.unique(series).tolist())
    if not values <= {0, 1}:
        raise ConfigError(f"treatment column in {name} must be logical or binary 0/1, got {sorted(map(str, values))}")
    return series.to_numpy().astype(bool)


def infer_outcome_type(series: pd.Series) -> str:
    """Binary if two distinct values, multiclass if a categorical with more,
    continuous otherwise."""

    n_unique = series.nunique(dropna=True)
    if n_unique == 2:
        return BINARY
    if ptypes.is_bool_dtype(series) or ptypes.is_numeric_dtype(series):
        return CONTINUOUS
    return MULTICLASS


def _sorted_levels(values: Sequence[Any]) -> List[Any]:
    try:
        return sorted(values)
    except TypeError:
        return sorted(values, key=str)


def build_levels(frames: Sequence[pd.DataFrame], covariates: Sequence[str]) -> List[List[Any]]:
    """Sorted observed labels of every covariate across ``frames``."""

    levels = []
    for name in covariates:
        observed = pd.concat([frame[name] for frame in frames], ignore_index=True).dropna()
        if observed.empty:
            raise ConfigError(f"covariate {name!r} has no observed values")
        levels.append(_sorted_levels(pd.unique(observed).tolist()))
    return levels


def encode_covariates(frame: pd.DataFrame, covariates: Sequence[str], levels: Sequence[Sequence[Any]]) -> np.ndarray:
    """Integer codes of ``frame``'s covariates; ``MISSING_CODE`` where missing."""

    codes = np.empty((len(frame), len(covariates)), dtype=np.int64)
    for j, (name, level) in enumerate(zip(covariates, levels)):
        column = frame[name]
        encoded = pd.Index(level).get_indexer(column).astype(np.int64)
        if ((encoded == -1) & column.notna().to_numpy()).any():
            raise ConfigError(f"covariate {name!r} has values outside its known levels")
        codes[:, j] = np.where(encoded == -1, MISSING_CODE, encoded)
    return codes


@dataclass
class ImputationBundle:
    """Completed variants of the data codes and of the holdout set."""

    data: List[np.ndarray]
    holdout: List[Holdout]


@dataclass
class PreparedInputs:
    """Everything a set of search runs needs, derived from the input frames."""

    data: pd.DataFrame
    covariate_names: List[str]
    levels: List[List[Any]]
    treated: np.ndarray
    outcome: Optional[np.ndarray]
    """Numeric outcome of ``data`` used for CATEs, ``None`` if not numeric or absent."""

    outcome_labels: Optional[pd.Series]
    outcome_type: str
    eligible: np.ndarray
    match_missing: bool
    bundle: ImputationBundle

    @property
    def n_levels(self) -> List[int]:
        return [len(level) for level in self.levels]


def _encode_outcome(series: pd.Series, outcome_type: str, classes: Sequence[Any]) -> np.ndarray:
    if outcome_type == CONTINUOUS:
        return series.to_numpy(dtype=float)
    return pd.Categorical(series, categories=classes).codes.astype(float)


def _holdout_variants(
    codes: np.ndarray,
    treated: np.ndarray,
    outcome: np.ndarray,
    n_levels: Sequence[int],
    config: AMEConfig,
) -> List[Holdout]:
    missing = codes == MISSING_CODE
    policy = config.missing_holdout
    if not missing.any() or policy == "ignore":
        return [Holdout(codes, treated, outcome)]
    if policy == "none":
        raise ConfigError("holdout has missing covariate values; choose a missing_holdout policy")
    if policy == "drop":
        keep = ~missing.any(axis=1)
        if not keep.any():
            raise ConfigError("every holdout row has a missing covariate value")
        logger.info("Dropping %d holdout rows with missing covariates", int((~keep).sum()))
        return [Holdout(codes[keep], treated[keep], outcome[keep])]

    extra = []
    if config.impute_with_treatment:
        extra.append(treated.astype(float))
    if config.impute_with_outcome:
        extra.append(outcome)
    completed = impute_codes(
        codes,
        n_levels,
        config.n_holdout_imputations,
        extra=np.column_stack(extra) if extra else None,
        random_state=config.random_state,
    )
    return [Holdout(c, treated, outcome) for c in completed]


def prepare_inputs(
    data: pd.DataFrame,
    holdout: pd.DataFrame,
    config: AMEConfig,
    *,
    treated_column_name: str = "treated",
    outcome_column_name: str = "outcome",
) -> PreparedInputs:
    """Validate the input frames and encode them for the search.

    Raises
    ------
    ConfigError
        On malformed schemas or missing values the configured policies do not allow.
    """

    if treated_column_name not in data.columns:
        raise ConfigError(f"data has no treatment column {treated_column_name!r}")
    if treated_column_name not in holdout.columns:
        raise ConfigError(f"holdout has no treatment column {treated_column_name!r}")
    if outcome_column_name not in holdout.columns:
        raise ConfigError(f"holdout has no outcome column {outcome_column_name!r}")

    reserved = {treated_column_name, outcome_column_name}
    covariates = [c for c in data.columns if c not in reserved]
    holdout_covariates = [c for c in holdout.columns if c not in reserved]
    if not covariates:
        raise ConfigError("data has no covariate columns")
    if set(covariates) != set(holdout_covariates):
        raise ConfigError("data and holdout must have the same covariate columns")

    treated = treatment_indicator(data[treated_column_name], name="data")
    holdout_treated = treatment_indicator(holdout[treated_column_name], name="holdout")
    for name, flags in (("data", treated), ("holdout", holdout_treated)):
        if flags.all() or not flags.any():
            raise ConfigError(f"{name} must contain both treated and control units")

    holdout_outcome = holdout[outcome_column_name]
    if holdout_outcome.isna().any():
        raise ConfigError("holdout outcome has missing values")
    has_outcome = outcome_column_name in data.columns
    outcomes = [holdout_outcome]
    if has_outcome:
        if data[outcome_column_name].isna().any():
            raise ConfigError("data outcome has missing values")
        outcomes.append(data[outcome_column_name])
    pooled_outcome = pd.concat(outcomes, ignore_index=True)
    outcome_type = infer_outcome_type(pooled_outcome)
    classes = _sorted_levels(pd.unique(pooled_outcome).tolist())
    numeric_outcome = ptypes.is_numeric_dtype(pooled_outcome) or ptypes.is_bool_dtype(pooled_outcome)

    levels = build_levels([data, holdout], covariates)
    n_levels = [len(level) for level in levels]
    codes = encode_covariates(data, covariates, levels)
    holdout_codes = encode_covariates(holdout, covariates, levels)

    outcome = data[outcome_column_name].to_numpy(dtype=float) if has_outcome and numeric_outcome else None
    encoded_holdout_outcome = _encode_outcome(holdout_outcome, outcome_type, classes)

    missing = codes == MISSING_CODE
    eligible = np.ones(len(data), dtype=bool)
    policy = config.missing_data
    data_variants = [codes]
    if missing.any():
        if policy == "none":
            raise ConfigError("data has missing covariate values; choose a missing_data policy")
        if policy == "drop":
            eligible = ~missing.any(axis=1)
            logger.info("%d units with missing covariates will not be matched", int((~eligible).sum()))
        elif policy == "impute":
            extra = []
            if config.impute_with_treatment:
                extra.append(treated.astype(float))
            if config.impute_with_outcome and has_outcome:
                extra.append(_encode_outcome(data[outcome_column_name], outcome_type, classes))
            data_variants = impute_codes(
                codes,
                n_levels,
                config.n_data_imputations,
                extra=np.column_stack(extra) if extra else None,
                random_state=config.random_state,
            )

    holdout_variants = _holdout_variants(holdout_codes, holdout_treated, encoded_holdout_outcome, n_levels, config)

    return PreparedInputs(
        data=data,
        covariate_names=[str(c) for c in covariates],
        levels=levels,
        treated=treated,
        outcome=outcome,
        outcome_labels=data[outcome_column_name] if has_outcome else None,
        outcome_type=outcome_type,
        eligible=eligible,
        match_missing=policy == "ignore",
        bundle=ImputationBundle(data=data_variants, holdout=holdout_variants),
    )
