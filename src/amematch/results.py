"""Assembly of search output into the user facing result, plus effect summaries."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Hashable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import AMEError, EmptyMatchFailure
from .matching import MISSING_CODE, MatchedGroup, UnitStore
from .search import SearchTrace

UNMATCHED_SENTINEL = "*"
"""Shown in place of covariate values a unit was not matched on."""


@dataclass
class AMEResult:
    """Output of one FLAME/DAME run on one (possibly imputed) dataset."""

    data: pd.DataFrame
    """Unit table with ``matched`` and ``weight`` columns; covariates a unit was
    not matched on are replaced by ``"*"``."""

    MGs: List[List[Hashable]]
    """Member ids of every matched group, in the order groups were formed."""

    matched_groups: List[MatchedGroup]
    """Full matched group records, aligned with ``MGs``."""

    matched_on: List[Dict[str, Any]]
    """Covariate values shared by each matched group."""

    matching_covs: List[List[str]]
    """Covariates matched on at every iteration (index 0 = all covariates)."""

    dropped: List[List[str]]
    """Covariates dropped as of every iteration."""

    stop_reason: str
    baseline_pe: float

    CATE: Optional[np.ndarray] = None
    """Per-group treatment effect; ``None`` unless the outcome is numeric."""

    PE: Optional[List[float]] = None
    BF: Optional[List[float]] = None
    treated_column_name: str = "treated"

    @property
    def n_matched(self) -> int:
        return int(self.data["matched"].sum())


def group_cate(group: MatchedGroup, units: UnitStore) -> float:
    """Mean treated outcome minus mean control outcome within a group."""

    rows = np.asarray(group.rows)
    treated = units.treated[rows]
    outcome = units.outcome[rows]
    return float(outcome[treated].mean() - outcome[~treated].mean())


class ResultAssembler:
    """Turns the state left by a search into an :class:`AMEResult`.

    ``levels[j]`` holds the original labels of covariate ``j`` indexed by code.
    """

    def __init__(
        self,
        covariate_names: Sequence[str],
        levels: Sequence[Sequence[Any]],
        *,
        treated_column_name: str = "treated",
        outcome_column_name: str = "outcome",
        numeric_outcome: bool = True,
        return_pe: bool = False,
        return_bf: bool = False,
    ):
        self.covariate_names = list(covariate_names)
        self.levels = [np.asarray(list(level), dtype=object) for level in levels]
        self.treated_column_name = treated_column_name
        self.outcome_column_name = outcome_column_name
        self.numeric_outcome = numeric_outcome
        self.return_pe = return_pe
        self.return_bf = return_bf

    def _label(self, covariate: int, code: int) -> Any:
        if code == MISSING_CODE:
            return np.nan
        return self.levels[covariate][code]

    def _unit_table(
        self, units: UnitStore, outcome: Optional[Sequence], treatment: Optional[Sequence]
    ) -> pd.DataFrame:
        shown = np.zeros(units.covariates.shape, dtype=bool)
        for row, sets in enumerate(units.matched_on):
            for covariates in sets:
                shown[row, list(covariates)] = True

        columns = {}
        for j, name in enumerate(self.covariate_names):
            labels = np.empty(units.n_units, dtype=object)
            labels[:] = UNMATCHED_SENTINEL
            for row in np.flatnonzero(shown[:, j]):
                labels[row] = self._label(j, units.covariates[row, j])
            columns[name] = labels
        table = pd.DataFrame(columns, index=pd.Index(list(units.ids)))
        table[self.treated_column_name] = units.treated.astype(int) if treatment is None else np.asarray(treatment)
        if outcome is not None:
            table[self.outcome_column_name] = np.asarray(outcome)
        table["matched"] = units.matched
        table["weight"] = units.weight
        return table

    def assemble(
        self,
        units: UnitStore,
        groups: Sequence[MatchedGroup],
        trace: SearchTrace,
        *,
        outcome: Optional[Sequence] = None,
        treatment: Optional[Sequence] = None,
    ) -> AMEResult:
        """Build the result of one run.

        ``outcome`` and ``treatment`` are the columns as given (labels for
        categorical outcomes, booleans or 0/1 for treatment); CATEs use the
        numeric outcome held by ``units``.
        """

        with_cate = self.numeric_outcome and units.outcome is not None
        if with_cate:
            groups = [replace(g, cate=group_cate(g, units)) for g in groups]
        else:
            groups = list(groups)

        matched_on = [
            {self.covariate_names[c]: self._label(c, v) for c, v in zip(g.covariates, g.values)} for g in groups
        ]
        all_names = set(self.covariate_names)
        matching_covs = [[self.covariate_names[c] for c in s] for s in trace.matching_covs]
        dropped = [[name for name in self.covariate_names if name in all_names - set(s)] for s in matching_covs]

        return AMEResult(
            data=self._unit_table(units, outcome, treatment),
            MGs=[list(g.ids) for g in groups],
            matched_groups=groups,
            matched_on=matched_on,
            matching_covs=matching_covs,
            dropped=dropped,
            stop_reason=trace.stop_reason,
            baseline_pe=trace.baseline_pe,
            CATE=np.array([g.cate for g in groups], dtype=float) if with_cate else None,
            PE=list(trace.pe) if self.return_pe else None,
            BF=list(trace.bf) if self.return_bf else None,
            treated_column_name=self.treated_column_name,
        )


def _require_cates(result: AMEResult) -> np.ndarray:
    if result.CATE is None:
        raise AMEError("treatment effects need a numeric outcome in the matched data")
    if not result.matched_groups:
        raise EmptyMatchFailure("no matched groups were formed")
    return result.CATE


def estimate_ate(result: AMEResult) -> float:
    """Average treatment effect: CATEs weighted by matched group size."""

    cates = _require_cates(result)
    sizes = np.array([len(g.rows) for g in result.matched_groups], dtype=float)
    return float(np.sum(cates * sizes) / np.sum(sizes))


def estimate_att(result: AMEResult) -> float:
    """Average treatment effect on the treated: CATEs weighted by treated count."""

    cates = _require_cates(result)
    treated = result.data[result.treated_column_name].to_numpy().astype(bool)
    n_treated = np.array([treated[list(g.rows)].sum() for g in result.matched_groups], dtype=float)
    return float(np.sum(cates * n_treated) / np.sum(n_treated))


def unit_cate(result: AMEResult) -> pd.Series:
    """CATE of every unit, averaged over the groups it belongs to (NaN if unmatched)."""

    cates = _require_cates(result)
    totals = np.zeros(len(result.data))
    counts = np.zeros(len(result.data))
    for group, cate in zip(result.matched_groups, cates):
        rows = list(group.rows)
        totals[rows] += cate
        counts[rows] += 1
    with np.errstate(invalid="ignore", divide="ignore"):
        values = np.where(counts > 0, totals / np.maximum(counts, 1), math.nan)
    return pd.Series(values, index=result.data.index, name="CATE")
