"""Exact matching of units on a set of active covariates.

Units are held in a :class:`UnitStore`, one per search run. A pass of
:func:`form_groups` groups the candidate units by their covariate codes on the
active set and reports which groups contain both treated and control units.
The pass does not touch the store; :meth:`UnitStore.commit` applies it once the
search controller has chosen that covariate set.

Grouping collapses each row into a single integer label, one covariate at a
time, so arbitrarily many covariates never overflow the label range.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Hashable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

MISSING_CODE = -1
"""Code used for a missing covariate value."""


@dataclass(frozen=True)
class MatchedGroup:
    """Units sharing identical covariate values on ``covariates``."""

    rows: Tuple[int, ...]
    """Row positions of the members in the unit table."""

    ids: Tuple[Hashable, ...]
    """Original identifiers of the members."""

    covariates: Tuple[int, ...]
    """Covariate indices the group was matched on."""

    values: Tuple[int, ...]
    """Shared covariate codes, aligned with ``covariates``."""

    cate: Optional[float] = None
    """Treated minus control mean outcome, filled in by the result assembler."""


@dataclass(frozen=True)
class MatchPass:
    """Outcome of grouping the candidate units on one covariate set."""

    covariates: Tuple[int, ...]
    groups: List[MatchedGroup] = field(default_factory=list)
    rows: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    n_treated: int = 0
    n_control: int = 0


class UnitStore:
    """Matching state of every unit in one run.

    ``matched`` only ever flips from ``False`` to ``True``; ``weight`` counts the
    matched groups a unit belongs to and ``matched_on`` lists the covariate sets
    of those groups in commit order.
    """

    def __init__(
        self,
        covariates: np.ndarray,
        treated: Sequence,
        *,
        outcome: Optional[Sequence] = None,
        ids: Optional[Sequence[Hashable]] = None,
        eligible: Optional[Sequence[bool]] = None,
        match_missing: bool = False,
    ) -> None:
        self.covariates = np.asarray(covariates, dtype=np.int64)
        if self.covariates.ndim != 2:
            raise ValueError("covariates must be a two-dimensional array of codes")
        n_units = self.covariates.shape[0]
        self.treated = np.asarray(treated).astype(bool)
        self.outcome = None if outcome is None else np.asarray(outcome, dtype=float)
        self.ids = np.arange(n_units) if ids is None else np.asarray(list(ids), dtype=object)
        self.eligible = np.ones(n_units, dtype=bool) if eligible is None else np.asarray(eligible, dtype=bool)
        self.match_missing = match_missing

        for name, values in (("treated", self.treated), ("ids", self.ids), ("eligible", self.eligible)):
            if len(values) != n_units:
                raise ValueError(f"{name} has {len(values)} entries, expected {n_units}")

        self.matched = np.zeros(n_units, dtype=bool)
        self.weight = np.zeros(n_units, dtype=np.int64)
        self.matched_on: List[List[Tuple[int, ...]]] = [[] for _ in range(n_units)]
        if n_units:
            self.radix = self.covariates.max(axis=0) + 2
        else:
            self.radix = np.ones(self.covariates.shape[1], dtype=np.int64)

    @property
    def n_units(self) -> int:
        return self.covariates.shape[0]

    @property
    def n_covariates(self) -> int:
        return self.covariates.shape[1]

    def candidates(self, replace: bool) -> np.ndarray:
        """Boolean mask of units that may take part in a new match."""

        if replace:
            return self.eligible.copy()
        return self.eligible & ~self.matched

    def total_counts(self) -> Tuple[int, int]:
        """Number of eligible (treated, control) units."""

        treated = int(np.sum(self.eligible & self.treated))
        return treated, int(np.sum(self.eligible)) - treated

    def unmatched_counts(self) -> Tuple[int, int]:
        """Number of eligible (treated, control) units never matched."""

        unmatched = self.eligible & ~self.matched
        treated = int(np.sum(unmatched & self.treated))
        return treated, int(np.sum(unmatched)) - treated

    def projected_unmatched_fractions(self, match_pass: MatchPass) -> Tuple[float, float]:
        """Unmatched (treated, control) fractions if ``match_pass`` were committed."""

        unmatched = self.eligible & ~self.matched
        unmatched[match_pass.rows] = False
        total_treated, total_control = self.total_counts()
        left_treated = int(np.sum(unmatched & self.treated))
        left_control = int(np.sum(unmatched & ~self.treated))
        return (
            left_treated / total_treated if total_treated else 0.0,
            left_control / total_control if total_control else 0.0,
        )

    def commit(self, match_pass: MatchPass) -> None:
        """Apply the matches of a pass permanently."""

        rows = match_pass.rows
        self.matched[rows] = True
        self.weight[rows] += 1
        for row in rows:
            self.matched_on[row].append(match_pass.covariates)


def _group_labels(codes: np.ndarray, radix: np.ndarray) -> np.ndarray:
    """Label rows of ``codes`` so equal rows share a label.

    Labels are numbered in order of first appearance.
    """

    labels = np.zeros(codes.shape[0], dtype=np.int64)
    for column in range(codes.shape[1]):
        # Shift by one so the missing code maps to 0 when it is matched on.
        combined = labels * radix[column] + codes[:, column] + 1
        labels, _ = pd.factorize(combined)
    return labels


def form_groups(units: UnitStore, covariates: Sequence[int], replace: bool = False) -> MatchPass:
    """Group candidate units by exact equality on ``covariates``.

    Parameters
    ----------
    units:
        Current unit state. It is read, never modified.
    covariates:
        Indices of the active covariates.
    replace:
        If ``True`` already matched units are candidates again.

    Returns
    -------
    MatchPass
        The qualifying groups (at least one treated and one control member) in
        order of first appearance, plus the rows they cover.
    """

    covariates = tuple(int(c) for c in covariates)
    pool = units.candidates(replace)
    if covariates and not units.match_missing:
        pool &= np.all(units.covariates[:, covariates] != MISSING_CODE, axis=1)
    rows = np.flatnonzero(pool)
    if rows.size == 0 or not covariates:
        return MatchPass(covariates)

    codes = units.covariates[np.ix_(rows, covariates)]
    labels = _group_labels(codes, units.radix[list(covariates)])
    n_labels = int(labels.max()) + 1
    treated = units.treated[rows]
    n_treated = np.bincount(labels, weights=treated, minlength=n_labels)
    n_control = np.bincount(labels, weights=~treated, minlength=n_labels)
    valid = (n_treated > 0) & (n_control > 0)

    member = valid[labels]
    if not member.any():
        return MatchPass(covariates)

    member_rows = rows[member]
    member_labels = labels[member]
    order = np.argsort(member_labels, kind="stable")
    sorted_rows = member_rows[order]
    boundaries = np.flatnonzero(np.diff(member_labels[order])) + 1

    groups = []
    for chunk in np.split(sorted_rows, boundaries):
        groups.append(
            MatchedGroup(
                rows=tuple(int(r) for r in chunk),
                ids=tuple(units.ids[chunk]),
                covariates=covariates,
                values=tuple(int(v) for v in units.covariates[chunk[0], list(covariates)]),
            )
        )

    matched_treated = int(np.sum(units.treated[member_rows]))
    return MatchPass(
        covariates=covariates,
        groups=groups,
        rows=member_rows,
        n_treated=matched_treated,
        n_control=int(member_rows.size) - matched_treated,
    )


def balancing_factor(units: UnitStore, match_pass: MatchPass, replace: bool = False) -> float:
    """Share of control plus share of treated units a pass would match.

    Without replacement the shares are taken over the units still unmatched,
    with replacement over all eligible units.
    """

    if replace:
        denom_treated, denom_control = units.total_counts()
    else:
        denom_treated, denom_control = units.unmatched_counts()
    bf = 0.0
    if denom_control:
        bf += match_pass.n_control / denom_control
    if denom_treated:
        bf += match_pass.n_treated / denom_treated
    return bf
