"""FLAME / DAME search over the lattice of covariate subsets.

The controller starts by matching on all covariates. Each iteration then
scores candidate covariate sets by match quality ``MQ = C * BF - PE``, checks
the early-stopping rules against the best one and, if none fires, commits its
matches and adds its children (one more covariate dropped) to the frontier.

In FLAME mode only the children of the last committed set are candidates, a
greedy walk down the lattice. In DAME mode every generated, not yet processed
set is a candidate. ``n_flame_iters`` runs the first iterations of a DAME search
in FLAME mode.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .config import AMEConfig, EarlyStopConfig
from .errors import FitFailure
from .matching import MatchedGroup, MatchPass, UnitStore, balancing_factor, form_groups
from .predictive_error import PredictiveErrorEstimator

logger = logging.getLogger(__name__)

CovariateSet = Tuple[int, ...]


@dataclass(frozen=True)
class Candidate:
    """A covariate set scored against the current unit state."""

    covariates: CovariateSet
    bf: float
    pe: float
    mq: float
    match_pass: MatchPass

    @property
    def scorable(self) -> bool:
        return math.isfinite(self.pe)


@dataclass
class SearchTrace:
    """Per-iteration record of a search. Index 0 is the match on all covariates."""

    matching_covs: List[CovariateSet] = field(default_factory=list)
    pe: List[float] = field(default_factory=list)
    bf: List[float] = field(default_factory=list)
    baseline_pe: float = math.nan
    stop_reason: str = ""

    @property
    def iterations(self) -> int:
        return max(len(self.matching_covs) - 1, 0)


def children(covariates: CovariateSet) -> List[CovariateSet]:
    """Sets with one more covariate dropped. The empty set is never produced."""

    if len(covariates) <= 1:
        return []
    return [covariates[:i] + covariates[i + 1 :] for i in range(len(covariates))]


class LatticeSearchController:
    """Runs one FLAME or DAME search and owns the unit state it mutates."""

    def __init__(self, units: UnitStore, estimator: PredictiveErrorEstimator, config: AMEConfig):
        self.units = units
        self.estimator = estimator
        self.config = config
        self.groups: List[MatchedGroup] = []
        self.trace = SearchTrace()
        self._processed: Set[CovariateSet] = set()
        # Insertion-ordered set of frontier members.
        self._active: Dict[CovariateSet, None] = {}
        self._last: Optional[CovariateSet] = None

    @property
    def processed(self) -> Set[CovariateSet]:
        return set(self._processed)

    @property
    def active(self) -> List[CovariateSet]:
        return list(self._active)

    def score(self, covariates: CovariateSet) -> Candidate:
        """Score a covariate set without changing any state."""

        match_pass = form_groups(self.units, covariates, self.config.replace)
        bf = balancing_factor(self.units, match_pass, self.config.replace)
        try:
            pe = self.estimator.estimate(covariates)
        except FitFailure as exc:
            logger.debug("Candidate %s cannot be scored: %s", covariates, exc)
            pe = math.inf
        return Candidate(covariates, bf, pe, self.config.C * bf - pe, match_pass)

    def _in_flame_mode(self, iteration: int) -> bool:
        return self.config.algo == "FLAME" or iteration <= self.config.n_flame_iters

    def candidates(self, iteration: int) -> List[CovariateSet]:
        if self._in_flame_mode(iteration):
            return [c for c in children(self._last) if c not in self._processed]
        return list(self._active)

    def _commit(self, covariates: CovariateSet, match_pass: MatchPass, pe: float, bf: float) -> None:
        self.units.commit(match_pass)
        self.groups.extend(match_pass.groups)
        self._active.pop(covariates, None)
        self._processed.add(covariates)
        for child in children(covariates):
            if child not in self._processed and child not in self._active:
                self._active[child] = None
        self._last = covariates
        self.trace.matching_covs.append(covariates)
        self.trace.pe.append(pe)
        self.trace.bf.append(bf)

    def _default_stop_reason(self) -> Optional[str]:
        unmatched_treated, unmatched_control = self.units.unmatched_counts()
        if unmatched_treated == 0:
            return "all treated units matched"
        if unmatched_control == 0:
            return "all control units matched"
        return None

    def _early_stop_reason(self, best: Candidate, early_stop: EarlyStopConfig) -> Optional[str]:
        if best.pe > (1 + early_stop.epsilon) * early_stop.baseline_pe:
            return "PE would exceed (1 + early_stop_epsilon) times the baseline PE"
        if best.pe > early_stop.pe:
            return "PE would exceed early_stop_pe"
        if best.bf < early_stop.bf:
            return "BF would fall below early_stop_bf"
        frac_treated, frac_control = self.units.projected_unmatched_fractions(best.match_pass)
        if frac_control < early_stop.control:
            return "unmatched control fraction would fall below early_stop_control"
        if frac_treated < early_stop.treated:
            return "unmatched treated fraction would fall below early_stop_treated"
        return None

    def _log_progress(self, iteration: int) -> None:
        verbose = self.config.verbose
        if verbose == 3 or (verbose == 2 and iteration % 5 == 0):
            unmatched_treated, unmatched_control = self.units.unmatched_counts()
            logger.info(
                "Iteration %d: %d unmatched treated, %d unmatched control units",
                iteration,
                unmatched_treated,
                unmatched_control,
            )

    def run(self) -> SearchTrace:
        """Search until a stopping rule fires.

        Raises
        ------
        FitFailure
            If PE cannot be computed on all covariates, since the baseline is
            needed by the ``early_stop_epsilon`` rule.
        """

        full = tuple(range(self.units.n_covariates))
        baseline_pe = self.estimator.estimate(full)
        early_stop = self.config.early_stop.with_baseline(baseline_pe)
        self.trace.baseline_pe = baseline_pe

        first = form_groups(self.units, full, self.config.replace)
        self._commit(full, first, baseline_pe, balancing_factor(self.units, first, self.config.replace))
        self._log_progress(0)

        iteration = 0
        while True:
            reason = self._default_stop_reason()
            if reason is not None:
                break
            if iteration >= early_stop.iterations:
                reason = "reached early_stop_iterations"
                break
            iteration += 1

            covariate_sets = self.candidates(iteration)
            if not covariate_sets:
                reason = "all covariates dropped"
                break
            scored = [self.score(c) for c in covariate_sets]
            scorable = [c for c in scored if c.scorable]
            if not scorable:
                reason = "no scorable candidate"
                break
            # max keeps the first of equal keys, i.e. the earliest frontier entry.
            best = max(scorable, key=lambda c: (c.mq, len(c.covariates)))

            reason = self._early_stop_reason(best, early_stop)
            if reason is not None:
                break
            self._commit(best.covariates, best.match_pass, best.pe, best.bf)
            self._log_progress(iteration)

        self.trace.stop_reason = reason
        if self.config.verbose >= 1:
            logger.info("%s stopped after %d iterations: %s", self.config.algo, self.trace.iterations, reason)
        return self.trace
