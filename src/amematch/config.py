"""Run configuration and early-stopping thresholds."""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from .errors import ConfigError

ALGORITHMS = ("FLAME", "DAME")

MISSING_DATA_POLICIES = ("none", "drop", "impute", "keep", "ignore")
MISSING_HOLDOUT_POLICIES = ("none", "drop", "impute", "ignore")

# Integer codes accepted for compatibility with the R package.
_DATA_POLICY_ALIASES = {0: "none", 1: "drop", 2: "impute", 3: "keep"}
_HOLDOUT_POLICY_ALIASES = {0: "none", 1: "drop", 2: "impute"}


def _is_count(value, minimum: int) -> bool:
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
        return False
    return int(value) == value and value >= minimum


def _normalise_policy(value: Union[int, str], aliases: dict, allowed: tuple, name: str) -> str:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a policy name, got {value!r}")
    if isinstance(value, numbers.Integral):
        value = int(value)
        if value not in aliases:
            raise ConfigError(f"{name} must be one of {sorted(aliases)}, got {value}")
        return aliases[value]
    policy = str(value).lower()
    if policy not in allowed:
        raise ConfigError(f"{name} must be one of {allowed}, got {value!r}")
    return policy


@dataclass(frozen=True)
class EarlyStopConfig:
    """Thresholds that end the search before the default stopping rules do.

    With the exception of ``iterations``, every rule is checked against the
    best candidate *before* it is committed, so a triggering candidate never
    changes unit state.
    """

    iterations: float = math.inf
    epsilon: float = 0.25
    control: float = 0.0
    treated: float = 0.0
    pe: float = math.inf
    bf: float = 0.0
    baseline_pe: Optional[float] = None

    def validate(self) -> None:
        if not self.iterations >= 0:
            raise ConfigError("early_stop_iterations must be a nonnegative number")
        if math.isfinite(self.iterations) and int(self.iterations) != self.iterations:
            raise ConfigError("early_stop_iterations must be an integer or inf")
        if not (self.epsilon >= 0 and math.isfinite(self.epsilon)):
            raise ConfigError("early_stop_epsilon must be a finite, nonnegative number")
        if not self.pe >= 0:
            raise ConfigError("early_stop_pe must be nonnegative")
        for name in ("control", "treated", "bf"):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ConfigError(f"early_stop_{name} must lie in [0, 1], got {value}")

    def with_baseline(self, baseline_pe: float) -> "EarlyStopConfig":
        """Return a copy carrying the PE computed on all covariates."""

        return replace(self, baseline_pe=float(baseline_pe))


@dataclass
class AMEConfig:
    """All knobs of a FLAME/DAME run other than the data itself."""

    C: float = 0.1
    algo: str = "FLAME"
    n_flame_iters: int = 0
    replace: bool = False
    verbose: int = 2
    return_pe: bool = False
    return_bf: bool = False
    missing_data: Union[int, str] = "none"
    missing_holdout: Union[int, str] = "none"
    missing_data_imputations: int = 5
    missing_holdout_imputations: int = 5
    impute_with_treatment: bool = True
    impute_with_outcome: bool = False
    random_state: int = 0
    n_jobs: int = 1
    early_stop: EarlyStopConfig = field(default_factory=EarlyStopConfig)

    def validate(self) -> "AMEConfig":
        """Check ranges and normalise policy names in place.

        Returns ``self`` so calls can be chained.
        """

        if isinstance(self.C, bool) or not isinstance(self.C, numbers.Real):
            raise ConfigError(f"C must be numeric, got {self.C!r}")
        if not (math.isfinite(self.C) and self.C > 0):
            raise ConfigError(f"C must be a finite, positive scalar, got {self.C}")

        algo = str(self.algo).upper()
        if algo not in ALGORITHMS:
            raise ConfigError(f"algo must be one of {ALGORITHMS}, got {self.algo!r}")
        self.algo = algo

        if not _is_count(self.n_flame_iters, 0):
            raise ConfigError("n_flame_iters must be a nonnegative integer")
        if self.verbose not in (0, 1, 2, 3):
            raise ConfigError("verbose must be one of 0, 1, 2, 3")
        for name in ("missing_data_imputations", "missing_holdout_imputations"):
            value = getattr(self, name)
            if not _is_count(value, 1):
                raise ConfigError(f"{name} must be a positive integer")
        if self.n_jobs == 0:
            raise ConfigError("n_jobs must be nonzero")

        self.missing_data = _normalise_policy(
            self.missing_data, _DATA_POLICY_ALIASES, MISSING_DATA_POLICIES, "missing_data"
        )
        self.missing_holdout = _normalise_policy(
            self.missing_holdout, _HOLDOUT_POLICY_ALIASES, MISSING_HOLDOUT_POLICIES, "missing_holdout"
        )
        self.early_stop.validate()
        return self

    @property
    def n_data_imputations(self) -> int:
        return self.missing_data_imputations if self.missing_data == "impute" else 1

    @property
    def n_holdout_imputations(self) -> int:
        return self.missing_holdout_imputations if self.missing_holdout == "impute" else 1
