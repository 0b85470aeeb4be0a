"""Almost-matching-exactly (FLAME and DAME) for causal inference."""

from .api import dame, flame, run_ame
from .config import AMEConfig, EarlyStopConfig
from .datagen import gen_data
from .errors import AMEError, ConfigError, EmptyMatchFailure, FitFailure, MissingLevelMismatch
from .matching import MatchedGroup, UnitStore, balancing_factor, form_groups
from .predictive_error import (
    CallableFitter,
    PEFitter,
    PredictiveErrorEstimator,
    RidgeFitter,
    XGBoostFitter,
    estimate_pe,
)
from .results import AMEResult, ResultAssembler, estimate_ate, estimate_att, unit_cate
from .search import LatticeSearchController

__all__ = [
    "AMEConfig",
    "AMEError",
    "AMEResult",
    "CallableFitter",
    "ConfigError",
    "EarlyStopConfig",
    "EmptyMatchFailure",
    "FitFailure",
    "LatticeSearchController",
    "MatchedGroup",
    "MissingLevelMismatch",
    "PEFitter",
    "PredictiveErrorEstimator",
    "ResultAssembler",
    "RidgeFitter",
    "UnitStore",
    "XGBoostFitter",
    "balancing_factor",
    "dame",
    "estimate_ate",
    "estimate_att",
    "estimate_pe",
    "flame",
    "form_groups",
    "gen_data",
    "run_ame",
    "unit_cate",
]
