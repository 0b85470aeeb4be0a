"""Predictive error (PE) of the outcome given a subset of covariates.

PE is computed on the holdout set: the outcome is regressed on the covariates
separately among treated and control units, and the in-sample errors of the
two fits are added. With several holdout imputations the result is the mean
over imputations.

Fitters implement :class:`PEFitter`. Two are built in, a cross-validated ridge
model and a grid-searched gradient-boosted tree model; any user supplied
``fit``/``predict`` pair can be wrapped with :class:`CallableFitter`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import xgboost
from sklearn.linear_model import RidgeClassifierCV, RidgeCV
from sklearn.model_selection import GridSearchCV, KFold
from sklearn.preprocessing import LabelEncoder

from .errors import ConfigError, FitFailure, MissingLevelMismatch
from .matching import MISSING_CODE

logger = logging.getLogger(__name__)

CONTINUOUS = "continuous"
BINARY = "binary"
MULTICLASS = "multiclass"
OUTCOME_TYPES = (CONTINUOUS, BINARY, MULTICLASS)

DEFAULT_RIDGE_ALPHAS = tuple(np.logspace(-3, 3, 25))

DEFAULT_XGB_GRID: Dict[str, Sequence[Any]] = {
    "learning_rate": [0.05, 0.1, 0.3],
    "max_depth": [2, 3, 4],
    "reg_alpha": [0.1, 1.0],
    "n_estimators": [10, 50, 200],
    "subsample": [0.5, 1.0],
}


@dataclass(frozen=True)
class Holdout:
    """One completed holdout table, already encoded."""

    covariates: np.ndarray
    """Integer codes, one column per covariate, ``MISSING_CODE`` where missing."""

    treated: np.ndarray
    """Boolean treatment indicator."""

    outcome: np.ndarray
    """Numeric outcome; class indices for binary and multiclass outcomes."""


class DesignEncoder:
    """Indicator expansion of categorical covariate codes.

    Every covariate ``j`` becomes ``n_levels[j] + 1`` indicator columns, the
    first one flagging the missing code. Using all levels keeps the penalised
    fits invariant to how the levels are numbered.
    """

    def __init__(self, n_levels: Sequence[int]):
        self.n_levels = tuple(int(n) for n in n_levels)

    def transform(self, codes: np.ndarray, covariates: Sequence[int]) -> np.ndarray:
        n_rows = codes.shape[0]
        blocks = []
        for j in covariates:
            column = codes[:, j]
            n_levels = self.n_levels[j]
            unknown = (column < MISSING_CODE) | (column >= n_levels)
            if unknown.any():
                raise MissingLevelMismatch(
                    f"covariate {j} has codes {sorted(set(column[unknown].tolist()))} "
                    f"outside the {n_levels} levels seen when encoding"
                )
            block = np.zeros((n_rows, n_levels + 1))
            block[np.arange(n_rows), column + 1] = 1.0
            blocks.append(block)
        if not blocks:
            return np.empty((n_rows, 0))
        return np.hstack(blocks)


class PEFitter(ABC):
    """Capability interface of an outcome model used to compute PE."""

    @abstractmethod
    def fit(self, X: np.ndarray, y: np.ndarray, *, outcome_type: str, random_state: Optional[int] = None) -> Any:
        """Fit the outcome model and return it."""

    @abstractmethod
    def predict(self, model: Any, X: np.ndarray) -> np.ndarray:
        """Predict outcomes (class labels for discrete outcomes)."""


class RidgeFitter(PEFitter):
    """Ridge regression / classification with the penalty chosen by
    efficient leave-one-out cross-validation."""

    def __init__(self, alphas: Sequence[float] = DEFAULT_RIDGE_ALPHAS):
        self.alphas = np.asarray(alphas, dtype=float)
        if self.alphas.size == 0 or np.any(self.alphas <= 0):
            raise ConfigError("ridge alphas must be a non-empty sequence of positive numbers")

    def fit(self, X, y, *, outcome_type, random_state=None):
        if outcome_type == CONTINUOUS:
            return RidgeCV(alphas=self.alphas).fit(X, y)
        return RidgeClassifierCV(alphas=self.alphas).fit(X, y)

    def predict(self, model, X):
        return model.predict(X)


class XGBoostFitter(PEFitter):
    """Gradient-boosted trees tuned by k-fold grid search.

    The configuration with the lowest cross-validated error (mean squared
    error, or misclassification rate for discrete outcomes) is refit on all
    rows.
    """

    def __init__(
        self,
        param_grid: Optional[Mapping[str, Sequence[Any]]] = None,
        *,
        n_folds: int = 5,
        n_jobs: Optional[int] = None,
    ):
        self.param_grid = dict(DEFAULT_XGB_GRID if param_grid is None else param_grid)
        if n_folds < 2:
            raise ConfigError("n_folds must be at least 2")
        self.n_folds = n_folds
        self.n_jobs = n_jobs

    def fit(self, X, y, *, outcome_type, random_state=None):
        folds = KFold(n_splits=self.n_folds, shuffle=True, random_state=random_state)
        if outcome_type == CONTINUOUS:
            estimator = xgboost.XGBRegressor(
                objective="reg:squarederror", random_state=random_state, n_jobs=1, verbosity=0
            )
            search = GridSearchCV(
                estimator, self.param_grid, scoring="neg_mean_squared_error", cv=folds, n_jobs=self.n_jobs
            )
            return None, search.fit(X, y).best_estimator_

        # Subsets of a multiclass outcome may miss classes; XGBoost wants 0..k-1.
        encoder = LabelEncoder().fit(y)
        estimator = xgboost.XGBClassifier(random_state=random_state, n_jobs=1, verbosity=0)
        search = GridSearchCV(estimator, self.param_grid, scoring="accuracy", cv=folds, n_jobs=self.n_jobs)
        return encoder, search.fit(X, encoder.transform(y)).best_estimator_

    def predict(self, model, X):
        encoder, booster = model
        preds = booster.predict(X)
        if encoder is None:
            return preds
        return encoder.inverse_transform(np.asarray(preds, dtype=int))


class CallableFitter(PEFitter):
    """Adapter for a user supplied ``fit(X, y, **params)`` / ``predict(model, X, **params)`` pair.

    When ``predict`` is omitted the fitted model's own ``predict`` method is
    used. For discrete outcomes ``predict`` must return class labels.
    """

    def __init__(
        self,
        fit: Callable[..., Any],
        predict: Optional[Callable[..., Any]] = None,
        *,
        fit_params: Optional[Mapping[str, Any]] = None,
        predict_params: Optional[Mapping[str, Any]] = None,
    ):
        if not callable(fit):
            raise ConfigError("user_PE_fit must be callable")
        if predict is not None and not callable(predict):
            raise ConfigError("user_PE_predict must be callable")
        self._fit = fit
        self._predict = predict
        self.fit_params = dict(fit_params or {})
        self.predict_params = dict(predict_params or {})

    def fit(self, X, y, *, outcome_type, random_state=None):
        return self._fit(X, y, **self.fit_params)

    def predict(self, model, X):
        if self._predict is None:
            return model.predict(X, **self.predict_params)
        return self._predict(model, X, **self.predict_params)


def make_fitter(
    pe_method: str = "ridge",
    *,
    user_fit: Optional[Callable[..., Any]] = None,
    user_fit_params: Optional[Mapping[str, Any]] = None,
    user_predict: Optional[Callable[..., Any]] = None,
    user_predict_params: Optional[Mapping[str, Any]] = None,
) -> PEFitter:
    """Pick the fitter for a run. A user ``fit`` takes precedence over ``pe_method``."""

    if user_fit is not None:
        return CallableFitter(
            user_fit, user_predict, fit_params=user_fit_params, predict_params=user_predict_params
        )
    if user_predict is not None:
        raise ConfigError("user_PE_predict was given without user_PE_fit")
    method = str(pe_method).lower()
    if method == "ridge":
        return RidgeFitter()
    if method in ("xgb", "xgboost"):
        return XGBoostFitter()
    raise ConfigError(f"PE_method must be 'ridge' or 'xgb', got {pe_method!r}")


def prediction_error(y: np.ndarray, preds: np.ndarray, outcome_type: str) -> float:
    """Mean squared error, or misclassification rate for discrete outcomes."""

    preds = np.asarray(preds).ravel()
    if preds.shape[0] != y.shape[0]:
        raise FitFailure(f"predict returned {preds.shape[0]} values for {y.shape[0]} rows")
    if outcome_type == CONTINUOUS:
        return float(np.mean((preds.astype(float) - y) ** 2))
    if outcome_type == BINARY:
        preds = (preds.astype(float) > 0.5).astype(float)
    return float(np.mean(preds != y))


def _subset_error(fitter: PEFitter, X, y, outcome_type: str, random_state: int, label: str) -> float:
    if X.shape[0] == 0:
        raise FitFailure(f"holdout has no {label} units")
    try:
        model = fitter.fit(X, y, outcome_type=outcome_type, random_state=random_state)
        preds = fitter.predict(model, X)
    except FitFailure:
        raise
    except Exception as exc:
        raise FitFailure(f"fitting the {label} outcome model failed: {exc}") from exc
    return prediction_error(y, preds, outcome_type)


def candidate_seed(random_state: int, covariates: Sequence[int]) -> int:
    """Seed derived from the run seed and the covariate set."""

    state = np.random.SeedSequence([int(random_state), len(covariates), *[int(c) for c in covariates]])
    return int(state.generate_state(1)[0])


def estimate_pe(
    covariates: Sequence[int],
    holdouts: Sequence[Holdout],
    fitter: PEFitter,
    encoder: DesignEncoder,
    outcome_type: str,
    *,
    random_state: int = 0,
) -> float:
    """Predictive error of ``covariates``, averaged over holdout imputations.

    Raises
    ------
    FitFailure
        If a fit or predict call fails, or the design matrix cannot be built.
    """

    if outcome_type not in OUTCOME_TYPES:
        raise ConfigError(f"unknown outcome type {outcome_type!r}")
    covariates = tuple(covariates)
    seed = candidate_seed(random_state, covariates)
    errors = []
    for holdout in holdouts:
        X = encoder.transform(holdout.covariates, covariates)
        treated = holdout.treated
        error_treated = _subset_error(
            fitter, X[treated], holdout.outcome[treated], outcome_type, seed, "treated"
        )
        error_control = _subset_error(
            fitter, X[~treated], holdout.outcome[~treated], outcome_type, seed, "control"
        )
        errors.append(error_treated + error_control)
    return float(np.mean(errors))


class PredictiveErrorEstimator:
    """Memoising front-end to :func:`estimate_pe` for one search run.

    Failures are remembered as well, so a failing covariate set is fit once.
    """

    def __init__(
        self,
        holdouts: Sequence[Holdout],
        fitter: PEFitter,
        encoder: DesignEncoder,
        outcome_type: str,
        *,
        random_state: int = 0,
    ):
        if not holdouts:
            raise ConfigError("at least one holdout table is required to compute PE")
        self.holdouts = list(holdouts)
        self.fitter = fitter
        self.encoder = encoder
        self.outcome_type = outcome_type
        self.random_state = random_state
        self._cache: Dict[Tuple[int, ...], float] = {}
        self._failures: Dict[Tuple[int, ...], FitFailure] = {}

    def estimate(self, covariates: Sequence[int]) -> float:
        key = tuple(sorted(int(c) for c in covariates))
        if key in self._cache:
            return self._cache[key]
        if key in self._failures:
            raise self._failures[key]
        try:
            pe = estimate_pe(
                key, self.holdouts, self.fitter, self.encoder, self.outcome_type, random_state=self.random_state
            )
        except FitFailure as exc:
            logger.debug("PE failed on covariates %s: %s", key, exc)
            self._failures[key] = exc
            raise
        self._cache[key] = pe
        return pe
