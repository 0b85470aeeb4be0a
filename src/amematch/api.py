"""Entry points: FLAME, DAME and the shared driver.

One search is run per data imputation (one if the data is complete). Runs
share no mutable state, so with ``n_jobs != 1`` they are dispatched through
``joblib``. Results are returned per imputation; pooling them is left to the
caller.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .config import AMEConfig, EarlyStopConfig
from .matching import UnitStore
from .predictive_error import DesignEncoder, PEFitter, PredictiveErrorEstimator, make_fitter
from .preprocess import HoldoutSpec, PreparedInputs, prepare_inputs, split_holdout
from .results import AMEResult, ResultAssembler
from .search import LatticeSearchController

logger = logging.getLogger(__name__)


def run_search(
    codes: np.ndarray,
    prepared: PreparedInputs,
    fitter: PEFitter,
    config: AMEConfig,
    assembler: ResultAssembler,
) -> AMEResult:
    """Run one search on one completed copy of the data codes."""

    units = UnitStore(
        codes,
        prepared.treated,
        outcome=prepared.outcome,
        ids=prepared.data.index,
        eligible=prepared.eligible,
        match_missing=prepared.match_missing,
    )
    estimator = PredictiveErrorEstimator(
        prepared.bundle.holdout,
        fitter,
        DesignEncoder(prepared.n_levels),
        prepared.outcome_type,
        random_state=config.random_state,
    )
    controller = LatticeSearchController(units, estimator, config)
    trace = controller.run()
    outcome = None if prepared.outcome_labels is None else prepared.outcome_labels.to_numpy()
    treatment = prepared.data[assembler.treated_column_name].to_numpy()
    return assembler.assemble(units, controller.groups, trace, outcome=outcome, treatment=treatment)


def run_ame(
    data: Union[pd.DataFrame, str],
    holdout: HoldoutSpec = 0.1,
    *,
    algo: str = "FLAME",
    C: float = 0.1,
    treated_column_name: str = "treated",
    outcome_column_name: str = "outcome",
    PE_method: str = "ridge",
    n_flame_iters: int = 0,
    user_PE_fit: Optional[Callable[..., Any]] = None,
    user_PE_fit_params: Optional[Mapping[str, Any]] = None,
    user_PE_predict: Optional[Callable[..., Any]] = None,
    user_PE_predict_params: Optional[Mapping[str, Any]] = None,
    replace: bool = False,
    verbose: int = 2,
    return_pe: bool = False,
    return_bf: bool = False,
    early_stop_iterations: float = math.inf,
    early_stop_epsilon: float = 0.25,
    early_stop_control: float = 0.0,
    early_stop_treated: float = 0.0,
    early_stop_pe: float = math.inf,
    early_stop_bf: float = 0.0,
    missing_data: Union[int, str] = 0,
    missing_holdout: Union[int, str] = 0,
    missing_data_imputations: int = 5,
    missing_holdout_imputations: int = 5,
    impute_with_treatment: bool = True,
    impute_with_outcome: bool = False,
    random_state: int = 0,
    n_jobs: int = 1,
) -> Union[AMEResult, List[AMEResult]]:
    """Almost-matching-exactly on categorical covariates.

    Parameters
    ----------
    data:
        Units to match, or a path to a CSV/Parquet file. Every column other
        than the treatment and outcome columns is a categorical covariate.
    holdout:
        Holdout set used to compute predictive error: a data frame, a path, or
        a fraction of ``data`` to split off (not matched). Defaults to 0.1.
    algo:
        ``"FLAME"`` (greedy, one covariate dropped per iteration) or ``"DAME"``
        (best-first search over the covariate-set lattice).
    C:
        Weight of the balancing factor against predictive error in
        ``MQ = C * BF - PE``.

    The remaining arguments mirror :class:`~amematch.config.AMEConfig` and
    :class:`~amematch.config.EarlyStopConfig`.

    Returns
    -------
    AMEResult or list of AMEResult
        One result, or one per data imputation when ``missing_data`` is
        ``"impute"``.
    """

    config = AMEConfig(
        C=C,
        algo=algo,
        n_flame_iters=n_flame_iters,
        replace=replace,
        verbose=verbose,
        return_pe=return_pe,
        return_bf=return_bf,
        missing_data=missing_data,
        missing_holdout=missing_holdout,
        missing_data_imputations=missing_data_imputations,
        missing_holdout_imputations=missing_holdout_imputations,
        impute_with_treatment=impute_with_treatment,
        impute_with_outcome=impute_with_outcome,
        random_state=random_state,
        n_jobs=n_jobs,
        early_stop=EarlyStopConfig(
            iterations=early_stop_iterations,
            epsilon=early_stop_epsilon,
            control=early_stop_control,
            treated=early_stop_treated,
            pe=early_stop_pe,
            bf=early_stop_bf,
        ),
    ).validate()
    fitter = make_fitter(
        PE_method,
        user_fit=user_PE_fit,
        user_fit_params=user_PE_fit_params,
        user_predict=user_PE_predict,
        user_predict_params=user_PE_predict_params,
    )

    data, holdout = split_holdout(data, holdout, random_state=random_state)
    prepared = prepare_inputs(
        data,
        holdout,
        config,
        treated_column_name=treated_column_name,
        outcome_column_name=outcome_column_name,
    )
    assembler = ResultAssembler(
        prepared.covariate_names,
        prepared.levels,
        treated_column_name=treated_column_name,
        outcome_column_name=outcome_column_name,
        numeric_outcome=prepared.outcome is not None,
        return_pe=return_pe,
        return_bf=return_bf,
    )

    variants = prepared.bundle.data
    if len(variants) == 1:
        return run_search(variants[0], prepared, fitter, config, assembler)

    logger.info("Running %s on %d imputed datasets", config.algo, len(variants))
    if config.n_jobs != 1:
        return Parallel(n_jobs=config.n_jobs)(
            delayed(run_search)(codes, prepared, fitter, config, assembler) for codes in variants
        )
    return [
        run_search(codes, prepared, fitter, config, assembler)
        for codes in tqdm(variants, desc=f"{config.algo} on imputed datasets", disable=config.verbose == 0)
    ]


def flame(data: Union[pd.DataFrame, str], holdout: HoldoutSpec = 0.1, **kwargs: Any):
    """FLAME: greedy backward elimination of covariates. See :func:`run_ame`."""

    return run_ame(data, holdout, algo="FLAME", **kwargs)


def dame(data: Union[pd.DataFrame, str], holdout: HoldoutSpec = 0.1, **kwargs: Any):
    """DAME: best-first search over covariate subsets. See :func:`run_ame`."""

    return run_ame(data, holdout, algo="DAME", **kwargs)
