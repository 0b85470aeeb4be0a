"""Multiple imputation of missing covariate codes.

Each imputation draws from the posterior of a chained-equations model
(scikit-learn's ``IterativeImputer``), then snaps the draws back to valid
level codes. Observed codes are never changed.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer

from .matching import MISSING_CODE

logger = logging.getLogger(__name__)


def impute_codes(
    codes: np.ndarray,
    n_levels: Sequence[int],
    n_imputations: int,
    *,
    extra: Optional[np.ndarray] = None,
    random_state: int = 0,
    max_iter: int = 10,
) -> List[np.ndarray]:
    """Return ``n_imputations`` completed copies of ``codes``.

    Parameters
    ----------
    codes:
        Covariate codes with ``MISSING_CODE`` marking missing entries.
    n_levels:
        Number of levels of each covariate; imputed codes are clipped to them.
    n_imputations:
        Number of completed tables to produce.
    extra:
        Optional fully observed columns (treatment, outcome) used as
        predictors but not imputed.
    random_state:
        Seed of the first imputation; imputation ``i`` uses ``random_state + i``.
    """

    codes = np.asarray(codes, dtype=np.int64)
    missing = codes == MISSING_CODE
    if not missing.any():
        return [codes.copy() for _ in range(n_imputations)]

    n_covariates = codes.shape[1]
    design = codes.astype(float)
    design[missing] = np.nan
    if extra is not None:
        design = np.column_stack([design, np.asarray(extra, dtype=float)])
    upper = np.asarray(n_levels, dtype=float) - 1

    logger.debug("Imputing %d missing covariate values %d times", int(missing.sum()), n_imputations)
    completed = []
    for i in range(n_imputations):
        imputer = IterativeImputer(
            max_iter=max_iter,
            sample_posterior=True,
            keep_empty_features=True,
            random_state=random_state + i,
        )
        draws = imputer.fit_transform(design)[:, :n_covariates]
        draws = np.clip(np.rint(draws), 0, upper).astype(np.int64)
        draws[~missing] = codes[~missing]
        completed.append(draws)
    return completed
