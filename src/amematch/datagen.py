"""Synthetic data for demonstrations and tests."""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd


def gen_data(
    n: int = 250,
    p: int = 5,
    *,
    n_levels: int = 2,
    treatment_effect: float = 2.0,
    noise: float = 1.0,
    random_state: Optional[int] = None,
) -> pd.DataFrame:
    """Draw ``n`` units with ``p`` categorical covariates.

    Covariate importance decays geometrically (the first covariate matters
    most) and the treatment effect grows with the first covariate, so matched
    groups that keep it carry different CATEs.
    """

    rng = np.random.default_rng(random_state)
    covariates = rng.integers(0, n_levels, size=(n, p))
    treated = rng.binomial(1, 0.5, size=n)
    coefs = 10 * 0.5 ** np.arange(p)
    effect = treatment_effect * (1 + covariates[:, 0])
    outcome = covariates @ coefs + effect * treated + rng.normal(0, noise, size=n)

    df = pd.DataFrame(covariates, columns=[f"x{j + 1}" for j in range(p)])
    df["treated"] = treated
    df["outcome"] = outcome
    return df
