import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LinearRegression

from amematch import AMEResult, ConfigError, dame, estimate_ate, estimate_att, flame, gen_data, run_ame
from amematch.results import UNMATCHED_SENTINEL

COVARIATES = [f"x{j}" for j in range(1, 6)]


def make_data(n: int = 250, seed: int = 0) -> pd.DataFrame:
    return gen_data(n=n, p=5, random_state=seed)


def shift_covariates(df: pd.DataFrame, shift: int) -> pd.DataFrame:
    df = df.copy()
    df[COVARIATES] = df[COVARIATES] + shift
    return df


def test_flame_with_large_c_matches_nearly_everything():
    data, holdout = make_data(seed=1), make_data(seed=2)
    result = flame(data, holdout, C=1e5, verbose=0)
    assert isinstance(result, AMEResult)
    assert result.n_matched >= 0.9 * len(data)
    assert result.matching_covs[0] == COVARIATES


def test_relabelled_covariates_give_identical_groups():
    data, holdout = make_data(seed=1), make_data(seed=2)
    base = flame(data, holdout, C=1e5, verbose=0)
    shifted = flame(shift_covariates(data, 1), shift_covariates(holdout, 1), C=1e5, verbose=0)
    assert shifted.MGs == base.MGs
    np.testing.assert_array_equal(shifted.CATE, base.CATE)

    labels = {0: "a", 1: "b"}
    relabelled = flame(
        data.replace({c: labels for c in COVARIATES}),
        holdout.replace({c: labels for c in COVARIATES}),
        C=1e5,
        verbose=0,
    )
    assert relabelled.MGs == base.MGs


def test_runs_are_deterministic():
    data, holdout = make_data(seed=3), make_data(seed=4)
    first = dame(data, holdout, verbose=0, return_pe=True)
    second = dame(data, holdout, verbose=0, return_pe=True)
    assert first.MGs == second.MGs
    assert first.PE == second.PE


def test_matched_groups_are_valid():
    data, holdout = make_data(seed=5), make_data(seed=6)
    result = dame(data, holdout, verbose=0)
    for group in result.matched_groups:
        members = data.iloc[list(group.rows)]
        assert members["treated"].nunique() == 2
        names = [COVARIATES[c] for c in group.covariates]
        assert (members[names].nunique() == 1).all()


def test_dame_returns_traces():
    data, holdout = make_data(seed=7), make_data(seed=8)
    result = dame(data, holdout, verbose=0, return_pe=True, return_bf=True, n_flame_iters=1)
    assert len(result.PE) == len(result.BF) == len(result.matching_covs)
    assert result.PE[0] == pytest.approx(result.baseline_pe)
    assert result.dropped[0] == []


def test_missing_values_are_not_matched_on():
    rng = np.random.default_rng(11)
    data, holdout = make_data(seed=9), make_data(seed=10)
    levels_in = {c: set(data[c].unique()) for c in COVARIATES}
    for column in COVARIATES:
        data.loc[rng.choice(len(data), size=10, replace=False), column] = np.nan

    result = flame(data, holdout, missing_data=3, verbose=0)
    for group in result.matched_groups:
        members = data.iloc[list(group.rows)]
        names = [COVARIATES[c] for c in group.covariates]
        assert not members[names].isna().any().any()

    for column in COVARIATES:
        values = result.data[column]
        assert not values.isna().any()
        assert UNMATCHED_SENTINEL in set(values)
        assert set(values) - {UNMATCHED_SENTINEL} <= levels_in[column]


def test_units_with_missing_values_are_dropped_from_matching():
    data, holdout = make_data(seed=12), make_data(seed=13)
    data.loc[[0, 1, 2], "x1"] = np.nan
    result = flame(data, holdout, missing_data="drop", verbose=0)
    assert not result.data.loc[[0, 1, 2], "matched"].any()


def test_missing_values_need_a_policy():
    data, holdout = make_data(seed=12), make_data(seed=13)
    data.loc[0, "x1"] = np.nan
    with pytest.raises(ConfigError):
        flame(data, holdout, verbose=0)


def test_imputed_data_gives_one_result_per_imputation():
    data, holdout = make_data(seed=14), make_data(seed=15)
    data.loc[:9, "x2"] = np.nan
    holdout.loc[:4, "x3"] = np.nan
    results = flame(
        data,
        holdout,
        missing_data=2,
        missing_data_imputations=2,
        missing_holdout=2,
        missing_holdout_imputations=2,
        verbose=0,
    )
    assert len(results) == 2
    for result in results:
        assert not result.data[COVARIATES].isna().any().any()


def test_parallel_imputations_match_sequential_runs():
    data, holdout = make_data(seed=16), make_data(seed=17)
    data.loc[:9, "x4"] = np.nan
    kwargs = dict(missing_data="impute", missing_data_imputations=2, verbose=0)
    sequential = flame(data, holdout, **kwargs)
    parallel = flame(data, holdout, n_jobs=2, **kwargs)
    assert [r.MGs for r in parallel] == [r.MGs for r in sequential]


def test_holdout_fraction_is_split_off():
    data = make_data(n=300, seed=18)
    result = flame(data, 0.2, verbose=0)
    assert len(result.data) == 240
    assert set(result.data.index) < set(data.index)


def test_binary_outcome_has_cates():
    data, holdout = make_data(seed=19), make_data(seed=20)
    for df in (data, holdout):
        df["outcome"] = (df["outcome"] > df["outcome"].median()).astype(int)
    result = flame(data, holdout, verbose=0)
    assert result.CATE is not None
    assert np.all(np.abs(result.CATE) <= 1)
    assert -1 <= estimate_ate(result) <= 1


def test_multiclass_outcome_has_no_cates():
    data, holdout = make_data(seed=21), make_data(seed=22)
    for df in (data, holdout):
        df["outcome"] = pd.cut(df["outcome"], 3, labels=["low", "mid", "high"]).astype(str)
    result = flame(data, holdout, verbose=0)
    assert result.CATE is None
    assert set(result.data["outcome"]) <= {"low", "mid", "high"}


def test_data_without_outcome_is_matched():
    data, holdout = make_data(seed=23), make_data(seed=24)
    result = flame(data.drop(columns="outcome"), holdout, verbose=0)
    assert result.CATE is None
    assert result.n_matched > 0


def test_user_supplied_fitter():
    data, holdout = make_data(seed=25), make_data(seed=26)
    result = flame(
        data,
        holdout,
        user_PE_fit=lambda X, y: LinearRegression().fit(X, y),
        verbose=0,
    )
    assert result.n_matched > 0


def test_custom_column_names():
    data, holdout = make_data(seed=27), make_data(seed=28)
    renames = {"treated": "is_treated", "outcome": "y"}
    result = run_ame(
        data.rename(columns=renames),
        holdout.rename(columns=renames),
        treated_column_name="is_treated",
        outcome_column_name="y",
        verbose=0,
    )
    assert {"is_treated", "y", "matched", "weight"} <= set(result.data.columns)


def test_boolean_treatment_is_kept_in_the_unit_table():
    data, holdout = make_data(seed=31), make_data(seed=32)
    data["treated"] = data["treated"].astype(bool)
    holdout["treated"] = holdout["treated"].astype(bool)
    result = flame(data, holdout, C=1e5, verbose=0)
    assert result.data["treated"].dtype == bool
    assert (result.data["treated"] == data["treated"]).all()
    assert np.isfinite(estimate_att(result))


def test_replace_allows_repeated_matches():
    data, holdout = make_data(seed=29), make_data(seed=30)
    result = dame(data, holdout, replace=True, verbose=0, early_stop_iterations=3)
    assert result.data["weight"].max() >= 1
    memberships = pd.Series(0, index=result.data.index)
    for members in result.MGs:
        memberships.loc[members] += 1
    assert (memberships == result.data["weight"]).all()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"C": 0},
        {"C": float("inf")},
        {"early_stop_epsilon": -0.1},
        {"early_stop_bf": 1.5},
        {"algo": "GREEDY"},
        {"PE_method": "lasso"},
        {"missing_data": 7},
    ],
)
def test_invalid_arguments_are_rejected(kwargs):
    data, holdout = make_data(seed=31), make_data(seed=32)
    with pytest.raises(ConfigError):
        run_ame(data, holdout, verbose=0, **kwargs)


def test_schema_errors_are_config_errors():
    data, holdout = make_data(seed=33), make_data(seed=34)
    with pytest.raises(ConfigError):
        flame(data.drop(columns="treated"), holdout, verbose=0)
    with pytest.raises(ConfigError):
        flame(data, holdout.drop(columns="outcome"), verbose=0)
    bad = data.copy()
    bad.loc[0, "treated"] = 2
    with pytest.raises(ConfigError):
        flame(bad, holdout, verbose=0)
    with pytest.raises(ConfigError):
        flame(data, holdout.drop(columns="x5"), verbose=0)
