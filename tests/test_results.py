import numpy as np
import pytest

from amematch.errors import AMEError, EmptyMatchFailure
from amematch.matching import UnitStore, form_groups
from amematch.results import UNMATCHED_SENTINEL, ResultAssembler, estimate_ate, estimate_att, unit_cate
from amematch.search import SearchTrace


def make_run(outcome=(5.0, 3.0, 4.0, 1.0, 2.0, 0.0, 7.0)):
    codes = np.array([[0, 0], [0, 0], [1, 0], [1, 1], [0, 1], [1, 0], [0, 1]])
    units = UnitStore(codes, [1, 0, 1, 0, 1, 0, 1], outcome=outcome, ids=list("abcdefg"))
    groups = []
    trace = SearchTrace(baseline_pe=0.5, stop_reason="all covariates dropped")
    for covariates in [(0, 1), (1,)]:
        match_pass = form_groups(units, covariates)
        units.commit(match_pass)
        groups.extend(match_pass.groups)
        trace.matching_covs.append(covariates)
        trace.pe.append(0.5)
        trace.bf.append(1.0)
    return units, groups, trace


def make_assembler(**kwargs):
    return ResultAssembler(["age", "sex"], [["young", "old"], ["f", "m"]], **kwargs)


def test_unit_table_marks_unmatched_covariates():
    units, groups, trace = make_run()
    result = make_assembler().assemble(units, groups, trace)
    table = result.data
    assert list(table.columns) == ["age", "sex", "treated", "matched", "weight"]
    assert list(table.index) == list("abcdefg")
    # a, b matched on both covariates; d, e, g only on sex.
    assert table.loc["a"].tolist()[:2] == ["young", "f"]
    assert table.loc["e"].tolist()[:2] == [UNMATCHED_SENTINEL, "m"]
    assert table["matched"].all()
    assert table["weight"].tolist() == [1] * 7


def test_unmatched_units_show_only_sentinels():
    codes = np.array([[0, 0], [1, 1]])
    units = UnitStore(codes, [1, 0])
    trace = SearchTrace(matching_covs=[(0, 1)], baseline_pe=0.0, stop_reason="done")
    result = make_assembler(numeric_outcome=False).assemble(units, [], trace)
    assert (result.data[["age", "sex"]] == UNMATCHED_SENTINEL).all().all()
    assert not result.data["matched"].any()


def test_groups_carry_cates_and_labels():
    units, groups, trace = make_run()
    result = make_assembler().assemble(units, groups, trace)
    assert result.MGs == [["a", "b"], ["c", "f"], ["d", "e", "g"]]
    assert result.matched_on[0] == {"age": "young", "sex": "f"}
    assert result.matched_on[2] == {"sex": "m"}
    np.testing.assert_allclose(result.CATE, [2.0, 4.0, (2.0 + 7.0) / 2 - 1.0])
    assert [g.cate for g in result.matched_groups] == pytest.approx(list(result.CATE))


def test_iteration_log_names_covariates():
    units, groups, trace = make_run()
    result = make_assembler(return_pe=True, return_bf=True).assemble(units, groups, trace)
    assert result.matching_covs == [["age", "sex"], ["sex"]]
    assert result.dropped == [[], ["age"]]
    assert result.PE == [0.5, 0.5]
    assert result.BF == [1.0, 1.0]
    assert result.stop_reason == "all covariates dropped"


def test_traces_are_omitted_unless_requested():
    units, groups, trace = make_run()
    result = make_assembler().assemble(units, groups, trace)
    assert result.PE is None and result.BF is None


def test_effect_estimates_weight_groups():
    units, groups, trace = make_run()
    result = make_assembler().assemble(units, groups, trace)
    cates = result.CATE
    assert estimate_ate(result) == pytest.approx((2 * cates[0] + 2 * cates[1] + 3 * cates[2]) / 7)
    assert estimate_att(result) == pytest.approx((cates[0] + cates[1] + 2 * cates[2]) / 4)


def test_unit_cate_is_nan_for_unmatched_units():
    codes = np.array([[0], [0], [1]])
    units = UnitStore(codes, [1, 0, 1], outcome=[3.0, 1.0, 0.0])
    match_pass = form_groups(units, (0,))
    units.commit(match_pass)
    trace = SearchTrace(matching_covs=[(0,)], baseline_pe=0.0)
    result = ResultAssembler(["x"], [[0, 1]]).assemble(units, match_pass.groups, trace)
    cates = unit_cate(result)
    assert cates.iloc[:2].tolist() == [2.0, 2.0]
    assert np.isnan(cates.iloc[2])


def test_effects_need_groups_and_numeric_outcome():
    codes = np.array([[0], [1]])
    units = UnitStore(codes, [1, 0], outcome=[1.0, 0.0])
    trace = SearchTrace(matching_covs=[(0,)], baseline_pe=0.0)
    result = ResultAssembler(["x"], [[0, 1]]).assemble(units, [], trace)
    with pytest.raises(EmptyMatchFailure):
        estimate_ate(result)

    no_outcome = UnitStore(codes, [1, 0])
    result = ResultAssembler(["x"], [[0, 1]]).assemble(no_outcome, [], trace)
    assert result.CATE is None
    with pytest.raises(AMEError):
        estimate_att(result)
