import numpy as np
import pytest

from amematch.matching import MISSING_CODE, UnitStore, balancing_factor, form_groups


def make_units(**kwargs) -> UnitStore:
    codes = np.array(
        [
            [0, 0],  # treated
            [0, 0],  # control
            [1, 0],  # treated
            [1, 1],  # control
            [0, 1],  # treated
            [1, 0],  # control
        ]
    )
    treated = [1, 0, 1, 0, 1, 0]
    return UnitStore(codes, treated, outcome=[5.0, 3.0, 4.0, 1.0, 2.0, 1.0], **kwargs)


def test_form_groups_requires_treated_and_control():
    units = make_units()
    match_pass = form_groups(units, (0, 1))
    assert [g.rows for g in match_pass.groups] == [(0, 1), (2, 5)]
    assert [g.values for g in match_pass.groups] == [(0, 0), (1, 0)]
    assert match_pass.n_treated == 2
    assert match_pass.n_control == 2
    assert sorted(match_pass.rows.tolist()) == [0, 1, 2, 5]


def test_form_groups_does_not_modify_units():
    units = make_units()
    form_groups(units, (0, 1))
    assert not units.matched.any()
    assert units.weight.sum() == 0


def test_groups_emitted_in_order_of_first_appearance():
    units = make_units()
    match_pass = form_groups(units, (0,))
    assert [g.rows for g in match_pass.groups] == [(0, 1, 4), (2, 3, 5)]


def test_members_share_codes_on_active_covariates():
    rng = np.random.default_rng(3)
    codes = rng.integers(0, 3, size=(200, 4))
    treated = rng.binomial(1, 0.5, size=200)
    units = UnitStore(codes, treated)
    match_pass = form_groups(units, (1, 3))
    assert match_pass.groups
    for group in match_pass.groups:
        rows = list(group.rows)
        assert (codes[rows][:, [1, 3]] == np.array(group.values)).all()
        assert units.treated[rows].any() and (~units.treated[rows]).any()


def test_ids_are_reported_for_members():
    units = make_units(ids=["a", "b", "c", "d", "e", "f"])
    match_pass = form_groups(units, (0, 1))
    assert [g.ids for g in match_pass.groups] == [("a", "b"), ("c", "f")]


def test_matched_units_are_excluded_without_replacement():
    units = make_units()
    units.commit(form_groups(units, (0, 1)))
    match_pass = form_groups(units, (0,))
    assert match_pass.groups == []
    assert balancing_factor(units, match_pass) == 0.0


def test_replace_keeps_matched_units_and_counts_weight():
    units = make_units()
    units.commit(form_groups(units, (0, 1), replace=True))
    units.commit(form_groups(units, (0,), replace=True))
    assert units.weight.tolist() == [2, 2, 2, 1, 1, 2]
    assert units.matched.all()
    assert units.matched_on[0] == [(0, 1), (0,)]
    assert units.matched_on[3] == [(0,)]


def test_balancing_factor_uses_unmatched_denominators():
    units = make_units()
    match_pass = form_groups(units, (0, 1))
    assert balancing_factor(units, match_pass) == pytest.approx(2 / 3 + 2 / 3)

    units.commit(match_pass)
    second = form_groups(units, (1,))
    assert [g.rows for g in second.groups] == [(3, 4)]
    assert balancing_factor(units, second) == pytest.approx(1.0 + 1.0)


def test_balancing_factor_uses_totals_with_replacement():
    units = make_units()
    units.commit(form_groups(units, (0, 1), replace=True))
    match_pass = form_groups(units, (0,), replace=True)
    assert balancing_factor(units, match_pass, replace=True) == pytest.approx(2.0)


def test_missing_codes_exclude_unit_from_covariate_sets_containing_them():
    codes = np.array([[0, MISSING_CODE], [0, 0], [0, 1], [0, 1]])
    units = UnitStore(codes, [1, 0, 1, 0])
    on_both = form_groups(units, (0, 1))
    assert [g.rows for g in on_both.groups] == [(2, 3)]
    on_first = form_groups(units, (0,))
    assert [g.rows for g in on_first.groups] == [(0, 1, 2, 3)]


def test_missing_codes_match_each_other_when_ignored():
    codes = np.array([[MISSING_CODE, 0], [MISSING_CODE, 0], [1, 0]])
    units = UnitStore(codes, [1, 0, 1], match_missing=True)
    match_pass = form_groups(units, (0, 1))
    assert [g.rows for g in match_pass.groups] == [(0, 1)]
    assert match_pass.groups[0].values == (MISSING_CODE, 0)


def test_ineligible_units_are_never_matched():
    units = make_units(eligible=[True, False, True, True, True, True])
    match_pass = form_groups(units, (0, 1))
    assert [g.rows for g in match_pass.groups] == [(2, 5)]
    assert units.total_counts() == (3, 2)


def test_commit_only_sets_matched_flags():
    units = make_units()
    units.commit(form_groups(units, (0, 1)))
    before = units.matched.copy()
    units.commit(form_groups(units, (1,)))
    assert (units.matched >= before).all()
    assert units.weight.max() == 1


def test_projected_unmatched_fractions():
    units = make_units()
    match_pass = form_groups(units, (0, 1))
    treated, control = units.projected_unmatched_fractions(match_pass)
    assert treated == pytest.approx(1 / 3)
    assert control == pytest.approx(1 / 3)
    assert not units.matched.any()


def test_large_codes_do_not_overflow_labels():
    rng = np.random.default_rng(0)
    codes = rng.integers(0, 1_000_000, size=(50, 30))
    codes[1] = codes[0]
    units = UnitStore(codes, [1, 0] + [1] * 48)
    match_pass = form_groups(units, tuple(range(30)))
    assert [g.rows for g in match_pass.groups] == [(0, 1)]
