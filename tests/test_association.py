from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from perturb_discovery.assembly import assemble_matrices
from perturb_discovery.association import (
    AssociationRunner,
    WelchAssociationRunner,
    permutation_seed,
    run_association,
    run_replicates,
)
from perturb_discovery.exceptions import ContractViolation
from perturb_discovery.models import CalibrationMode
from perturb_discovery.pairs import build_pair_universe


@pytest.fixture()
def matrices(annotations, counts, layout):
    return assemble_matrices(annotations, counts, layout, "stim")


@pytest.fixture()
def universe(matrices):
    return build_pair_universe(["G0", "G1", "G2"], matrices.targets, "NonTarget")


def _constant_runner(p_value=0.5):
    def runner(matrices, universe, mode, seed):
        return pd.DataFrame(
            {
                "gene": universe["gene"],
                "target": universe["target"],
                "p_value": p_value,
                "effect": 0.0,
            }
        )

    return runner


def test_runner_output_keeps_universe_pair_types(matrices, universe):
    def runner(matrices, universe, mode, seed):
        frame = _constant_runner()(matrices, universe, mode, seed)
        frame["pair_type"] = "candidate"
        return frame

    result = run_association(runner, matrices, universe)
    assert result.table["pair_type"].tolist() == universe["pair_type"].tolist()
    assert result.label == "real"
    assert not result.is_permuted


def test_missing_pair_raises_contract_violation(matrices, universe):
    def runner(matrices, universe, mode, seed):
        return _constant_runner()(matrices, universe, mode, seed).iloc[1:]

    with pytest.raises(ContractViolation) as excinfo:
        run_association(runner, matrices, universe)
    assert excinfo.value.missing == [("G0", "T1")]
    assert excinfo.value.added == []
    assert excinfo.value.condition == "stim"


def test_extra_pair_raises_contract_violation(matrices, universe):
    def runner(matrices, universe, mode, seed):
        frame = _constant_runner()(matrices, universe, mode, seed)
        extra = pd.DataFrame({"gene": ["G9"], "target": ["T1"], "p_value": [0.1], "effect": [0.0]})
        return pd.concat([frame, extra], ignore_index=True)

    with pytest.raises(ContractViolation) as excinfo:
        run_association(runner, matrices, universe)
    assert excinfo.value.added == [("G9", "T1")]


def test_reordered_pairs_raise_contract_violation(matrices, universe):
    def runner(matrices, universe, mode, seed):
        return _constant_runner()(matrices, universe, mode, seed).iloc[::-1]

    with pytest.raises(ContractViolation, match="reordered"):
        run_association(runner, matrices, universe)


def test_out_of_range_pvalues_rejected(matrices, universe):
    with pytest.raises(ContractViolation, match="outside"):
        run_association(_constant_runner(p_value=1.5), matrices, universe)


def test_out_of_range_pvalues_reported_as_invalid_not_unexpected(matrices, universe):
    def runner(matrices, universe, mode, seed):
        frame = _constant_runner()(matrices, universe, mode, seed)
        frame.loc[frame.index[0], "p_value"] = -0.2
        return frame

    with pytest.raises(ContractViolation) as excinfo:
        run_association(runner, matrices, universe)
    assert excinfo.value.invalid == [("G0", "T1")]
    assert excinfo.value.added == []
    assert excinfo.value.missing == []
    assert "invalid p-values" in str(excinfo.value)
    assert "unexpected pairs" not in str(excinfo.value)


def test_non_dataframe_output_rejected(matrices, universe):
    with pytest.raises(ContractViolation, match="instead of a DataFrame"):
        run_association(lambda *args: [0.5] * 9, matrices, universe)


def test_permuted_run_requires_seed(matrices, universe):
    with pytest.raises(ValueError, match="seed"):
        run_association(_constant_runner(), matrices, universe, CalibrationMode.PERMUTED)


def test_permutation_seeds_are_reproducible_and_distinct():
    assert permutation_seed(3, 1) == permutation_seed(3, 1)
    assert len({permutation_seed(3, replicate) for replicate in range(1, 20)}) == 19
    assert permutation_seed(3, 1) != permutation_seed(4, 1)


def test_replicates_return_in_order_with_provenance(matrices, universe):
    seen = []

    def runner(matrices, universe, mode, seed):
        seen.append((mode, seed))
        return _constant_runner()(matrices, universe, mode, seed)

    real, permuted = run_replicates(runner, matrices, universe, n_permutations=4, base_seed=5)

    assert real.mode == CalibrationMode.NORMAL
    assert [result.replicate for result in permuted] == [1, 2, 3, 4]
    assert [result.seed for result in permuted] == [permutation_seed(5, r) for r in range(1, 5)]
    assert [result.label for result in permuted] == ["perm_001", "perm_002", "perm_003", "perm_004"]
    assert len(seen) == 5


def test_replicate_failure_aborts_batch(matrices, universe):
    def runner(matrices, universe, mode, seed):
        if mode == CalibrationMode.PERMUTED and seed == permutation_seed(0, 2):
            return pd.DataFrame({"gene": [], "target": [], "p_value": [], "effect": []})
        return _constant_runner()(matrices, universe, mode, seed)

    with pytest.raises(ContractViolation) as excinfo:
        run_replicates(runner, matrices, universe, n_permutations=3, max_workers=2)
    assert excinfo.value.replicate == 2


def test_welch_runner_satisfies_protocol():
    assert isinstance(WelchAssociationRunner("NonTarget"), AssociationRunner)


def test_welch_runner_detects_knockdown(matrices, genes):
    universe = build_pair_universe(genes, matrices.targets, "NonTarget")
    result = run_association(WelchAssociationRunner("NonTarget"), matrices, universe)

    table = result.table.set_index(["gene", "target"])
    assert table.loc[("G0", "T1"), "p_value"] < 1e-6
    assert table.loc[("G0", "T1"), "effect"] < 0
    assert table["p_value"].between(0, 1).all()


def test_welch_runner_is_deterministic(matrices, universe):
    runner = WelchAssociationRunner("NonTarget")
    first = runner(matrices, universe, CalibrationMode.NORMAL, None)
    second = runner(matrices, universe, CalibrationMode.NORMAL, None)
    pd.testing.assert_frame_equal(first, second)


def test_permuted_runs_reproduce_under_same_seed(matrices, genes):
    universe = build_pair_universe(genes, matrices.targets, "NonTarget")
    runner = WelchAssociationRunner("NonTarget")

    first = runner(matrices, universe, CalibrationMode.PERMUTED, 123)
    again = runner(matrices, universe, CalibrationMode.PERMUTED, 123)
    other = runner(matrices, universe, CalibrationMode.PERMUTED, 456)

    pd.testing.assert_frame_equal(first, again)
    assert not np.allclose(first["p_value"], other["p_value"])


def test_threaded_replicates_match_sequential(matrices, universe):
    runner = WelchAssociationRunner("NonTarget")
    _, sequential = run_replicates(runner, matrices, universe, n_permutations=3, base_seed=9, max_workers=1)
    _, threaded = run_replicates(runner, matrices, universe, n_permutations=3, base_seed=9, max_workers=3)

    for left, right in zip(sequential, threaded):
        assert left.replicate == right.replicate
        pd.testing.assert_frame_equal(left.table, right.table)
