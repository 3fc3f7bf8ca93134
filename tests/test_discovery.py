from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from perturb_discovery.discovery import benjamini_hochberg, build_discovery_set, discovery_summary
from perturb_discovery.models import CalibrationMode
from perturb_discovery.pairs import build_pair_universe


def test_benjamini_hochberg_known_values():
    adjusted = benjamini_hochberg(np.array([0.001, 0.02, 0.03, 0.5, 0.8]))
    np.testing.assert_allclose(adjusted, [0.005, 0.05, 0.05, 0.625, 0.8])


def test_benjamini_hochberg_preserves_input_order_and_is_monotone():
    pvalues = np.array([0.04, 0.001, 0.3, 0.02])
    adjusted = benjamini_hochberg(pvalues)
    order = np.argsort(pvalues)
    assert np.all(np.diff(adjusted[order]) >= 0)
    assert np.all(adjusted >= pvalues)
    assert adjusted.max() <= 1.0


def test_benjamini_hochberg_handles_ties_and_empty_input():
    tied = benjamini_hochberg(np.array([0.01, 0.01, 0.01]))
    np.testing.assert_allclose(tied, [0.01, 0.01, 0.01])
    assert benjamini_hochberg(np.array([])).size == 0


def _universe():
    return build_pair_universe(["g1", "g2", "g3"], ["A", "B", "Control"], "Control")


def _rows(pvalues):
    universe = _universe()
    return [
        (row.gene, row.target, row.pair_type, pvalue)
        for row, pvalue in zip(universe.itertuples(index=False), pvalues)
    ]


def test_controls_are_excluded_from_the_correction(make_result):
    # Pair order: g1/A, g1/B, g1/Control, g2/A, ... ; controls carry tiny p-values.
    pvalues = [0.001, 0.5, 1e-9, 0.02, 0.6, 1e-9, 0.03, 0.7, 1e-9]
    result = make_result(_rows(pvalues))

    discoveries = build_discovery_set(result, _universe(), threshold=0.1)

    assert len(discoveries) == 6
    assert set(discoveries["pair_type"]) == {"candidate"}
    expected = benjamini_hochberg(np.array([0.001, 0.5, 0.02, 0.6, 0.03, 0.7]))
    np.testing.assert_allclose(discoveries["adjusted_p_value"], expected)


def test_discovered_pairs_are_candidates_below_threshold(make_result):
    pvalues = [0.001, 0.5, 0.2, 0.02, 0.6, 0.3, 0.03, 0.7, 0.4]
    result = make_result(_rows(pvalues))
    discoveries = build_discovery_set(result, _universe(), threshold=0.1)

    called = discoveries[discoveries["discovered"]]
    assert list(zip(called["gene"], called["target"])) == [("g1", "A"), ("g2", "A"), ("g3", "A")]
    assert (called["adjusted_p_value"] <= 0.1).all()


def test_threshold_is_inclusive(make_result):
    pvalues = [0.0625, 0.9, 0.5, 0.9, 0.9, 0.5, 0.9, 0.9, 0.5]
    result = make_result(_rows(pvalues))
    # Smallest candidate adjusted value is 0.0625 * 6 / 1 = 0.375.
    discoveries = build_discovery_set(result, _universe(), threshold=0.375)
    assert discoveries["discovered"].sum() == 1


def test_discovery_set_is_deterministic(make_result):
    pvalues = [0.01, 0.01, 0.5, 0.01, 0.2, 0.5, 0.3, 0.01, 0.5]
    result = make_result(_rows(pvalues))
    first = build_discovery_set(result, _universe(), threshold=0.1)
    second = build_discovery_set(result, _universe(), threshold=0.1)
    pd.testing.assert_frame_equal(first, second)


@pytest.mark.parametrize("threshold", [0.0, -0.1, 1.5])
def test_invalid_threshold_rejected(make_result, threshold):
    result = make_result(_rows([0.5] * 9))
    with pytest.raises(ValueError, match="threshold"):
        build_discovery_set(result, _universe(), threshold=threshold)


def test_permuted_results_cannot_build_discoveries(make_result):
    result = make_result(_rows([0.5] * 9), mode=CalibrationMode.PERMUTED, replicate=1)
    with pytest.raises(ValueError, match="real runs"):
        build_discovery_set(result, _universe())


def test_discovery_summary_counts_per_target(make_result):
    pvalues = [0.001, 0.5, 0.2, 0.002, 0.6, 0.3, 0.8, 0.7, 0.4]
    discoveries = build_discovery_set(make_result(_rows(pvalues)), _universe(), threshold=0.1)
    summary = discovery_summary(discoveries)
    assert summary.to_dict() == {"A": 2, "B": 0}


def test_discovery_set_grows_with_threshold(make_result):
    rng = np.random.default_rng(3)
    genes = [f"g{idx}" for idx in range(50)]
    universe = build_pair_universe(genes, ["A", "B", "Control"], "Control")
    pvalues = rng.uniform(0, 1, len(universe)) ** 3
    rows = [(row.gene, row.target, row.pair_type, p) for row, p in zip(universe.itertuples(index=False), pvalues)]
    result = make_result(rows)

    previous = set()
    for threshold in [0.01, 0.05, 0.1, 0.25, 0.5, 1.0]:
        discoveries = build_discovery_set(result, universe, threshold=threshold)
        hits = discoveries[discoveries["discovered"]]
        called = set(zip(hits["gene"], hits["target"]))
        assert previous <= called
        previous = called
    assert len(previous) == 100
