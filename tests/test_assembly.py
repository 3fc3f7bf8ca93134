from __future__ import annotations

import pandas as pd
import pytest

from perturb_discovery.assembly import (
    AssembledMatrices,
    assemble_matrices,
    check_disjoint_conditions,
    indicator_columns,
    select_cells,
)
from perturb_discovery.exceptions import DataContractError, InvariantViolation, MissingColumnError
from perturb_discovery.models import ConditionMatch


def test_assembled_matrices_share_ordered_cells(annotations, counts, layout):
    matrices = assemble_matrices(annotations, counts, layout, "stim")

    assert list(matrices.expression.columns) == list(matrices.perturbation.columns)
    assert list(matrices.expression.columns) == list(matrices.covariates.index)
    assert len(matrices.cells) == 60
    assert all(cell.startswith("stim_") for cell in matrices.cells)


def test_perturbation_matrix_is_binary_target_by_cell(annotations, counts, layout):
    matrices = assemble_matrices(annotations, counts, layout, "rest")

    assert matrices.targets == ["T1", "T2", "NonTarget"]
    assert set(pd.unique(matrices.perturbation.to_numpy().ravel())) <= {0, 1}
    assert matrices.perturbation.sum(axis=1).tolist() == [20, 20, 20]


def test_covariates_are_exactly_the_configured_columns(annotations, counts, layout):
    annotations["extra_qc"] = 1.0
    matrices = assemble_matrices(annotations, counts, layout, "stim")
    assert matrices.covariates.columns.tolist() == ["nCount_RNA", "nFeature_RNA", "percent_mt"]


def test_missing_covariate_raises_before_assembly(annotations, counts, layout):
    layout = layout.model_copy(update={"covariate_columns": ["nCount_RNA", "percent_ribo"]})
    with pytest.raises(MissingColumnError) as excinfo:
        assemble_matrices(annotations, counts, layout, "stim")
    assert excinfo.value.columns == ["percent_ribo"]
    assert "percent_ribo" in str(excinfo.value)


def test_indicator_span_width_must_match_configuration(annotations, layout):
    layout = layout.model_copy(update={"expected_target_count": 4})
    with pytest.raises(DataContractError, match="holds 3 columns"):
        indicator_columns(annotations, layout)


def test_indicator_span_endpoints_must_exist(annotations, layout):
    layout = layout.model_copy(update={"indicator_end": "T9"})
    with pytest.raises(MissingColumnError):
        indicator_columns(annotations, layout)


def test_non_binary_indicator_rejected(annotations, counts, layout):
    annotations.loc["stim_T1_00", "T1"] = 2
    with pytest.raises(DataContractError, match="stim_T1_00"):
        assemble_matrices(annotations, counts, layout, "stim")


def test_unobserved_targets_are_dropped(annotations, counts, layout):
    subset = annotations[annotations["T2"] == 0]
    matrices = assemble_matrices(subset, counts, layout, "stim")
    assert matrices.targets == ["T1", "NonTarget"]


def test_suffix_condition_match(annotations, counts, layout):
    annotations["orig.ident"] = "run1_" + annotations["orig.ident"]
    layout = layout.model_copy(update={"condition_match": ConditionMatch.SUFFIX})
    cells = select_cells(annotations, layout, "stim")
    assert len(cells) == 60



def test_suffix_match_needs_a_delimiter(layout):
    annotations = pd.DataFrame(
        {"orig.ident": ["D1_stim", "D1_unstim", "stim", "D2-stim", "D2stim"]},
        index=["c1", "c2", "c3", "c4", "c5"],
    )
    layout = layout.model_copy(update={"condition_match": ConditionMatch.SUFFIX})
    assert select_cells(annotations, layout, "stim").tolist() == ["c1", "c3", "c4"]
    assert select_cells(annotations, layout, "unstim").tolist() == ["c2"]


def test_overlapping_conditions_raise_invariant(annotations, layout):
    annotations["orig.ident"] = "D1_" + annotations["orig.ident"]
    layout = layout.model_copy(update={"condition_match": ConditionMatch.SUFFIX})

    check_disjoint_conditions(annotations, layout, ["stim", "rest"])
    with pytest.raises(InvariantViolation, match="stim, D1_stim") as excinfo:
        check_disjoint_conditions(annotations, layout, ["stim", "D1_stim", "rest"])
    assert len(excinfo.value.identifiers) == 60
    assert excinfo.value.identifiers[0] == "stim_T1_00"


def test_unknown_condition_raises(annotations, layout):
    with pytest.raises(DataContractError, match="No cells match"):
        select_cells(annotations, layout, "unknown")


def test_cells_missing_from_counts_raise_invariant(annotations, counts, layout):
    counts = counts.drop(columns=["stim_T2_05"])
    with pytest.raises(InvariantViolation) as excinfo:
        assemble_matrices(annotations, counts, layout, "stim")
    assert excinfo.value.identifiers == ["stim_T2_05"]


def test_validate_detects_reordered_covariates(annotations, counts, layout):
    matrices = assemble_matrices(annotations, counts, layout, "stim")
    shuffled = AssembledMatrices(
        condition="stim",
        expression=matrices.expression,
        perturbation=matrices.perturbation,
        covariates=matrices.covariates.iloc[::-1],
    )
    with pytest.raises(InvariantViolation, match="covariates"):
        shuffled.validate()
