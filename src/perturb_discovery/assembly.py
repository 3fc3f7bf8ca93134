"""Assemble aligned expression, perturbation and covariate matrices per cell subset."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
import pandas as pd

from .exceptions import DataContractError, InvariantViolation, MissingColumnError
from .logging_config import get_logger
from .models import AssemblyLayout, ConditionMatch

logger = get_logger(__name__)

SUFFIX_DELIMITERS = "_-.:|"


@dataclass(frozen=True)
class AssembledMatrices:
    """Aligned test inputs for one cell subset.

    ``expression`` is genes x cells, ``perturbation`` is targets x cells (0/1) and
    ``covariates`` is cells x covariates. All three share one ordered cell index.
    """

    condition: str
    expression: pd.DataFrame
    perturbation: pd.DataFrame
    covariates: pd.DataFrame

    @property
    def cells(self) -> pd.Index:
        return self.expression.columns

    @property
    def targets(self) -> List[str]:
        return self.perturbation.index.tolist()

    @property
    def genes(self) -> List[str]:
        return self.expression.index.tolist()

    def validate(self) -> "AssembledMatrices":
        """Raise InvariantViolation unless all three matrices share the same ordered cells."""
        reference = self.expression.columns
        for name, index in (
            ("perturbation", self.perturbation.columns),
            ("covariates", self.covariates.index),
        ):
            if not index.equals(reference):
                mismatched = [cell for cell, expected in zip(index, reference) if cell != expected]
                mismatched.extend(index[len(reference):].tolist())
                mismatched.extend(reference[len(index):].tolist())
                raise InvariantViolation(
                    f"Cell order of {name} matrix disagrees with expression matrix for condition '{self.condition}'",
                    identifiers=mismatched,
                )
        values = self.perturbation.to_numpy()
        if values.size and not np.isin(values, (0, 1)).all():
            raise InvariantViolation(
                f"Perturbation matrix for condition '{self.condition}' contains values outside {{0, 1}}",
                identifiers=self.perturbation.index[~np.isin(values, (0, 1)).all(axis=1)].tolist(),
            )
        return self


def _condition_mask(annotations: pd.DataFrame, layout: AssemblyLayout, condition: str) -> pd.Series:
    if layout.condition_column not in annotations.columns:
        raise MissingColumnError([layout.condition_column])

    field = annotations[layout.condition_column].astype(str)
    if layout.condition_match == ConditionMatch.SUFFIX:
        # "D1_unstim" does not end in condition "stim"
        pattern = f"(?:^|[{re.escape(SUFFIX_DELIMITERS)}]){re.escape(condition)}$"
        return field.str.contains(pattern, regex=True)
    return field == condition


def select_cells(annotations: pd.DataFrame, layout: AssemblyLayout, condition: str) -> pd.Index:
    """Return barcodes whose condition field matches ``condition``, in annotation order.

    In suffix mode the condition must be the whole field or end it right after one
    of the delimiters ``_-.:|``.
    """
    mask = _condition_mask(annotations, layout, condition)
    selected = annotations.index[mask.to_numpy()]
    if selected.empty:
        raise DataContractError(
            f"No cells match condition '{condition}' in column '{layout.condition_column}'."
        )
    return selected


def check_disjoint_conditions(annotations: pd.DataFrame, layout: AssemblyLayout, conditions: Sequence[str]) -> None:
    """Raise InvariantViolation when a cell would be selected by more than one condition."""
    masks = pd.DataFrame(
        {condition: _condition_mask(annotations, layout, condition).to_numpy() for condition in conditions},
        index=annotations.index,
    )
    shared = masks.sum(axis=1) > 1
    if shared.any():
        overlapping = [condition for condition in conditions if masks.loc[shared, condition].any()]
        raise InvariantViolation(
            f"Cells match more than one of the conditions {', '.join(overlapping)}",
            identifiers=annotations.index[shared.to_numpy()].tolist(),
        )


def indicator_columns(annotations: pd.DataFrame, layout: AssemblyLayout) -> List[str]:
    """Resolve the configured contiguous span of per-target indicator columns."""
    columns = annotations.columns.tolist()
    missing = [name for name in (layout.indicator_start, layout.indicator_end) if name not in columns]
    if missing:
        raise MissingColumnError(missing)

    start = columns.index(layout.indicator_start)
    end = columns.index(layout.indicator_end)
    if end < start:
        raise DataContractError(
            f"Indicator span is reversed: '{layout.indicator_start}' appears after '{layout.indicator_end}'."
        )
    span = columns[start : end + 1]

    overlap = sorted(set(span) & ({layout.condition_column} | set(layout.covariate_columns)))
    if overlap:
        raise DataContractError(f"Indicator span overlaps non-indicator columns: {', '.join(overlap)}")

    if layout.expected_target_count is not None and len(span) != layout.expected_target_count:
        raise DataContractError(
            f"Indicator span '{layout.indicator_start}'..'{layout.indicator_end}' holds {len(span)} columns "
            f"but {layout.expected_target_count} targets were configured."
        )
    return span


def _indicator_block(annotations: pd.DataFrame, cells: pd.Index, span: List[str]) -> pd.DataFrame:
    block = annotations.loc[cells, span].apply(pd.to_numeric, errors="coerce")
    invalid = block.isna() | ~block.isin([0, 1])
    if invalid.any().any():
        rows, cols = np.nonzero(invalid.to_numpy())
        offenders = [f"{block.index[row]}:{block.columns[col]}" for row, col in zip(rows, cols)]
        raise DataContractError(
            f"Perturbation indicators must be 0/1; offending cells: {', '.join(offenders[:5])}"
        )
    return block.astype("int8")


def _covariate_block(annotations: pd.DataFrame, cells: pd.Index, layout: AssemblyLayout) -> pd.DataFrame:
    covariates = annotations.loc[cells, layout.covariate_columns].apply(pd.to_numeric, errors="coerce")
    if covariates.isna().any().any():
        bad_columns = covariates.columns[covariates.isna().any(axis=0)].tolist()
        raise DataContractError(f"Covariate columns contain missing or non-numeric values: {', '.join(bad_columns)}")
    return covariates.astype(float)


def assemble_matrices(
    annotations: pd.DataFrame,
    counts: pd.DataFrame,
    layout: AssemblyLayout,
    condition: str,
) -> AssembledMatrices:
    """Build the expression/perturbation/covariate triple for one condition.

    Column checks run before any matrix is built, so a missing covariate aborts the
    condition without emitting partial output.
    """
    missing_covariates = [column for column in layout.covariate_columns if column not in annotations.columns]
    if missing_covariates:
        raise MissingColumnError(missing_covariates)
    span = indicator_columns(annotations, layout)
    cells = select_cells(annotations, layout, condition)

    absent = set(cells.difference(counts.columns))
    if absent:
        raise InvariantViolation(
            f"Cells selected for condition '{condition}' are absent from the count table",
            identifiers=[cell for cell in cells if cell in absent],
        )

    indicators = _indicator_block(annotations, cells, span)
    observed = [target for target in span if indicators[target].any()]
    perturbation = indicators[observed].T
    perturbation.index.name = "target"

    expression = counts.loc[:, cells]
    covariates = _covariate_block(annotations, cells, layout)
    covariates.index.name = "cell"

    matrices = AssembledMatrices(
        condition=condition,
        expression=expression.copy(),
        perturbation=perturbation.copy(),
        covariates=covariates,
    ).validate()

    dropped = [target for target in span if target not in observed]
    logger.info(
        "Assembled condition {}: {} genes x {} cells, {} targets ({} unobserved)",
        condition,
        expression.shape[0],
        len(cells),
        len(observed),
        len(dropped),
    )
    return matrices
