"""Association-test runner interface, result validation and replicate dispatch.

The test statistic itself is supplied by a collaborator implementing
:class:`AssociationRunner`. This module owns the bookkeeping around it: every
returned table is checked against the submitted pair universe before anything
downstream is allowed to read it.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

import numpy as np
import pandas as pd
from scipy import stats

from .assembly import AssembledMatrices
from .exceptions import ContractViolation, DataContractError
from .logging_config import get_logger
from .models import CalibrationMode
from .pairs import pair_index

logger = get_logger(__name__)

RESULT_COLUMNS = ["gene", "target", "pair_type", "p_value", "effect"]


@runtime_checkable
class AssociationRunner(Protocol):
    """Per-pair association test.

    Implementations return one row per universe pair, in universe order, with at
    least ``gene``, ``target``, ``p_value`` and ``effect`` columns. In permuted
    mode the supplied ``seed`` must fully determine the label permutation; in
    normal mode identical inputs must give identical output.
    """

    def __call__(
        self,
        matrices: AssembledMatrices,
        universe: pd.DataFrame,
        mode: CalibrationMode,
        seed: Optional[int],
    ) -> pd.DataFrame: ...


@dataclass(frozen=True)
class AssociationResult:
    """Validated output of one runner call (one condition x one replicate)."""

    condition: str
    mode: CalibrationMode
    replicate: int
    seed: Optional[int]
    table: pd.DataFrame

    @property
    def is_permuted(self) -> bool:
        return self.mode == CalibrationMode.PERMUTED

    @property
    def label(self) -> str:
        return "real" if not self.is_permuted else f"perm_{self.replicate:03d}"


def permutation_seed(base_seed: int, replicate: int) -> int:
    """Derive an independent, reproducible seed for one permutation replicate."""
    sequence = np.random.SeedSequence([int(base_seed), int(replicate)])
    return int(sequence.generate_state(1, dtype=np.uint32)[0])


def _validate_result(
    raw: pd.DataFrame,
    universe: pd.DataFrame,
    *,
    condition: str,
    replicate: int,
) -> pd.DataFrame:
    if not isinstance(raw, pd.DataFrame):
        raise ContractViolation(
            f"Runner returned {type(raw).__name__} instead of a DataFrame",
            condition=condition,
            replicate=replicate,
        )
    missing_columns = [column for column in ("gene", "target", "p_value", "effect") if column not in raw.columns]
    if missing_columns:
        raise ContractViolation(
            f"Runner output lacks columns: {', '.join(missing_columns)}",
            condition=condition,
            replicate=replicate,
        )

    expected = pair_index(universe)
    observed = pair_index(raw)
    if not observed.equals(expected):
        expected_set = set(expected)
        observed_set = set(observed)
        added = [pair for pair in observed if pair not in expected_set]
        missing = [pair for pair in expected if pair not in observed_set]
        if observed.has_duplicates:
            added.extend(observed[observed.duplicated()].tolist())
        reason = "Runner output pairs do not match the submitted universe"
        if not added and not missing:
            reason = "Runner output pairs are reordered relative to the submitted universe"
        raise ContractViolation(reason, condition=condition, replicate=replicate, added=added, missing=missing)

    p_values = pd.to_numeric(raw["p_value"], errors="coerce").to_numpy(dtype=float)
    invalid = np.isnan(p_values) | (p_values < 0) | (p_values > 1)
    if invalid.any():
        raise ContractViolation(
            "Runner returned p-values outside [0, 1]",
            condition=condition,
            replicate=replicate,
            invalid=expected[invalid].tolist(),
        )

    table = pd.DataFrame(
        {
            "gene": universe["gene"].to_numpy(),
            "target": universe["target"].to_numpy(),
            "pair_type": universe["pair_type"].to_numpy(),
            "p_value": p_values,
            "effect": pd.to_numeric(raw["effect"], errors="coerce").to_numpy(dtype=float),
        },
        columns=RESULT_COLUMNS,
    )
    return table


def run_association(
    runner: AssociationRunner,
    matrices: AssembledMatrices,
    universe: pd.DataFrame,
    mode: CalibrationMode = CalibrationMode.NORMAL,
    *,
    seed: Optional[int] = None,
    replicate: int = 0,
) -> AssociationResult:
    """Invoke ``runner`` once and validate the returned table against ``universe``."""
    if mode == CalibrationMode.PERMUTED and seed is None:
        raise ValueError("Permuted runs require an explicit seed.")

    raw = runner(matrices, universe.copy(), mode, seed)
    table = _validate_result(raw, universe, condition=matrices.condition, replicate=replicate)
    logger.debug(
        "Association run {} (condition={}, replicate={}) returned {} pairs",
        mode.value,
        matrices.condition,
        replicate,
        len(table),
    )
    return AssociationResult(
        condition=matrices.condition,
        mode=mode,
        replicate=replicate,
        seed=seed,
        table=table,
    )


def run_replicates(
    runner: AssociationRunner,
    matrices: AssembledMatrices,
    universe: pd.DataFrame,
    *,
    n_permutations: int,
    base_seed: int = 0,
    max_workers: int = 1,
) -> Tuple[AssociationResult, List[AssociationResult]]:
    """Run the real test plus ``n_permutations`` label-permuted replicates.

    Returns only after every replicate has finished; a failure in any replicate
    aborts the batch.
    """
    real = run_association(runner, matrices, universe, CalibrationMode.NORMAL, replicate=0)
    if n_permutations <= 0:
        return real, []

    replicate_ids = list(range(1, n_permutations + 1))
    seeds = {replicate: permutation_seed(base_seed, replicate) for replicate in replicate_ids}

    def _run(replicate: int) -> AssociationResult:
        return run_association(
            runner,
            matrices,
            universe,
            CalibrationMode.PERMUTED,
            seed=seeds[replicate],
            replicate=replicate,
        )

    completed: Dict[int, AssociationResult] = {}
    if max_workers <= 1:
        for replicate in replicate_ids:
            completed[replicate] = _run(replicate)
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(_run, replicate): replicate for replicate in replicate_ids}
            try:
                for future in as_completed(futures):
                    completed[futures[future]] = future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    logger.info(
        "Completed {} permutation replicates for condition {}",
        len(completed),
        matrices.condition,
    )
    return real, [completed[replicate] for replicate in replicate_ids]


class WelchAssociationRunner:
    """Reference runner: Welch's t-test on covariate-adjusted log-normalised expression.

    Cells carrying a target are compared with cells carrying the control label.
    For the control label itself, control cells are split by position parity and
    the halves compared, which yields null pairs. In permuted mode the
    perturbation label vectors are shuffled across cells before testing.
    """

    def __init__(self, control_label: str, *, scale_factor: float = 1e4, min_cells: int = 2):
        self.control_label = control_label
        self.scale_factor = scale_factor
        self.min_cells = min_cells

    def _residuals(self, matrices: AssembledMatrices, genes: List[str]) -> np.ndarray:
        missing = [gene for gene in genes if gene not in matrices.expression.index]
        if missing:
            raise DataContractError(f"Genes absent from expression matrix: {', '.join(missing[:5])}")

        counts = matrices.expression.to_numpy(dtype=float)
        library_sizes = counts.sum(axis=0)
        library_sizes[library_sizes == 0] = 1.0
        rows = matrices.expression.index.get_indexer(genes)
        normalized = np.log1p(counts[rows] / library_sizes * self.scale_factor).T

        covariates = matrices.covariates.to_numpy(dtype=float)
        spread = covariates.std(axis=0)
        spread[spread == 0] = 1.0
        design = np.column_stack([np.ones(covariates.shape[0]), (covariates - covariates.mean(axis=0)) / spread])
        coefficients, *_ = np.linalg.lstsq(design, normalized, rcond=None)
        return normalized - design @ coefficients

    def _compare(self, residuals: np.ndarray, left: np.ndarray, right: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        n_genes = residuals.shape[1]
        if left.sum() < self.min_cells or right.sum() < self.min_cells:
            return np.ones(n_genes), np.zeros(n_genes)
        a = residuals[left]
        b = residuals[right]
        effect = a.mean(axis=0) - b.mean(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            _, p_values = stats.ttest_ind(a, b, axis=0, equal_var=False)
        p_values = np.nan_to_num(np.asarray(p_values, dtype=float), nan=1.0)
        return np.clip(p_values, 0.0, 1.0), effect

    def __call__(
        self,
        matrices: AssembledMatrices,
        universe: pd.DataFrame,
        mode: CalibrationMode,
        seed: Optional[int],
    ) -> pd.DataFrame:
        genes = list(dict.fromkeys(universe["gene"].astype(str)))
        residuals = self._residuals(matrices, genes)
        gene_positions = pd.Index(genes).get_indexer(universe["gene"].astype(str))

        indicators = matrices.perturbation.to_numpy().astype(bool)
        if mode == CalibrationMode.PERMUTED:
            rng = np.random.default_rng(seed)
            indicators = indicators[:, rng.permutation(indicators.shape[1])]
        target_rows = {target: row for row, target in enumerate(matrices.perturbation.index)}

        control = indicators[target_rows[self.control_label]] if self.control_label in target_rows else None

        p_values = np.ones(len(universe))
        effects = np.zeros(len(universe))
        for target, rows in universe.groupby("target", sort=False).indices.items():
            if target not in target_rows:
                raise DataContractError(f"Target '{target}' is not a row of the perturbation matrix.")
            carriers = indicators[target_rows[target]]
            if target == self.control_label:
                positions = np.flatnonzero(carriers)
                left = np.zeros_like(carriers)
                right = np.zeros_like(carriers)
                left[positions[0::2]] = True
                right[positions[1::2]] = True
            else:
                left = carriers
                right = (control & ~carriers) if control is not None else ~carriers
            target_p, target_effect = self._compare(residuals, left, right)
            p_values[rows] = target_p[gene_positions[rows]]
            effects[rows] = target_effect[gene_positions[rows]]

        return pd.DataFrame(
            {
                "gene": universe["gene"].to_numpy(),
                "target": universe["target"].to_numpy(),
                "p_value": p_values,
                "effect": effects,
            }
        )
