"""Multiple-testing correction and discovery-set construction."""

from __future__ import annotations

import numpy as np
import pandas as pd

from .association import AssociationResult
from .exceptions import InvariantViolation
from .logging_config import get_logger
from .models import PairType
from .pairs import pair_index

logger = get_logger(__name__)


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """Perform Benjamini-Hochberg FDR correction.

    Sorting is stable, so tied p-values keep their input order and repeated calls
    on identical input give identical output.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    n = pvalues.size
    if n == 0:
        return np.empty(0, dtype=float)
    order = np.argsort(pvalues, kind="mergesort")
    ranked = pvalues[order]
    adjusted = np.empty(n, dtype=float)
    cumulative = 1.0
    for i in range(n - 1, -1, -1):
        rank = i + 1
        value = ranked[i] * n / rank
        cumulative = min(cumulative, value)
        adjusted[i] = cumulative
    adjusted = np.clip(adjusted, 0.0, 1.0)
    result = np.empty(n, dtype=float)
    result[order] = adjusted
    return result


def build_discovery_set(
    result: AssociationResult,
    universe: pd.DataFrame,
    threshold: float = 0.1,
) -> pd.DataFrame:
    """Correct candidate-pair p-values and flag discoveries.

    Negative-control pairs are excluded before correction, so the BH denominator
    is the number of candidate pairs only. Returns the candidate rows, in universe
    order, with ``adjusted_p_value`` and ``discovered`` columns.
    """
    if not 0 < threshold <= 1:
        raise ValueError(f"Discovery threshold must lie in (0, 1]; got {threshold}.")
    if result.is_permuted:
        raise ValueError(
            f"Discovery sets are built from real runs only (got replicate {result.replicate})."
        )

    candidates = result.table[result.table["pair_type"] == PairType.CANDIDATE.value].copy()
    candidates["adjusted_p_value"] = benjamini_hochberg(candidates["p_value"].to_numpy())
    candidates["discovered"] = candidates["adjusted_p_value"] <= threshold
    candidates = candidates.reset_index(drop=True)

    discovered = candidates[candidates["discovered"]]
    known = set(pair_index(universe))
    stray = [pair for pair in pair_index(discovered) if pair not in known]
    if stray:
        raise InvariantViolation(
            f"Discovered pairs for condition '{result.condition}' are not part of the test universe",
            identifiers=stray,
        )

    logger.info(
        "Condition {}: {} of {} candidate pairs discovered at BH <= {}",
        result.condition,
        int(candidates["discovered"].sum()),
        len(candidates),
        threshold,
    )
    return candidates


def discovery_summary(discoveries: pd.DataFrame) -> pd.Series:
    """Number of discovered genes per target (targets without discoveries report 0)."""
    counts = discoveries.groupby("target", sort=False)["discovered"].sum().astype(int)
    counts.name = "n_discoveries"
    return counts
