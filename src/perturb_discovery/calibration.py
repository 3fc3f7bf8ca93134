"""Permutation-based null pooling and calibration diagnostics."""

from __future__ import annotations

from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .association import AssociationResult
from .discovery import benjamini_hochberg
from .exceptions import ContractViolation, InvariantViolation
from .logging_config import get_logger
from .models import PairType

logger = get_logger(__name__)

NULL_COLUMNS = ["replicate", "gene", "target", "p_value"]


def pool_null_pvalues(replicates: Sequence[AssociationResult]) -> pd.DataFrame:
    """Pool candidate-pair p-values from every permutation replicate.

    Each row keeps its replicate index. The pool is a diagnostic distribution and
    is never corrected.
    """
    seen: Dict[int, str] = {}
    frames: List[pd.DataFrame] = []
    for result in replicates:
        if not result.is_permuted:
            raise ContractViolation(
                "Only permuted-label results may enter the null pool",
                condition=result.condition,
                replicate=result.replicate,
            )
        if result.replicate in seen:
            raise InvariantViolation(
                "Permutation replicate indices must be unique",
                identifiers=[result.replicate],
            )
        seen[result.replicate] = result.condition

        table = result.table
        candidates = table.loc[table["pair_type"] == PairType.CANDIDATE.value, ["gene", "target", "p_value"]]
        frame = candidates.copy()
        frame.insert(0, "replicate", result.replicate)
        frames.append(frame)

    if not frames:
        return pd.DataFrame({column: pd.Series(dtype=object) for column in NULL_COLUMNS})

    pooled = pd.concat(frames, ignore_index=True)[NULL_COLUMNS]
    logger.info("Pooled {} null p-values from {} replicates", len(pooled), len(frames))
    return pooled


def negative_control_pvalues(result: AssociationResult) -> pd.DataFrame:
    """Negative-control rows of a real run, used as a second null reference."""
    table = result.table
    return table.loc[table["pair_type"] == PairType.NEGATIVE_CONTROL.value, ["gene", "target", "p_value"]].reset_index(
        drop=True
    )


def calibration_summary(pvalues: Sequence[float], alpha: float = 0.05) -> Dict[str, float]:
    """Compare a p-value sample with Uniform(0, 1).

    ``inflation`` is the observed fraction at or below ``alpha`` divided by
    ``alpha``; a calibrated test sits near 1.
    """
    values = np.asarray(pvalues, dtype=float)
    if values.size == 0:
        return {
            "n": 0,
            "alpha": alpha,
            "observed_fraction": float("nan"),
            "inflation": float("nan"),
            "ks_statistic": float("nan"),
            "ks_p_value": float("nan"),
        }
    observed = float((values <= alpha).mean())
    ks = stats.kstest(values, "uniform")
    return {
        "n": int(values.size),
        "alpha": alpha,
        "observed_fraction": observed,
        "inflation": observed / alpha,
        "ks_statistic": float(ks.statistic),
        "ks_p_value": float(ks.pvalue),
    }


def qq_frame(pvalues: Sequence[float]) -> pd.DataFrame:
    """Expected vs observed -log10 quantiles for a QQ plot against Uniform(0, 1)."""
    values = np.sort(np.asarray(pvalues, dtype=float))
    n = values.size
    expected = (np.arange(1, n + 1) - 0.5) / n if n else np.empty(0)
    return pd.DataFrame(
        {
            "expected": -np.log10(expected),
            "observed": -np.log10(np.clip(values, 1e-300, 1.0)),
        }
    )


def permutation_discoveries(replicates: Sequence[AssociationResult], threshold: float) -> pd.Series:
    """How many candidate pairs BH would call at ``threshold`` in each permuted replicate."""
    counts = {}
    for result in replicates:
        candidates = result.table.loc[result.table["pair_type"] == PairType.CANDIDATE.value, "p_value"]
        counts[result.replicate] = int((benjamini_hochberg(candidates.to_numpy()) <= threshold).sum())
    series = pd.Series(counts, dtype=int, name="n_discoveries")
    series.index.name = "replicate"
    return series
