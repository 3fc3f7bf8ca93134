"""Calibration quality-control metrics for perturb-discovery."""

from __future__ import annotations

from typing import List, Optional

import pandas as pd

from .calibration import calibration_summary
from .models import QCMetric, QCSeverity


# Inflation of the null tail (observed / expected fraction at alpha).
_INFLATION_THRESHOLDS = {
    QCSeverity.OK: 1.5,
    QCSeverity.WARNING: 3.0,
}

_ALPHA = 0.05


def _classify_inflation(value: Optional[float]) -> QCSeverity:
    if value is None or pd.isna(value):
        return QCSeverity.WARNING
    if value <= _INFLATION_THRESHOLDS[QCSeverity.OK]:
        return QCSeverity.OK
    if value <= _INFLATION_THRESHOLDS[QCSeverity.WARNING]:
        return QCSeverity.WARNING
    return QCSeverity.CRITICAL


def _inflation_metric(name: str, pvalues: pd.Series, details: str) -> QCMetric:
    summary = calibration_summary(pvalues.to_numpy(), alpha=_ALPHA)
    severity = _classify_inflation(summary["inflation"])
    return QCMetric(
        name=name,
        value=float(summary["inflation"]),
        unit="ratio",
        severity=severity,
        threshold=f"<= {_INFLATION_THRESHOLDS[QCSeverity.OK]:.1f} ideal",
        details=(
            f"{details} {summary['n']} p-values; {summary['observed_fraction']:.3f} at or below {_ALPHA} "
            f"(KS p={summary['ks_p_value']:.3g})."
        ),
        recommendation="Null p-values are inflated; the association test may be miscalibrated."
        if severity != QCSeverity.OK
        else None,
    )


def evaluate_calibration(
    null_pool: pd.DataFrame,
    control_pvalues: pd.DataFrame,
    permuted_discoveries: Optional[pd.Series] = None,
) -> List[QCMetric]:
    """Summarise how close the null distributions are to Uniform(0, 1)."""
    metrics: List[QCMetric] = []

    if null_pool.empty:
        metrics.append(
            QCMetric(
                name="Permutation null inflation",
                severity=QCSeverity.INFO,
                details="Not computed: no permutation replicates were run.",
            )
        )
    else:
        n_replicates = null_pool["replicate"].nunique()
        metrics.append(
            _inflation_metric(
                "Permutation null inflation",
                null_pool["p_value"],
                f"Pooled over {n_replicates} permuted replicates:",
            )
        )

    if control_pvalues.empty:
        metrics.append(
            QCMetric(
                name="Negative-control inflation",
                severity=QCSeverity.INFO,
                details="Not computed: no negative-control pairs exist; diagnostic power is reduced.",
            )
        )
    else:
        metrics.append(
            _inflation_metric("Negative-control inflation", control_pvalues["p_value"], "Negative-control pairs:")
        )

    if permuted_discoveries is not None and not permuted_discoveries.empty:
        mean_false = float(permuted_discoveries.mean())
        severity = QCSeverity.OK if mean_false < 1 else QCSeverity.WARNING
        metrics.append(
            QCMetric(
                name="Permuted discoveries",
                value=mean_false,
                unit="pairs",
                severity=severity,
                threshold="< 1 ideal",
                details=f"Mean BH discoveries per permuted replicate (max {int(permuted_discoveries.max())}).",
                recommendation="Permuted data yields discoveries; treat real discoveries with caution."
                if severity != QCSeverity.OK
                else None,
            )
        )
    return metrics
