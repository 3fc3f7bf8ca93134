"""Aggregate discoveries from the primary and reference methods into comparison tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
from scipy import stats

from .exceptions import DataContractError, LabelMismatchError, MissingColumnError
from .logging_config import get_logger
from .models import ReferenceMethodSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class MethodComparison:
    """Per-target significant-gene counts, one column per method.

    ``failures`` maps a reference method name to the reason its column is absent.
    """

    table: pd.DataFrame
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def methods(self) -> List[str]:
        return self.table.columns.tolist()


def count_primary_significant(significance: pd.DataFrame, threshold: Optional[float] = None) -> pd.Series:
    """Count significant genes per target from a gene x target matrix.

    Boolean matrices are counted directly; numeric (LFSR-like) matrices need a
    ``threshold`` and count entries strictly below it.
    """
    if all(pd.api.types.is_bool_dtype(dtype) for dtype in significance.dtypes):
        flags = significance
    else:
        if threshold is None:
            raise ValueError("A threshold is required for a numeric significance matrix.")
        flags = significance < threshold
    counts = flags.sum(axis=0).astype(int)
    counts.index = counts.index.astype(str)
    counts.index.name = "target"
    return counts


def normalize_target_labels(
    labels: Sequence[str],
    canonical: Sequence[str],
    aliases: Optional[Mapping[str, str]] = None,
    *,
    method: str = "reference",
) -> List[str]:
    """Map every label onto the canonical target set.

    Labels resolve directly, through ``aliases``, or by a unique case-insensitive
    match. Anything left over raises LabelMismatchError naming the labels.
    """
    canonical_set = set(canonical)
    by_folded: Dict[str, List[str]] = {}
    for label in canonical:
        by_folded.setdefault(label.casefold(), []).append(label)
    aliases = dict(aliases or {})

    resolved: List[str] = []
    unresolved: List[str] = []
    for label in labels:
        label = str(label)
        if label in canonical_set:
            resolved.append(label)
        elif label in aliases and aliases[label] in canonical_set:
            resolved.append(aliases[label])
        elif len(by_folded.get(label.casefold(), [])) == 1:
            resolved.append(by_folded[label.casefold()][0])
        else:
            unresolved.append(label)

    if unresolved:
        raise LabelMismatchError(method, sorted(set(unresolved)))
    return resolved


def _primary_labels(
    labels: Sequence[object],
    canonical: Sequence[str],
    aliases: Optional[Mapping[str, str]],
    method: str,
) -> List[str]:
    resolved = normalize_target_labels([str(label) for label in labels], canonical, aliases, method=method)
    collided = sorted({label for label in resolved if resolved.count(label) > 1})
    if collided:
        raise DataContractError(
            f"Method '{method}' reports several labels for the same canonical target(s): {', '.join(collided)}"
        )
    return resolved


def _normalized_reference(table: pd.DataFrame, spec: ReferenceMethodSpec, canonical: Sequence[str]) -> pd.DataFrame:
    required = [spec.target_column, spec.gene_column, spec.effect_column, spec.significance_column]
    missing = [column for column in required if column not in table.columns]
    if missing:
        raise MissingColumnError(missing, source=f"reference method '{spec.name}'")

    normalized = pd.DataFrame(
        {
            "target": normalize_target_labels(
                table[spec.target_column].astype(str).tolist(),
                canonical,
                spec.label_aliases,
                method=spec.name,
            ),
            "gene": table[spec.gene_column].astype(str).to_numpy(),
            "effect": pd.to_numeric(table[spec.effect_column], errors="coerce").to_numpy(),
            "significance": pd.to_numeric(table[spec.significance_column], errors="coerce").to_numpy(),
        }
    )
    return normalized


def count_reference_significant(
    table: pd.DataFrame,
    spec: ReferenceMethodSpec,
    canonical: Sequence[str],
) -> pd.Series:
    """Count distinct genes below the method's significance threshold, per canonical target."""
    normalized = _normalized_reference(table, spec, canonical)
    significant = normalized[normalized["significance"] < spec.significance_threshold]
    counts = significant.groupby("target")["gene"].nunique().astype(int)
    counts.index.name = "target"
    return counts


def aggregate_method_counts(
    primary_counts: pd.Series,
    reference_tables: Mapping[str, pd.DataFrame],
    specs: Sequence[ReferenceMethodSpec],
    canonical: Optional[Sequence[str]] = None,
    *,
    primary_name: str = "primary",
    primary_aliases: Optional[Mapping[str, str]] = None,
) -> MethodComparison:
    """Outer-join per-target counts from every method on the canonical target label.

    A target missing from a method's output gets a count of 0. A reference method
    whose labels cannot be normalised is left out and reported in ``failures``;
    the remaining methods are still aggregated. The primary labels go through the
    same normalisation; a primary label with no canonical counterpart raises
    LabelMismatchError, since the primary column anchors the table.
    """
    canonical = [str(label) for label in (canonical if canonical is not None else primary_counts.index)]
    primary = primary_counts.copy()
    primary.index = pd.Index(
        _primary_labels(primary_counts.index, canonical, primary_aliases, primary_name), name="target"
    )
    columns: Dict[str, pd.Series] = {primary_name: primary.rename(primary_name)}
    failures: Dict[str, str] = {}

    for spec in specs:
        table = reference_tables.get(spec.name)
        if table is None:
            failures[spec.name] = "No result table supplied."
            logger.warning("No result table supplied for reference method {}", spec.name)
            continue
        try:
            columns[spec.name] = count_reference_significant(table, spec, canonical).rename(spec.name)
        except (LabelMismatchError, MissingColumnError) as exc:
            failures[spec.name] = str(exc)
            logger.warning("Skipping reference method {}: {}", spec.name, exc)

    present = set()
    for series in columns.values():
        present.update(series.index.astype(str))
    index = pd.Index([label for label in canonical if label in present], name="target")

    table = pd.DataFrame({name: series.reindex(index) for name, series in columns.items()}, index=index)
    table = table.fillna(0).astype(int)
    return MethodComparison(table=table, failures=failures)


def rank_targets(table: pd.DataFrame, method: str) -> pd.DataFrame:
    """Order targets by discovery count (descending), ties by target label."""
    if method not in table.columns:
        raise KeyError(f"Method '{method}' not present in comparison table.")
    frame = table.reset_index()
    ranked = frame.sort_values([method, "target"], ascending=[False, True], kind="mergesort").reset_index(drop=True)
    ranked.insert(0, "rank", range(1, len(ranked) + 1))
    return ranked


def _long_primary(matrix: pd.DataFrame, value_name: str, targets: Sequence[str]) -> pd.DataFrame:
    long = matrix.copy()
    long.index = long.index.astype(str)
    long.columns = pd.Index(list(targets))
    long.index.name = "gene"
    long.columns.name = None
    melted = long.reset_index().melt(id_vars="gene", var_name="target", value_name=value_name)
    return melted.dropna(subset=[value_name])


def build_effect_table(
    primary_effects: Optional[pd.DataFrame],
    primary_significance: pd.DataFrame,
    reference_tables: Mapping[str, pd.DataFrame],
    specs: Sequence[ReferenceMethodSpec],
    canonical: Optional[Sequence[str]] = None,
    *,
    primary_name: str = "primary",
    primary_aliases: Optional[Mapping[str, str]] = None,
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """Merge per-(target, gene) effect and significance estimates across methods.

    Unlike the count table, absent estimates stay missing: an untested gene has no
    effect size. Returns the merged table and the per-method failures. Primary
    target labels are normalised like the reference labels.
    """
    canonical = [str(label) for label in (canonical if canonical is not None else primary_significance.columns)]
    merged = _long_primary(
        primary_significance,
        f"{primary_name}_significance",
        _primary_labels(primary_significance.columns, canonical, primary_aliases, primary_name),
    )
    if primary_effects is not None:
        merged = merged.merge(
            _long_primary(
                primary_effects,
                f"{primary_name}_effect",
                _primary_labels(primary_effects.columns, canonical, primary_aliases, primary_name),
            ),
            on=["gene", "target"],
            how="outer",
        )

    failures: Dict[str, str] = {}
    for spec in specs:
        table = reference_tables.get(spec.name)
        if table is None:
            failures[spec.name] = "No result table supplied."
            continue
        try:
            normalized = _normalized_reference(table, spec, canonical)
        except (LabelMismatchError, MissingColumnError) as exc:
            failures[spec.name] = str(exc)
            logger.warning("Skipping reference method {} in effect table: {}", spec.name, exc)
            continue
        normalized = normalized.drop_duplicates(["target", "gene"]).rename(
            columns={"effect": f"{spec.name}_effect", "significance": f"{spec.name}_significance"}
        )
        merged = merged.merge(normalized, on=["gene", "target"], how="outer")

    merged = merged[["target", "gene"] + [c for c in merged.columns if c not in {"target", "gene"}]]
    merged = merged.sort_values(["target", "gene"], kind="mergesort").reset_index(drop=True)
    return merged, failures


def concordance(table: pd.DataFrame, method_a: str, method_b: str) -> Dict[str, float]:
    """Spearman correlation between two methods' per-target counts."""
    if len(table) < 3:
        return {"spearman_rho": float("nan"), "p_value": float("nan"), "n_targets": len(table)}
    result = stats.spearmanr(table[method_a], table[method_b])
    return {
        "spearman_rho": float(result.statistic),
        "p_value": float(result.pvalue),
        "n_targets": int(len(table)),
    }
