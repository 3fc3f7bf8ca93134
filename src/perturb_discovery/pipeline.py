"""Pipeline orchestrator for perturb-discovery."""

from __future__ import annotations

import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

import pandas as pd

from .artifacts import ArtifactStore, new_run_dir
from .assembly import AssembledMatrices, assemble_matrices, check_disjoint_conditions
from .association import AssociationResult, AssociationRunner, WelchAssociationRunner, run_replicates
from .calibration import (
    calibration_summary,
    negative_control_pvalues,
    permutation_discoveries,
    pool_null_pvalues,
    qq_frame,
)
from .comparison import (
    aggregate_method_counts,
    build_effect_table,
    concordance,
    count_primary_significant,
    rank_targets,
)
from .config import get_settings
from .data_loader import (
    load_annotations,
    load_config,
    load_counts,
    load_gene_selection,
    load_primary_lfsr,
    load_reference_results,
)
from .discovery import build_discovery_set, discovery_summary
from .enrichment import enrich_groups, summarize_enrichment
from .exceptions import (
    ContractViolation,
    DataContractError,
    DataQualityWarning,
    InvariantViolation,
    LabelMismatchError,
)
from .logging_config import get_logger
from .models import ConditionSummary, PipelineConfig, PipelineResult, PipelineWarning
from .pairs import build_pair_universe, count_pair_types
from .qc import evaluate_calibration

logger = get_logger(__name__)

CONDITION_ERRORS = (DataContractError, InvariantViolation, ContractViolation, LabelMismatchError)


class DataPaths(NamedTuple):
    annotations: Path
    counts: Path
    genes: Path
    config: Optional[Path] = None
    primary_lfsr: Optional[Mapping[str, Path]] = None
    references: Optional[Mapping[str, Path]] = None


@dataclass
class PipelineSettings:
    output_root: Path = field(default_factory=lambda: get_settings().artifacts_dir)
    cache_dir: Path = field(default_factory=lambda: get_settings().cache_dir)
    runner: Optional[AssociationRunner] = None
    n_permutations: Optional[int] = field(default_factory=lambda: get_settings().n_permutations)
    max_workers: Optional[int] = field(default_factory=lambda: get_settings().max_workers)
    enable_enrichment: bool = True


@dataclass(frozen=True)
class ConditionOutcome:
    matrices: AssembledMatrices
    universe: pd.DataFrame
    real: AssociationResult
    discoveries: pd.DataFrame
    summary: ConditionSummary


def _add_warning(
    warnings_list: List[PipelineWarning],
    code: str,
    message: str,
    *,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Append a structured warning to the shared list."""
    warnings_list.append(PipelineWarning(code=code, message=message, details=details or {}))


def _run_condition(
    condition: str,
    annotations: pd.DataFrame,
    counts: pd.DataFrame,
    genes: List[str],
    config: PipelineConfig,
    settings: PipelineSettings,
    store: ArtifactStore,
) -> ConditionOutcome:
    """Assemble, test, calibrate and correct one condition. Any error aborts it."""
    layout = config.layout
    options = config.discovery
    n_permutations = settings.n_permutations if settings.n_permutations is not None else options.n_permutations
    max_workers = settings.max_workers or options.max_workers

    matrices = assemble_matrices(annotations, counts, layout, condition)
    universe = build_pair_universe(genes, matrices.targets, layout.control_label)
    runner = settings.runner or WelchAssociationRunner(layout.control_label)

    real, permuted = run_replicates(
        runner,
        matrices,
        universe,
        n_permutations=n_permutations,
        base_seed=options.base_seed,
        max_workers=max_workers,
    )

    null_pool = pool_null_pvalues(permuted)
    controls = negative_control_pvalues(real)
    false_calls = permutation_discoveries(permuted, options.fdr_threshold)
    qc_metrics = evaluate_calibration(null_pool, controls, false_calls)
    discoveries = build_discovery_set(real, universe, options.fdr_threshold)

    store.write_frame(f"{condition}/expression", matrices.expression, index=True)
    store.write_frame(f"{condition}/perturbation", matrices.perturbation, index=True)
    store.write_frame(f"{condition}/covariates", matrices.covariates, index=True)
    store.write_frame(f"{condition}/pair_universe", universe)
    for result in [real, *permuted]:
        store.write_frame(f"{condition}/association_{result.label}", result.table)
    store.write_frame(f"{condition}/null_pool", null_pool)
    store.write_frame(f"{condition}/null_qq", qq_frame(null_pool["p_value"].to_numpy(dtype=float)))
    store.write_frame(f"{condition}/discoveries", discoveries)
    store.write_json(
        f"{condition}/calibration",
        {
            "null_pool": calibration_summary(null_pool["p_value"].to_numpy(dtype=float)),
            "negative_controls": calibration_summary(controls["p_value"].to_numpy(dtype=float)),
            "permuted_discoveries": {str(k): int(v) for k, v in false_calls.items()},
            "qc_metrics": [metric.model_dump(mode="json") for metric in qc_metrics],
        },
    )

    pair_counts = count_pair_types(universe)
    summary = ConditionSummary(
        condition=condition,
        n_cells=len(matrices.cells),
        n_genes=len(genes),
        n_targets=len(matrices.targets),
        n_pairs=len(universe),
        n_candidate_pairs=pair_counts["candidate"],
        n_negative_control_pairs=pair_counts["negative_control"],
        n_permutations=len(permuted),
        n_discoveries=int(discoveries["discovered"].sum()),
        fdr_threshold=options.fdr_threshold,
        qc_metrics=qc_metrics,
    )
    return ConditionOutcome(
        matrices=matrices,
        universe=universe,
        real=real,
        discoveries=discoveries,
        summary=summary,
    )


def _reference_tables_for(
    condition: str,
    config: PipelineConfig,
    tables: Mapping[str, pd.DataFrame],
) -> Dict[str, pd.DataFrame]:
    selected: Dict[str, pd.DataFrame] = {}
    for spec in config.reference_methods:
        table = tables.get(spec.name)
        if table is None:
            continue
        if spec.condition_column and spec.condition_column in table.columns:
            table = table[table[spec.condition_column].astype(str) == condition]
        selected[spec.name] = table
    return selected


def _compare_methods(
    outcome: ConditionOutcome,
    config: PipelineConfig,
    primary_lfsr: Optional[pd.DataFrame],
    reference_tables: Mapping[str, pd.DataFrame],
    store: ArtifactStore,
    warnings_list: List[PipelineWarning],
) -> Dict[str, str]:
    condition = outcome.matrices.condition
    canonical = outcome.matrices.targets
    candidates = outcome.discoveries

    if primary_lfsr is not None:
        primary_counts = count_primary_significant(primary_lfsr, config.primary_lfsr_threshold)
        primary_significance = primary_lfsr
    else:
        primary_counts = discovery_summary(candidates)
        primary_significance = candidates.pivot(index="gene", columns="target", values="adjusted_p_value")
    primary_effects = outcome.real.table.pivot(index="gene", columns="target", values="effect")

    comparison = aggregate_method_counts(
        primary_counts,
        reference_tables,
        config.reference_methods,
        canonical,
        primary_aliases=config.primary_label_aliases,
    )
    effects, _ = build_effect_table(
        primary_effects,
        primary_significance,
        reference_tables,
        config.reference_methods,
        canonical,
        primary_aliases=config.primary_label_aliases,
    )

    store.write_frame(f"{condition}/method_comparison", comparison.table, index=True)
    store.write_frame(f"{condition}/method_ranking", rank_targets(comparison.table, "primary"))
    store.write_frame(f"{condition}/method_effects", effects)
    store.write_json(
        f"{condition}/method_concordance",
        {method: concordance(comparison.table, "primary", method) for method in comparison.methods[1:]},
    )

    for method, reason in comparison.failures.items():
        _add_warning(
            warnings_list,
            code="reference_method_skipped",
            message=f"Reference method '{method}' left out of the {condition} comparison: {reason}",
            details={"condition": condition, "method": method},
        )
    return comparison.failures


def _enrich_condition(
    outcome: ConditionOutcome,
    genes: List[str],
    config: PipelineConfig,
    settings: PipelineSettings,
    store: ArtifactStore,
) -> None:
    options = config.enrichment
    condition = outcome.matrices.condition
    discovered = outcome.discoveries[outcome.discoveries["discovered"]]
    gene_lists = {
        str(target): frame["gene"].astype(str).tolist()
        for target, frame in discovered.groupby("target", sort=False)
    }
    if not gene_lists:
        logger.info("No discoveries in condition {}; skipping enrichment.", condition)
        return

    records = enrich_groups(
        gene_lists,
        genes,
        options.database,
        cache_dir=settings.cache_dir,
        min_set_size=options.min_set_size,
        max_set_size=options.max_set_size,
    )
    summary = summarize_enrichment(
        records,
        max_fdr=options.max_fdr,
        max_p_value=options.max_p_value,
        min_enrichment_ratio=options.min_enrichment_ratio,
    )
    store.write_json(f"{condition}/enrichment_records", [record for group in records.values() for record in group])
    store.write_frame(f"{condition}/enrichment_matrix", summary.matrix, index=True)
    store.write_frame(f"{condition}/enrichment_terms", summary.terms)


def _process_condition(
    condition: str,
    annotations: pd.DataFrame,
    counts: pd.DataFrame,
    genes: List[str],
    config: PipelineConfig,
    settings: PipelineSettings,
    paths: DataPaths,
    reference_tables: Mapping[str, pd.DataFrame],
    store: ArtifactStore,
    warnings_list: List[PipelineWarning],
) -> Tuple[ConditionSummary, Dict[str, str]]:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", DataQualityWarning)
        outcome = _run_condition(condition, annotations, counts, genes, config, settings, store)
    for item in caught:
        if isinstance(item.message, DataQualityWarning):
            _add_warning(
                warnings_list,
                code="data_quality",
                message=str(item.message),
                details={"condition": condition, **item.message.details},
            )
        else:
            warnings.warn_explicit(item.message, item.category, item.filename, item.lineno)

    lfsr_path = (paths.primary_lfsr or {}).get(condition)
    primary_lfsr = load_primary_lfsr(Path(lfsr_path)) if lfsr_path else None
    failures = _compare_methods(
        outcome,
        config,
        primary_lfsr,
        _reference_tables_for(condition, config, reference_tables),
        store,
        warnings_list,
    )

    if settings.enable_enrichment and config.enrichment.enabled:
        _enrich_condition(outcome, genes, config, settings, store)
    return outcome.summary, failures


def run_pipeline(
    paths: DataPaths,
    config: Optional[PipelineConfig] = None,
    settings: Optional[PipelineSettings] = None,
) -> PipelineResult:
    """Execute the full discovery and calibration pipeline.

    When ``config`` is omitted, the configuration is loaded from ``paths.config``.
    A condition that fails with a contract or invariant error is recorded in
    ``condition_failures`` and the remaining conditions still run;
    ``pipeline_result.json`` is always written. When every condition fails, the
    first error is raised after the result file is written.
    """
    settings = settings or PipelineSettings()
    start_time = time.time()

    if config is None:
        if paths.config is None:
            raise DataContractError("Configuration path must be provided when config is not supplied.")
        config = load_config(Path(paths.config))

    output_dir = new_run_dir(Path(settings.output_root))
    store = ArtifactStore(output_dir)
    logger.info("Writing pipeline artifacts to {}", output_dir)

    annotations = load_annotations(paths.annotations, config.layout.cell_id_column)
    check_disjoint_conditions(annotations, config.layout, config.conditions)
    counts = load_counts(paths.counts)
    genes = load_gene_selection(paths.genes)
    missing_genes = [gene for gene in genes if gene not in counts.index]
    if missing_genes:
        raise DataContractError(f"Selected genes absent from the count table: {', '.join(missing_genes[:5])}")

    reference_tables: Dict[str, pd.DataFrame] = {}
    warnings_list: List[PipelineWarning] = []
    for name, path in (paths.references or {}).items():
        try:
            spec = config.reference_method(name)
        except KeyError:
            _add_warning(
                warnings_list,
                code="reference_method_unconfigured",
                message=f"Result file supplied for unconfigured reference method '{name}'; ignored.",
                details={"method": name, "path": str(path)},
            )
            continue
        reference_tables[name] = load_reference_results(Path(path), spec)

    summaries: List[ConditionSummary] = []
    method_failures: Dict[str, Dict[str, str]] = {}
    condition_failures: Dict[str, str] = {}
    first_error: Optional[Exception] = None
    for condition in config.conditions:
        try:
            summary, failures = _process_condition(
                condition, annotations, counts, genes, config, settings, paths, reference_tables, store, warnings_list
            )
        except CONDITION_ERRORS as exc:
            logger.error("Condition {} failed: {}", condition, exc)
            condition_failures[condition] = str(exc)
            _add_warning(
                warnings_list,
                code="condition_failed",
                message=f"Condition '{condition}' produced no results: {exc}",
                details={"condition": condition, "error": type(exc).__name__},
            )
            first_error = first_error or exc
            continue
        summaries.append(summary)
        if failures:
            method_failures[condition] = failures

    runtime = time.time() - start_time
    result = PipelineResult(
        config=config,
        conditions=summaries,
        method_failures=method_failures,
        condition_failures=condition_failures,
        warnings=warnings_list,
        runtime_seconds=runtime,
    )
    result.artifacts = {**store.written, "pipeline_result": str(store.path_for("pipeline_result", ".json"))}
    store.write_json("pipeline_result", result)

    if first_error is not None and not summaries:
        raise first_error
    logger.info(
        "Pipeline finished in {:.1f}s: {} discoveries across {} conditions ({} failed)",
        runtime,
        result.total_discoveries,
        len(summaries),
        len(condition_failures),
    )
    return result
