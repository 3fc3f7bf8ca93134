"""Command line interface for perturb-discovery."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

import typer

from .assembly import assemble_matrices, check_disjoint_conditions
from .config import get_settings
from .data_loader import load_annotations, load_config, load_counts
from .enrichment import load_records, summarize_enrichment
from .exceptions import ContractViolation, DataContractError, InvariantViolation, LabelMismatchError
from .logging_config import get_logger
from .models import PipelineConfig, PipelineWarning
from .pipeline import DataPaths, PipelineSettings, run_pipeline

app = typer.Typer(add_completion=False, no_args_is_help=True)
logger = get_logger(__name__)


def _warning_to_text(warning: PipelineWarning) -> str:
    prefix = f"[{warning.code}] " if warning.code else ""
    return f"{prefix}{warning.message}"


def _resolve_path(path: Path) -> Path:
    path = path.expanduser().resolve()
    if not path.exists():
        raise typer.BadParameter(f"Path not found: {path}")
    return path


def _load_config(config_path: Path) -> PipelineConfig:
    try:
        return load_config(config_path)
    except DataContractError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _parse_named_paths(values: Optional[List[str]], option: str) -> Dict[str, Path]:
    parsed: Dict[str, Path] = {}
    for item in values or []:
        name, sep, raw_path = item.partition("=")
        if not sep or not name.strip() or not raw_path.strip():
            raise typer.BadParameter(f"{option} expects NAME=PATH, got {item!r}")
        parsed[name.strip()] = _resolve_path(Path(raw_path.strip()))
    return parsed


@app.command("validate-data")
def validate_data(
    annotations: Path = typer.Argument(..., help="Per-cell annotation table (CSV/TSV)."),
    counts: Path = typer.Argument(..., help="Gene-by-cell count matrix (CSV/TSV)."),
    config: Path = typer.Argument(..., help="Pipeline configuration JSON."),
) -> None:
    """Assemble every configured condition and report contract problems."""
    config_model = _load_config(_resolve_path(config))
    try:
        annotation_df = load_annotations(_resolve_path(annotations), config_model.layout.cell_id_column)
        counts_df = load_counts(_resolve_path(counts))
        check_disjoint_conditions(annotation_df, config_model.layout, config_model.conditions)
        for condition in config_model.conditions:
            matrices = assemble_matrices(annotation_df, counts_df, config_model.layout, condition)
            typer.echo(
                f"{condition}: {len(matrices.genes)} genes x {len(matrices.cells)} cells, "
                f"{len(matrices.targets)} targets"
            )
    except DataContractError as exc:
        typer.secho(f"Input validation failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    except InvariantViolation as exc:
        typer.secho(f"Matrix invariant violated: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc

    typer.secho("Data validation succeeded.", fg=typer.colors.GREEN)
    logger.info("Validated data inputs", annotations=annotations, counts=counts, config=config)


@app.command("run-pipeline")
def run_pipeline_command(
    annotations: Path = typer.Argument(..., help="Per-cell annotation table (CSV/TSV)."),
    counts: Path = typer.Argument(..., help="Gene-by-cell count matrix (CSV/TSV)."),
    genes: Path = typer.Argument(..., help="Selected gene list, one identifier per line."),
    config: Path = typer.Argument(..., help="Pipeline configuration JSON."),
    output_root: Optional[Path] = typer.Option(None, "--output-root", "-o", help="Directory to store artifacts."),
    permutations: Optional[int] = typer.Option(None, "--permutations", "-p", help="Override permutation count."),
    workers: Optional[int] = typer.Option(None, "--workers", help="Parallel permutation workers."),
    reference: Optional[List[str]] = typer.Option(None, "--reference", help="Reference results as NAME=PATH."),
    primary_lfsr: Optional[List[str]] = typer.Option(
        None, "--primary-lfsr", help="Primary-method LFSR matrix as CONDITION=PATH."
    ),
    skip_enrichment: bool = typer.Option(False, help="Skip gene-set enrichment (offline mode)."),
) -> None:
    """Execute the discovery and calibration pipeline.

    A condition that fails validation is reported and skipped; the other
    conditions still run. The exit code is 2 when any condition failed.
    """
    config_model = _load_config(_resolve_path(config))
    paths = DataPaths(
        annotations=_resolve_path(annotations),
        counts=_resolve_path(counts),
        genes=_resolve_path(genes),
        primary_lfsr=_parse_named_paths(primary_lfsr, "--primary-lfsr"),
        references=_parse_named_paths(reference, "--reference"),
    )
    settings = PipelineSettings(
        output_root=output_root or get_settings().artifacts_dir,
        enable_enrichment=not skip_enrichment,
    )
    if permutations is not None:
        settings.n_permutations = permutations
    if workers is not None:
        settings.max_workers = workers

    try:
        result = run_pipeline(paths, config=config_model, settings=settings)
    except DataContractError as exc:
        typer.secho(f"Input validation failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    except (InvariantViolation, ContractViolation, LabelMismatchError) as exc:
        typer.secho(f"Run aborted: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc

    if result.condition_failures:
        typer.secho("Pipeline completed with failed conditions.", fg=typer.colors.YELLOW)
    else:
        typer.secho("Pipeline completed.", fg=typer.colors.GREEN)
    for summary in result.conditions:
        typer.echo(
            f"  {summary.condition}: {summary.n_discoveries} discoveries among "
            f"{summary.n_candidate_pairs} candidate pairs ({summary.n_permutations} permutations)"
        )
    typer.echo("Artifacts:")
    for key, value in result.artifacts.items():
        typer.echo(f"  {key}: {value}")
    if result.warnings:
        typer.secho("Warnings:", fg=typer.colors.YELLOW)
        for warning in result.warnings:
            typer.echo(f"  - {_warning_to_text(warning)}")
    if result.condition_failures:
        typer.secho("Failed conditions:", fg=typer.colors.RED)
        for condition, reason in result.condition_failures.items():
            typer.echo(f"  {condition}: {reason}")
        raise typer.Exit(code=2)


@app.command("summarize-enrichment")
def summarize_enrichment_command(
    records: Path = typer.Argument(..., help="JSON file of enrichment records."),
    max_fdr: Optional[float] = typer.Option(None, help="Keep records with FDR at or below this value."),
    max_p_value: Optional[float] = typer.Option(None, help="Keep records with p-value at or below this value."),
    min_ratio: Optional[float] = typer.Option(None, help="Keep records with enrichment ratio at least this value."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the term x group matrix as CSV."),
) -> None:
    """Pivot enrichment records into a term-by-target matrix."""
    try:
        loaded = load_records(_resolve_path(records))
    except DataContractError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    by_group: Dict[str, list] = {}
    for record in loaded:
        by_group.setdefault(record.group_id, []).append(record)
    summary = summarize_enrichment(by_group, max_fdr=max_fdr, max_p_value=max_p_value, min_enrichment_ratio=min_ratio)

    if output is not None:
        summary.matrix.to_csv(output)
        typer.echo(f"Matrix written to {output}")
    typer.echo(json.dumps(summary.terms.to_dict(orient="records"), indent=2, default=str))


@app.command("list-artifacts")
def list_artifacts(
    root: Path = typer.Argument(Path("artifacts"), help="Root directory containing pipeline runs."),
    limit: int = typer.Option(10, "--limit", "-l", help="Maximum number of runs to display."),
) -> None:
    """List available pipeline runs and their artifacts."""
    root = root.expanduser().resolve()
    if not root.exists():
        typer.secho(f"No artifact directory found at {root}", fg=typer.colors.RED)
        logger.warning("Artifact directory missing", root=root)
        raise typer.Exit(code=1)

    runs = sorted([path for path in root.iterdir() if path.is_dir()], reverse=True)
    if not runs:
        typer.secho("No pipeline runs found.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=0)

    for run_dir in runs[:limit]:
        typer.secho(f"Run: {run_dir.name}", fg=typer.colors.BLUE)
        for artifact in sorted(run_dir.rglob("*")):
            if artifact.is_file():
                typer.echo(f"  - {artifact.relative_to(run_dir)}")
        typer.echo("")


def main() -> None:
    """Entry point for setuptools."""
    app()


if __name__ == "__main__":
    main()
