"""Data loading utilities for perturb-discovery."""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Iterable, List

import pandas as pd
from pandas.errors import ParserError

from .exceptions import DataContractError, MissingColumnError
from .models import PipelineConfig, ReferenceMethodSpec, load_pipeline_config


logger = logging.getLogger(__name__)


def _detect_delimiter(path: Path) -> str:
    """Attempt to detect delimiter from the first line."""
    with path.open("r", encoding="utf-8") as handle:
        sample = handle.readline()
    if "\t" in sample and "," in sample:
        # Fallback to csv.Sniffer when both are present.
        dialect = csv.Sniffer().sniff(sample)
        return dialect.delimiter
    if "\t" in sample:
        return "\t"
    return ","


def _format_offending_values(values: Iterable[tuple[str, object]], *, max_items: int = 5) -> str:
    collected = list(values)
    formatted = []
    for idx, value in collected[:max_items]:
        formatted.append(f"{idx}={value!r}")
    remaining = max(0, len(collected) - max_items)
    if remaining > 0:
        formatted.append(f"...(+{remaining} more)")
    return ", ".join(formatted)


def _read_table(path: Path, label: str, **kwargs) -> pd.DataFrame:
    if not path.exists():
        raise DataContractError(f"{label} file not found: {path}")
    delimiter = _detect_delimiter(path)
    try:
        return pd.read_csv(path, sep=delimiter, comment="#", **kwargs)
    except ParserError as exc:
        details = exc.args[0] if exc.args else str(exc)
        raise DataContractError(f"{label} file appears malformed ({details}).") from exc
    except Exception as exc:
        raise DataContractError(f"Failed to parse {label.lower()} file {path}: {exc}") from exc


def load_annotations(path: Path, cell_id_column: str = "cell_barcode") -> pd.DataFrame:
    """Load the per-cell annotation table indexed by cell barcode."""
    df = _read_table(path, "Annotation", dtype={cell_id_column: str})
    if cell_id_column not in df.columns:
        raise MissingColumnError([cell_id_column], source=str(path))

    duplicated = df[cell_id_column][df[cell_id_column].duplicated()]
    if not duplicated.empty:
        raise DataContractError(
            f"Duplicate cell barcodes in annotation table: {', '.join(duplicated.astype(str).unique()[:5])}"
        )
    return df.set_index(cell_id_column)


def load_counts(path: Path, gene_column: str = "gene") -> pd.DataFrame:
    """Load a gene-by-cell count matrix with genes as index and barcodes as columns."""
    df = _read_table(path, "Counts", dtype={gene_column: str})

    if gene_column not in df.columns:
        raise DataContractError(f"Counts file must include a '{gene_column}' column.")

    duplicate_columns = [col for col in df.columns[df.columns.duplicated()] if col != gene_column]
    if duplicate_columns:
        dup_list = ", ".join(sorted(set(duplicate_columns)))
        raise DataContractError(f"Counts file contains duplicate cell columns: {dup_list}")

    if df[gene_column].duplicated().any():
        raise DataContractError("Duplicate gene entries detected in counts file.")

    counts_df = df.set_index(gene_column)

    # Coerce values to integer dtype, reporting any failures with context.
    for column in counts_df.columns:
        column_series = counts_df[column]
        coerced = pd.to_numeric(column_series, errors="coerce")
        invalid_mask = coerced.isna() & column_series.notna()
        if invalid_mask.any():
            offenders = list(zip(column_series[invalid_mask].index.tolist(), column_series[invalid_mask].tolist()))
            sample = _format_offending_values(offenders)
            raise DataContractError(f"Counts column '{column}' contains non-numeric values at genes: {sample}")

        fractional = coerced[~coerced.isna()] % 1 != 0
        if fractional.any():
            offenders = list(zip(fractional[fractional].index.tolist(), column_series[fractional].tolist()))
            sample = _format_offending_values(offenders)
            raise DataContractError(f"Counts column '{column}' contains non-integer values at genes: {sample}")

        counts_df[column] = coerced.fillna(0).astype("int64")

    if (counts_df < 0).any().any():
        negative_cells = counts_df.columns[(counts_df < 0).any(axis=0)].tolist()
        raise DataContractError(f"Counts matrix contains negative values in cells: {', '.join(negative_cells[:5])}")

    counts_df.columns = counts_df.columns.astype(str)
    return counts_df


def load_gene_selection(path: Path) -> List[str]:
    """Load the externally supplied gene list, preserving order and dropping repeats."""
    if not path.exists():
        raise DataContractError(f"Gene selection file not found: {path}")

    lines = [line.strip() for line in path.read_text().splitlines()]
    lines = [line for line in lines if line and not line.startswith("#")]
    if lines and lines[0].lower() in {"gene", "gene_id", "gene_symbol"}:
        lines = [line.split(",")[0].strip() for line in lines[1:]]

    genes: List[str] = []
    seen = set()
    for gene in lines:
        if gene not in seen:
            genes.append(gene)
            seen.add(gene)
    if not genes:
        raise DataContractError(f"Gene selection file {path} lists no genes.")
    return genes


def load_reference_results(path: Path, spec: ReferenceMethodSpec) -> pd.DataFrame:
    """Load one reference DE method's per-target table."""
    df = _read_table(path, f"Reference ({spec.name})")
    required = [spec.target_column, spec.gene_column, spec.effect_column, spec.significance_column]
    missing = [column for column in required if column not in df.columns]
    if missing:
        raise MissingColumnError(missing, source=f"reference method '{spec.name}'")

    df[spec.target_column] = df[spec.target_column].astype(str)
    df[spec.gene_column] = df[spec.gene_column].astype(str)
    df[spec.significance_column] = pd.to_numeric(df[spec.significance_column], errors="coerce")
    df[spec.effect_column] = pd.to_numeric(df[spec.effect_column], errors="coerce")
    return df


def load_primary_lfsr(path: Path, gene_column: str = "gene") -> pd.DataFrame:
    """Load the primary method's gene-by-target LFSR matrix."""
    df = _read_table(path, "Primary LFSR", dtype={gene_column: str})
    if gene_column not in df.columns:
        raise MissingColumnError([gene_column], source=str(path))

    matrix = df.set_index(gene_column).apply(pd.to_numeric, errors="coerce")
    if matrix.isna().any().any():
        bad_targets = matrix.columns[matrix.isna().any(axis=0)].tolist()
        raise DataContractError(f"Primary LFSR matrix has non-numeric entries for targets: {', '.join(bad_targets)}")
    if ((matrix < 0) | (matrix > 1)).any().any():
        raise DataContractError("Primary LFSR values must lie within [0, 1].")
    matrix.columns = matrix.columns.astype(str)
    return matrix


def load_config(path: Path) -> PipelineConfig:
    """Load pipeline configuration JSON and validate using Pydantic models."""
    if not path.exists():
        raise DataContractError(f"Configuration file not found: {path}")

    try:
        return load_pipeline_config(path)
    except ValueError as exc:
        raise DataContractError(str(exc)) from exc
