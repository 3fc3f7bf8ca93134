"""Gene-set enrichment retrieval (gseapy/Enrichr, cached) and target-by-term summaries."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import gseapy as gp
import pandas as pd
from pydantic import ValidationError

from .artifacts import atomic_write_text
from .exceptions import DataContractError
from .models import EnrichmentRecord

logger = logging.getLogger(__name__)


def _prepare_gene_list(genes: Sequence[str]) -> List[str]:
    unique = []
    seen = set()
    for symbol in genes:
        upper = str(symbol).upper()
        if upper not in seen:
            unique.append(upper)
            seen.add(upper)
    return unique


def cache_key(foreground: Sequence[str], background: Optional[Sequence[str]], database: str) -> str:
    """Stable key for one enrichment request, independent of gene order."""
    payload = {
        "foreground": sorted(_prepare_gene_list(foreground)),
        "background": sorted(_prepare_gene_list(background)) if background else [],
        "database": database,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def _parse_overlap(value: object) -> tuple[int, int]:
    if isinstance(value, str) and "/" in value:
        hits, size = value.split("/", 1)
        try:
            return int(hits), int(size)
        except ValueError:
            pass
    return 0, 0


def _records_from_frame(
    frame: pd.DataFrame,
    *,
    group_id: str,
    n_foreground: int,
    n_background: Optional[int],
    min_set_size: int,
    max_set_size: int,
) -> List[EnrichmentRecord]:
    records: List[EnrichmentRecord] = []
    for _, row in frame.iterrows():
        term = row.get("Term")
        if not term:
            continue
        overlap, size = _parse_overlap(row.get("Overlap"))
        if size < min_set_size or size > max_set_size:
            continue
        if n_background:
            expected = size * n_foreground / n_background
            ratio = overlap / expected if expected > 0 else 0.0
        else:
            ratio = float(row.get("Odds Ratio") or 0.0)
        genes = [gene.strip().upper() for gene in str(row.get("Genes") or "").split(";") if gene.strip()]
        source = row.get("Gene_set")
        records.append(
            EnrichmentRecord(
                gene_set_id=f"{source}:{term}" if source else str(term),
                description=str(term),
                size=size,
                enrichment_ratio=max(float(ratio), 0.0),
                p_value=min(max(float(row.get("P-value", 1.0)), 0.0), 1.0),
                fdr=min(max(float(row["Adjusted P-value"]), 0.0), 1.0) if pd.notna(row.get("Adjusted P-value")) else None,
                overlap_genes=genes,
                group_id=group_id,
            )
        )
    return records


def save_records(path: Path, records: Sequence[EnrichmentRecord]) -> Path:
    return atomic_write_text(path, json.dumps([record.model_dump(mode="json") for record in records], indent=2))


def load_records(path: Path) -> List[EnrichmentRecord]:
    try:
        payload = json.loads(path.read_text())
        return [EnrichmentRecord.model_validate(item) for item in payload]
    except (json.JSONDecodeError, ValidationError) as exc:
        raise DataContractError(f"Enrichment records at {path} are malformed: {exc}") from exc


def run_enrichment(
    foreground: Sequence[str],
    background: Optional[Sequence[str]],
    database: str,
    *,
    group_id: str,
    cache_dir: Optional[Path] = None,
    min_set_size: int = 1,
    max_set_size: int = 100_000,
) -> List[EnrichmentRecord]:
    """Run Enrichr via gseapy for one gene list, reusing a persisted result when cached.

    The remote call is treated as unreliable: a failure is logged and yields an
    empty list, and only successful responses are cached.
    """
    gene_list = _prepare_gene_list(foreground)
    if not gene_list:
        logger.info("No genes provided for enrichment of %s; returning empty list.", group_id)
        return []
    background_list = _prepare_gene_list(background) if background else None

    cache_path = None
    if cache_dir is not None:
        cache_path = Path(cache_dir) / f"{cache_key(gene_list, background_list, database)}.json"
        if cache_path.exists():
            try:
                cached = load_records(cache_path)
            except DataContractError as exc:
                logger.warning("Ignoring corrupted enrichment cache %s: %s", cache_path, exc)
            else:
                logger.debug("Enrichment cache hit for %s (%s)", group_id, cache_path.name)
                return [record.model_copy(update={"group_id": group_id}) for record in cached]

    try:
        enr = gp.enrichr(
            gene_list=gene_list,
            gene_sets=[database],
            background=background_list,
            outdir=None,
            cutoff=1.0,
        )
    except Exception as exc:
        logger.warning("Enrichr enrichment failed for %s: %s", group_id, exc)
        return []

    frame = getattr(enr, "results", None)
    if frame is None or not isinstance(frame, pd.DataFrame):
        logger.debug("Unexpected Enrichr result type: %s", type(frame))
        return []

    records = _records_from_frame(
        frame,
        group_id=group_id,
        n_foreground=len(gene_list),
        n_background=len(background_list) if background_list else None,
        min_set_size=min_set_size,
        max_set_size=max_set_size,
    )
    if cache_path is not None:
        save_records(cache_path, records)
    return records


def enrich_groups(
    gene_lists: Mapping[str, Sequence[str]],
    background: Optional[Sequence[str]],
    database: str,
    *,
    cache_dir: Optional[Path] = None,
    min_set_size: int = 1,
    max_set_size: int = 100_000,
) -> Dict[str, List[EnrichmentRecord]]:
    """Enrichment records for each target (or factor) gene list."""
    return {
        group_id: run_enrichment(
            genes,
            background,
            database,
            group_id=group_id,
            cache_dir=cache_dir,
            min_set_size=min_set_size,
            max_set_size=max_set_size,
        )
        for group_id, genes in gene_lists.items()
    }


def filter_significant(
    records: Sequence[EnrichmentRecord],
    *,
    max_fdr: Optional[float] = None,
    max_p_value: Optional[float] = None,
    min_enrichment_ratio: Optional[float] = None,
) -> List[EnrichmentRecord]:
    """Keep records passing every configured threshold; unset thresholds are ignored.

    A record without an FDR value fails an FDR threshold.
    """
    kept: List[EnrichmentRecord] = []
    for record in records:
        if max_fdr is not None and (record.fdr is None or record.fdr > max_fdr):
            continue
        if max_p_value is not None and record.p_value > max_p_value:
            continue
        if min_enrichment_ratio is not None and record.enrichment_ratio < min_enrichment_ratio:
            continue
        kept.append(record)
    return kept


@dataclass(frozen=True)
class EnrichmentSummary:
    """Term x group enrichment ratios plus a per-term significance table."""

    matrix: pd.DataFrame
    terms: pd.DataFrame


def summarize_enrichment(
    records_by_group: Mapping[str, Sequence[EnrichmentRecord]],
    *,
    max_fdr: Optional[float] = None,
    max_p_value: Optional[float] = None,
    min_enrichment_ratio: Optional[float] = None,
) -> EnrichmentSummary:
    """Pivot significant records into a term-by-group matrix of enrichment ratios.

    Every group is a column, every term significant in any group is a row, and a
    (term, group) cell with no significant record is 0.0. The ``terms`` table
    reports, per (gene_set_id, description, size), the minimum p-value across
    groups and the number of groups where the term is significant.
    """
    groups = [str(group) for group in records_by_group]
    rows = []
    for group_id, records in records_by_group.items():
        for record in filter_significant(
            records,
            max_fdr=max_fdr,
            max_p_value=max_p_value,
            min_enrichment_ratio=min_enrichment_ratio,
        ):
            rows.append(
                {
                    "gene_set_id": record.gene_set_id,
                    "description": record.description,
                    "size": record.size,
                    "group_id": str(group_id),
                    "enrichment_ratio": record.enrichment_ratio,
                    "p_value": record.p_value,
                }
            )

    if not rows:
        matrix = pd.DataFrame(index=pd.Index([], name="gene_set_id"), columns=groups, dtype=float)
        terms = pd.DataFrame(columns=["gene_set_id", "description", "size", "min_p_value", "n_groups"])
        return EnrichmentSummary(matrix=matrix, terms=terms)

    long = pd.DataFrame(rows)
    duplicated = long[long.duplicated(["gene_set_id", "group_id"], keep=False)]
    if not duplicated.empty:
        pairs = sorted({f"{row.gene_set_id}@{row.group_id}" for row in duplicated.itertuples()})
        raise DataContractError(f"Duplicate enrichment records for: {', '.join(pairs[:5])}")

    matrix = long.pivot(index="gene_set_id", columns="group_id", values="enrichment_ratio")
    matrix = matrix.reindex(columns=groups).fillna(0.0)
    matrix.columns.name = None

    terms = (
        long.groupby(["gene_set_id", "description", "size"], sort=False)
        .agg(min_p_value=("p_value", "min"), n_groups=("group_id", "nunique"))
        .reset_index()
        .sort_values(["min_p_value", "gene_set_id"], kind="mergesort")
        .reset_index(drop=True)
    )
    matrix = matrix.loc[terms["gene_set_id"].drop_duplicates()]
    return EnrichmentSummary(matrix=matrix, terms=terms)
