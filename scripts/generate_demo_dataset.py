#!/usr/bin/env python3
"""Generate a synthetic single-cell perturbation screen for perturb-discovery.

Usage
-----
Create the default demo files in ``sample_data``:

    python scripts/generate_demo_dataset.py --output-dir sample_data --seed 42

Arguments
---------
``--output-dir`` (default: ``sample_data``)
    Directory where ``demo_annotations.csv``, ``demo_counts.csv``,
    ``demo_genes.txt`` and ``demo_config.json`` will be written. The directory
    is created if it does not exist.

``--seed`` (default: ``42``)
    Random seed for reproducibility.

``--cells-per-target`` (default: ``30``)
    Number of cells simulated per target in each condition.

``--background-genes`` (default: ``60``)
    Number of unaffected genes added next to the responsive ones.

The dataset models a stimulated and an unstimulated arm. Each knockdown target
lowers its own transcript and, under stimulation only, a small set of
downstream genes. Cells carrying the non-targeting control are unaffected.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

import numpy as np
import pandas as pd


CONDITIONS = ["stim", "rest"]
CONTROL_LABEL = "NonTarget"
BASE_MEAN = 40.0


@dataclass(frozen=True)
class TargetSpec:
    """Synthetic knockdown target and the genes it moves."""

    symbol: str
    downstream: Tuple[str, ...]
    stim_only: bool = True


TARGET_SPECS: List[TargetSpec] = [
    TargetSpec("IRF1", ("CXCL10", "GBP1", "STAT1")),
    TargetSpec("NFKB1", ("TNF", "IL6", "CCL2")),
    TargetSpec("MYC", ("NPM1", "NCL"), stim_only=False),
]


def _gene_panel(background_genes: int) -> List[str]:
    genes: List[str] = []
    for spec in TARGET_SPECS:
        genes.append(spec.symbol)
        genes.extend(spec.downstream)
    genes.extend(f"BG{idx:03d}" for idx in range(1, background_genes + 1))
    return list(dict.fromkeys(genes))


def _expected_profile(genes: List[str], target: str, condition: str) -> np.ndarray:
    means = np.full(len(genes), BASE_MEAN)
    position = {gene: idx for idx, gene in enumerate(genes)}
    for spec in TARGET_SPECS:
        if spec.symbol != target:
            continue
        means[position[spec.symbol]] = BASE_MEAN * 0.1
        if condition == "stim" or not spec.stim_only:
            for gene in spec.downstream:
                means[position[gene]] = BASE_MEAN * 0.3
    return means


def simulate_screen(
    rng: np.random.Generator,
    cells_per_target: int,
    background_genes: int,
) -> Tuple[pd.DataFrame, pd.DataFrame, List[str]]:
    """Simulate the annotation table, the gene x cell count matrix and the gene panel."""
    genes = _gene_panel(background_genes)
    targets = [spec.symbol for spec in TARGET_SPECS] + [CONTROL_LABEL]

    rows: List[Dict[str, object]] = []
    columns: Dict[str, np.ndarray] = {}
    for condition in CONDITIONS:
        for target in targets:
            means = _expected_profile(genes, target, condition)
            for idx in range(1, cells_per_target + 1):
                barcode = f"{condition.upper()}_{target}_{idx:04d}"
                library_scale = rng.lognormal(mean=0.0, sigma=0.2)
                cell_counts = rng.poisson(means * library_scale)
                columns[barcode] = cell_counts
                row: Dict[str, object] = {"cell_barcode": barcode, "orig.ident": condition}
                for label in targets:
                    row[label] = int(label == target)
                row["nCount_RNA"] = int(cell_counts.sum())
                row["nFeature_RNA"] = int((cell_counts > 0).sum())
                row["percent_mt"] = round(float(rng.uniform(1.0, 8.0)), 3)
                rows.append(row)

    annotations = pd.DataFrame(rows)
    counts = pd.DataFrame(columns, index=pd.Index(genes, name="gene")).reset_index()
    return annotations, counts, genes


def _build_config(targets: List[str]) -> Dict[str, object]:
    """Return a run configuration aligned with the demo dataset."""
    return {
        "experiment_name": "Demo Stimulation Screen",
        "conditions": CONDITIONS,
        "layout": {
            "cell_id_column": "cell_barcode",
            "condition_column": "orig.ident",
            "indicator_start": targets[0],
            "indicator_end": targets[-1],
            "control_label": CONTROL_LABEL,
            "covariate_columns": ["nCount_RNA", "nFeature_RNA", "percent_mt"],
            "expected_target_count": len(targets),
        },
        "discovery": {"fdr_threshold": 0.1, "n_permutations": 5, "base_seed": 42},
        "enrichment": {"enabled": False},
    }


def write_outputs(output_dir: Path, annotations: pd.DataFrame, counts: pd.DataFrame, genes: List[str]) -> None:
    """Persist annotations, counts, gene panel and configuration."""
    output_dir.mkdir(parents=True, exist_ok=True)

    annotations.to_csv(output_dir / "demo_annotations.csv", index=False)
    counts.to_csv(output_dir / "demo_counts.csv", index=False)
    (output_dir / "demo_genes.txt").write_text("gene\n" + "\n".join(genes) + "\n")

    targets = [spec.symbol for spec in TARGET_SPECS] + [CONTROL_LABEL]
    config_path = output_dir / "demo_config.json"
    config_path.write_text(json.dumps(_build_config(targets), indent=2))


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Generate a synthetic perturb-discovery demo dataset.")
    parser.add_argument("--output-dir", type=Path, default=Path("sample_data"))
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--cells-per-target", type=int, default=30)
    parser.add_argument("--background-genes", type=int, default=60)
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> None:
    """Entry point for CLI execution."""
    args = parse_args(argv)
    if args.cells_per_target < 4:
        raise ValueError("cells-per-target must be >= 4")
    if args.background_genes < 0:
        raise ValueError("background-genes must be >= 0")

    rng = np.random.default_rng(seed=args.seed)
    annotations, counts, genes = simulate_screen(
        rng,
        cells_per_target=args.cells_per_target,
        background_genes=args.background_genes,
    )

    write_outputs(args.output_dir, annotations, counts, genes)
    print(f"Synthetic dataset written to {args.output_dir.resolve()}")


if __name__ == "__main__":
    main()
