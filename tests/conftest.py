from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd
import pytest

from perturb_discovery.association import AssociationResult
from perturb_discovery.models import AssemblyLayout, CalibrationMode, PipelineConfig

TARGETS = ["T1", "T2", "NonTarget"]
CONDITIONS = ["stim", "rest"]
CELLS_PER_TARGET = 20
N_GENES = 40


def _simulate(seed: int = 7) -> Dict[str, object]:
    rng = np.random.default_rng(seed)
    genes = [f"G{idx}" for idx in range(N_GENES)]

    rows: List[Dict[str, object]] = []
    columns: Dict[str, np.ndarray] = {}
    for condition in CONDITIONS:
        for target in TARGETS:
            for idx in range(CELLS_PER_TARGET):
                barcode = f"{condition}_{target}_{idx:02d}"
                means = np.full(N_GENES, 50.0)
                if target == "T1":
                    # Knockdown of G0 by T1.
                    means[0] = 2.0
                columns[barcode] = rng.poisson(means)
                row: Dict[str, object] = {"cell_barcode": barcode, "orig.ident": condition}
                for label in TARGETS:
                    row[label] = int(label == target)
                row["nCount_RNA"] = int(rng.integers(1500, 2500))
                row["nFeature_RNA"] = int(rng.integers(500, 900))
                row["percent_mt"] = float(rng.uniform(0, 10))
                rows.append(row)

    annotations = pd.DataFrame(rows).set_index("cell_barcode")
    counts = pd.DataFrame(columns, index=pd.Index(genes, name="gene"))
    return {"annotations": annotations, "counts": counts, "genes": genes}


@pytest.fixture(scope="session")
def screen() -> Dict[str, object]:
    return _simulate()


@pytest.fixture()
def annotations(screen) -> pd.DataFrame:
    return screen["annotations"].copy()


@pytest.fixture()
def counts(screen) -> pd.DataFrame:
    return screen["counts"].copy()


@pytest.fixture()
def genes(screen) -> List[str]:
    return list(screen["genes"])


@pytest.fixture()
def layout() -> AssemblyLayout:
    return AssemblyLayout(
        cell_id_column="cell_barcode",
        condition_column="orig.ident",
        indicator_start="T1",
        indicator_end="NonTarget",
        control_label="NonTarget",
        covariate_columns=["nCount_RNA", "nFeature_RNA", "percent_mt"],
        expected_target_count=3,
    )


@pytest.fixture()
def pipeline_config(layout) -> PipelineConfig:
    return PipelineConfig(
        experiment_name="synthetic",
        conditions=CONDITIONS,
        layout=layout,
        discovery={"fdr_threshold": 0.1, "n_permutations": 3, "base_seed": 11},
        enrichment={"enabled": False},
    )


@pytest.fixture()
def input_files(tmp_path: Path, screen, pipeline_config) -> Dict[str, Path]:
    annotations_path = tmp_path / "annotations.csv"
    screen["annotations"].reset_index().to_csv(annotations_path, index=False)
    counts_path = tmp_path / "counts.csv"
    screen["counts"].reset_index().to_csv(counts_path, index=False)
    genes_path = tmp_path / "genes.txt"
    genes_path.write_text("\n".join(screen["genes"]) + "\n")
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(pipeline_config.model_dump(mode="json")))
    return {"annotations": annotations_path, "counts": counts_path, "genes": genes_path, "config": config_path}


def _make_result(
    rows: List[tuple],
    *,
    mode: CalibrationMode = CalibrationMode.NORMAL,
    replicate: int = 0,
    condition: str = "stim",
) -> AssociationResult:
    """Build an AssociationResult from (gene, target, pair_type, p_value) tuples."""
    table = pd.DataFrame(rows, columns=["gene", "target", "pair_type", "p_value"])
    table["effect"] = 0.0
    return AssociationResult(
        condition=condition,
        mode=mode,
        replicate=replicate,
        seed=None if mode == CalibrationMode.NORMAL else replicate,
        table=table,
    )


@pytest.fixture()
def make_result():
    return _make_result
