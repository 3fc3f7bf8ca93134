"""Construction of the (gene, target) test-pair universe."""

from __future__ import annotations

import warnings
from typing import Dict, List, Sequence

import pandas as pd

from .exceptions import DataQualityWarning
from .logging_config import get_logger
from .models import PairType

logger = get_logger(__name__)

PAIR_COLUMNS = ["gene", "target", "pair_type"]


def _unique_in_order(values: Sequence[str]) -> List[str]:
    unique: List[str] = []
    seen = set()
    for value in values:
        if value not in seen:
            unique.append(value)
            seen.add(value)
    return unique


def build_pair_universe(genes: Sequence[str], targets: Sequence[str], control_label: str) -> pd.DataFrame:
    """Enumerate every (gene, target) pair, genes outermost, and label its role.

    A pair is ``negative_control`` exactly when its target is ``control_label``.
    When the control label is not among ``targets`` every pair is a candidate and a
    DataQualityWarning is emitted.
    """
    gene_list = _unique_in_order([str(gene) for gene in genes])
    target_list = _unique_in_order([str(target) for target in targets])

    if control_label not in target_list:
        message = (
            f"Control label '{control_label}' not among observed targets; "
            "no negative-control pairs will be tested."
        )
        logger.warning(message)
        warnings.warn(DataQualityWarning(message, {"control_label": control_label}), stacklevel=2)

    rows = [
        (
            gene,
            target,
            PairType.NEGATIVE_CONTROL.value if target == control_label else PairType.CANDIDATE.value,
        )
        for gene in gene_list
        for target in target_list
    ]
    universe = pd.DataFrame(rows, columns=PAIR_COLUMNS)
    logger.info(
        "Built pair universe: {} genes x {} targets = {} pairs",
        len(gene_list),
        len(target_list),
        len(universe),
    )
    return universe


def pair_index(frame: pd.DataFrame) -> pd.MultiIndex:
    """Return the ordered (gene, target) identity of each row."""
    return pd.MultiIndex.from_arrays([frame["gene"].astype(str), frame["target"].astype(str)], names=["gene", "target"])


def count_pair_types(universe: pd.DataFrame) -> Dict[str, int]:
    counts = universe["pair_type"].value_counts()
    return {pair_type.value: int(counts.get(pair_type.value, 0)) for pair_type in PairType}
