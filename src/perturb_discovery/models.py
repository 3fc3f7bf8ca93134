"""Pydantic domain models for perturb-discovery.

These models capture the run configuration (matrix layout, discovery thresholds,
reference-method descriptions, enrichment knobs) and the structured records the
pipeline reports back to callers.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class PairType(str, Enum):
    """Role of a (gene, target) pair in the test universe."""

    CANDIDATE = "candidate"
    NEGATIVE_CONTROL = "negative_control"


class CalibrationMode(str, Enum):
    """How an association run treats perturbation labels."""

    NORMAL = "normal"
    PERMUTED = "permuted"


class ConditionMatch(str, Enum):
    """How a condition name is matched against the per-cell condition field."""

    EXACT = "exact"
    SUFFIX = "suffix"


class QCSeverity(str, Enum):
    """Severity tags for calibration QC metrics."""

    OK = "ok"
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AssemblyLayout(BaseModel):
    """Explicit description of the per-cell annotation table."""

    cell_id_column: str = "cell_barcode"
    condition_column: str = "orig.ident"
    condition_match: ConditionMatch = ConditionMatch.EXACT
    indicator_start: str = Field(..., description="First per-target indicator column (inclusive).")
    indicator_end: str = Field(..., description="Last per-target indicator column (inclusive).")
    control_label: str = "NonTarget"
    covariate_columns: List[str] = Field(default_factory=lambda: ["nCount_RNA", "nFeature_RNA", "percent_mt"])
    expected_target_count: Optional[int] = Field(default=None, ge=1)

    @field_validator("covariate_columns")
    @classmethod
    def _unique_covariates(cls, value: List[str]) -> List[str]:
        if len(value) != len(set(value)):
            raise ValueError("Covariate columns must be unique.")
        return value


class DiscoveryOptions(BaseModel):
    """Thresholds and replicate settings for the discovery stage."""

    fdr_threshold: float = Field(default=0.1, gt=0, le=1)
    n_permutations: int = Field(default=10, ge=0)
    base_seed: int = 0
    max_workers: int = Field(default=1, ge=1)


class ReferenceMethodSpec(BaseModel):
    """Column mapping and significance criterion for one reference DE method."""

    name: str
    target_column: str = "target"
    gene_column: str = "gene"
    effect_column: str = "log2FoldChange"
    significance_column: str = "padj"
    significance_threshold: float = Field(default=0.05, gt=0, le=1)
    label_aliases: Dict[str, str] = Field(default_factory=dict)
    condition_column: Optional[str] = Field(
        default=None, description="Column naming the condition of each row; unset means the table applies to all."
    )

    @field_validator("name")
    @classmethod
    def _no_empty_name(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Reference method names must be non-empty strings.")
        return value


class EnrichmentOptions(BaseModel):
    """Gene-set enrichment database and significance knobs."""

    enabled: bool = True
    database: str = "GO_Biological_Process_2023"
    max_fdr: Optional[float] = Field(default=0.05, gt=0, le=1)
    max_p_value: Optional[float] = Field(default=None, gt=0, le=1)
    min_enrichment_ratio: Optional[float] = Field(default=None, ge=0)
    min_set_size: int = Field(default=10, ge=1)
    max_set_size: int = Field(default=500, ge=1)

    @model_validator(mode="after")
    def _validate_sizes(self) -> "EnrichmentOptions":
        if self.min_set_size > self.max_set_size:
            raise ValueError("min_set_size must not exceed max_set_size.")
        return self


class PipelineConfig(BaseModel):
    """Top-level configuration for one discovery run."""

    experiment_name: Optional[str] = None
    conditions: List[str]
    layout: AssemblyLayout
    discovery: DiscoveryOptions = Field(default_factory=DiscoveryOptions)
    reference_methods: List[ReferenceMethodSpec] = Field(default_factory=list)
    primary_lfsr_threshold: float = Field(default=0.05, gt=0, le=1)
    primary_label_aliases: Dict[str, str] = Field(
        default_factory=dict, description="Primary-method target label -> canonical target label."
    )
    enrichment: EnrichmentOptions = Field(default_factory=EnrichmentOptions)

    @model_validator(mode="after")
    def _validate_conditions(self) -> "PipelineConfig":
        if not self.conditions:
            raise ValueError("At least one condition is required.")
        if len(self.conditions) != len(set(self.conditions)):
            raise ValueError("Condition names must be unique.")
        names = [spec.name for spec in self.reference_methods]
        if len(names) != len(set(names)):
            raise ValueError("Reference method names must be unique.")
        return self

    def reference_method(self, name: str) -> ReferenceMethodSpec:
        for spec in self.reference_methods:
            if spec.name == name:
                return spec
        raise KeyError(name)


class EnrichmentRecord(BaseModel):
    """One gene-set enrichment row for a target or factor."""

    gene_set_id: str
    description: str = ""
    size: int = Field(..., ge=0)
    enrichment_ratio: float = Field(..., ge=0)
    p_value: float = Field(..., ge=0, le=1)
    fdr: Optional[float] = Field(default=None, ge=0, le=1)
    overlap_genes: List[str] = Field(default_factory=list)
    group_id: str


class QCMetric(BaseModel):
    """Quantitative calibration quality measure."""

    name: str
    value: Optional[float] = None
    unit: Optional[str] = None
    severity: QCSeverity = QCSeverity.INFO
    threshold: Optional[str] = Field(default=None, description="Human-readable threshold description.")
    details: Optional[str] = None
    recommendation: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Return True when QC severity is non-actionable."""
        return self.severity in {QCSeverity.OK, QCSeverity.INFO}


class PipelineWarning(BaseModel):
    """Structured, recoverable issue raised during a run."""

    code: str
    message: str
    details: Dict[str, object] = Field(default_factory=dict)


class ConditionSummary(BaseModel):
    """Per-condition snapshot of the discovery run."""

    condition: str
    n_cells: int
    n_genes: int
    n_targets: int
    n_pairs: int
    n_candidate_pairs: int
    n_negative_control_pairs: int
    n_permutations: int
    n_discoveries: int
    fdr_threshold: float
    qc_metrics: List[QCMetric] = Field(default_factory=list)


class PipelineResult(BaseModel):
    """Container for the complete run output."""

    config: PipelineConfig
    conditions: List[ConditionSummary] = Field(default_factory=list)
    method_failures: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    condition_failures: Dict[str, str] = Field(
        default_factory=dict, description="Condition -> reason it produced no results."
    )
    artifacts: Dict[str, str] = Field(default_factory=dict, description="Named artefact paths.")
    warnings: List[PipelineWarning] = Field(default_factory=list)
    runtime_seconds: Optional[float] = None

    @property
    def total_discoveries(self) -> int:
        return sum(summary.n_discoveries for summary in self.conditions)


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load and validate a PipelineConfig from a JSON file."""
    payload = json.loads(Path(path).read_text())

    # Promote a top-level fdr_threshold into the discovery block when given there.
    discovery = payload.get("discovery") or {}
    if "fdr_threshold" in payload and "fdr_threshold" not in discovery:
        discovery["fdr_threshold"] = payload.pop("fdr_threshold")
    payload["discovery"] = discovery

    try:
        return PipelineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid pipeline configuration: {exc}") from exc
