"""Custom exceptions for perturb-discovery data handling and bookkeeping."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence


def _preview(values: Iterable[object], *, max_items: int = 5) -> str:
    collected = [str(value) for value in values]
    shown = ", ".join(collected[:max_items])
    remaining = len(collected) - max_items
    if remaining > 0:
        shown += f", ...(+{remaining} more)"
    return shown


class DataContractError(Exception):
    """Raised when input files violate the documented data contract."""

    def __init__(self, message: str):
        super().__init__(message)


class MissingColumnError(DataContractError):
    """Raised when a required annotation or covariate column is absent."""

    def __init__(self, columns: Sequence[str], *, source: str = "annotation table"):
        self.columns = list(columns)
        self.source = source
        super().__init__(f"Missing required column(s) in {source}: {_preview(self.columns)}")


class InvariantViolation(Exception):
    """Raised when assembled or derived artefacts disagree with each other."""

    def __init__(self, message: str, identifiers: Optional[Iterable[object]] = None):
        self.identifiers = list(identifiers or [])
        if self.identifiers:
            message = f"{message} (offending: {_preview(self.identifiers)})"
        super().__init__(message)


class ContractViolation(Exception):
    """Raised when an association runner returns results that do not match its input."""

    def __init__(
        self,
        message: str,
        *,
        condition: Optional[str] = None,
        replicate: Optional[int] = None,
        added: Optional[List[object]] = None,
        missing: Optional[List[object]] = None,
        invalid: Optional[List[object]] = None,
    ):
        self.condition = condition
        self.replicate = replicate
        self.added = list(added or [])
        self.missing = list(missing or [])
        self.invalid = list(invalid or [])
        parts = [message]
        if condition is not None or replicate is not None:
            parts.append(f"condition={condition!r}, replicate={replicate!r}")
        if self.added:
            parts.append(f"unexpected pairs: {_preview(self.added)}")
        if self.missing:
            parts.append(f"missing pairs: {_preview(self.missing)}")
        if self.invalid:
            parts.append(f"invalid p-values at: {_preview(self.invalid)}")
        super().__init__("; ".join(parts))


class LabelMismatchError(Exception):
    """Raised when a method's target labels cannot be mapped onto the canonical set."""

    def __init__(self, method: str, labels: Sequence[str]):
        self.method = method
        self.labels = list(labels)
        super().__init__(
            f"Method '{method}' reports target labels with no canonical counterpart: {_preview(self.labels)}"
        )


class DataQualityWarning(UserWarning):
    """Recoverable data-quality issue; the pipeline continues with reduced power."""

    def __init__(self, message: str, details: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.details = dict(details or {})
