"""Write-once, atomically replaced snapshots of pipeline artefacts."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd
from pydantic import BaseModel

from .logging_config import get_logger

logger = get_logger(__name__)


def atomic_write_text(path: Path, text: str) -> Path:
    """Write ``text`` to ``path`` via a sibling temporary file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return path


def new_run_dir(root: Path) -> Path:
    timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
    output_dir = root / timestamp
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


class ArtifactStore:
    """Named, self-contained snapshots under one run directory.

    Tables are stored as CSV and models/dicts as JSON. Each write fully replaces
    any previous snapshot of the same name.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._written: Dict[str, str] = {}

    def path_for(self, name: str, suffix: str) -> Path:
        return self.root / f"{name}{suffix}"

    @property
    def written(self) -> Dict[str, str]:
        return dict(self._written)

    def write_frame(self, name: str, frame: pd.DataFrame, *, index: bool = False) -> Path:
        path = self.path_for(name, ".csv")
        atomic_write_text(path, frame.to_csv(index=index))
        self._written[name] = str(path)
        logger.debug("Wrote artifact {} ({} rows)", name, len(frame))
        return path

    def write_json(self, name: str, payload: Any) -> Path:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        elif isinstance(payload, list):
            payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in payload]
        path = self.path_for(name, ".json")
        atomic_write_text(path, json.dumps(payload, indent=2, default=str))
        self._written[name] = str(path)
        return path

    def read_frame(self, name: str, *, index_col: Any = None) -> pd.DataFrame:
        path = self.path_for(name, ".csv")
        if not path.exists():
            raise FileNotFoundError(f"Artifact '{name}' not found under {self.root}")
        return pd.read_csv(path, index_col=index_col)

    def read_json(self, name: str) -> Any:
        path = self.path_for(name, ".json")
        if not path.exists():
            raise FileNotFoundError(f"Artifact '{name}' not found under {self.root}")
        return json.loads(path.read_text())

    def names(self) -> List[str]:
        names = []
        for path in sorted(self.root.rglob("*")):
            if path.is_file() and path.suffix in {".csv", ".json"} and not path.name.startswith("."):
                names.append(str(path.relative_to(self.root).with_suffix("")))
        return names
