from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .config import UPLOADS_DIR
from .models import DatasetInfo, SharedContext


def _normalise_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())


def match_column(columns: List[str], variable: Optional[str]) -> Optional[str]:
    """Column whose name matches ``variable`` ignoring case, spaces and punctuation."""
    if not variable:
        return None
    wanted = _normalise_name(variable)
    for column in columns:
        if _normalise_name(column) == wanted:
            return column
    for column in columns:
        normalised = _normalise_name(column)
        if normalised and (normalised in wanted or wanted in normalised):
            return column
    return None


def load_dataset(path: str, context: Optional[SharedContext] = None) -> DatasetInfo:
    """Read a CSV and describe it; raises FileNotFoundError / ValueError on bad input."""
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")
    try:
        df = pd.read_csv(csv_path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise ValueError(f"Could not read CSV file {csv_path.name}: {exc}") from exc

    columns = [str(c) for c in df.columns]
    print(f"[DEBUG] Loaded dataset {csv_path.name}: shape={df.shape}")
    return DatasetInfo(
        name=csv_path.name,
        rows=int(len(df)),
        columns=columns,
        path=str(csv_path.resolve()),
        treatment_column=match_column(columns, context.treatment) if context else None,
        outcome_column=match_column(columns, context.outcome) if context else None,
    )


def store_upload(session_id: str, filename: str, content: bytes) -> Path:
    """Write uploaded bytes under the uploads directory, one folder per session."""
    safe_name = Path(filename or "data.csv").name
    if not safe_name.lower().endswith(".csv"):
        raise ValueError("Please upload a CSV file")
    # session ids come from the client; keep them to one plain path segment
    target_dir = UPLOADS_DIR / (re.sub(r"[^A-Za-z0-9_-]", "_", session_id) or "session")
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / safe_name
    target.write_bytes(content)
    return target
