from __future__ import annotations

from pathlib import Path


APP_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = APP_DIR.parent

# Runtime directories used by the workflow service.
RUNTIME_DIR = APP_DIR / "runtime"
UPLOADS_DIR = RUNTIME_DIR / "uploads"
EXECUTION_DIR = RUNTIME_DIR / "execution"

# Subprocess wrapper that runs generated analysis code.
KERNEL_WRAPPER = APP_DIR / "execution" / "kernel_wrapper.py"

# Stage order is fixed; DAG and Identification may be skipped when unregistered.
DEFAULT_HISTORY_WINDOW = 5
LOW_CONFIDENCE_THRESHOLD = 0.7


def ensure_runtime_dirs() -> None:
    RUNTIME_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    EXECUTION_DIR.mkdir(parents=True, exist_ok=True)
