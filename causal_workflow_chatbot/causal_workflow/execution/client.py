from __future__ import annotations

import asyncio
import json
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import EXECUTION_DIR, KERNEL_WRAPPER
from ..errors import ServiceInvocationError
from .contracts import ExecutionResult


class LocalCodeExecutor:
    """
    Local code-execution adapter.

    Every call runs ``kernel_wrapper.py`` in a fresh subprocess. Cells that
    succeeded earlier are replayed silently first, so variables persist across
    calls the way they would in a notebook kernel. At most one call is
    outstanding per executor; timed-out calls are not retried.
    """

    def __init__(
        self,
        wrapper: Path = KERNEL_WRAPPER,
        default_timeout_sec: float = 120,
        python: str = sys.executable,
        enabled: bool = True,
    ) -> None:
        self.wrapper = Path(wrapper)
        self.default_timeout_sec = default_timeout_sec
        self.python = python
        self.enabled = enabled
        self.target: Optional[str] = None
        self._history: List[str] = []
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.target is not None

    def is_ready(self) -> bool:
        return self.enabled and self.wrapper.exists()

    async def connect(self, target: str) -> None:
        path = Path(target)
        if not path.exists():
            raise ServiceInvocationError(f"Execution target not found: {target}", {"target": target})
        async with self._lock:
            self.target = str(path.resolve())
            self._history = []
        print(f"[EXEC] Connected executor to {self.target}")

    async def disconnect(self) -> None:
        async with self._lock:
            self.target = None
            self._history = []

    async def execute(self, code: str, timeout: Optional[float] = None, silent: bool = False) -> ExecutionResult:
        if not self.is_ready():
            raise ServiceInvocationError("Code execution service is not available")
        async with self._lock:
            request = {
                "mode": "execute",
                "target": self.target,
                "history": list(self._history),
                "code": code,
                "silent": silent,
            }
            payload = await asyncio.to_thread(self._run_wrapper, request, timeout or self.default_timeout_sec)
            result = ExecutionResult.from_dict(payload)
            if result.success:
                self._history.append(code)
            print(f"[EXEC] Cell finished success={result.success} in {result.execution_time_ms} ms")
            return result

    async def get_variable(self, name: str) -> Any:
        if not self.is_ready():
            raise ServiceInvocationError("Code execution service is not available")
        async with self._lock:
            request = {
                "mode": "get_variable",
                "target": self.target,
                "history": list(self._history),
                "variable": name,
            }
            payload = await asyncio.to_thread(self._run_wrapper, request, self.default_timeout_sec)
        if not payload.get("success"):
            error = payload.get("error") or {}
            raise ServiceInvocationError(f"Could not read variable '{name}': {error.get('message', 'unknown error')}")
        return payload.get("value")

    def _run_wrapper(self, request: Dict[str, Any], timeout_sec: float) -> Dict[str, Any]:
        EXECUTION_DIR.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="exec_call_", dir=str(EXECUTION_DIR)) as tmp:
            tmp_path = Path(tmp)
            input_path = tmp_path / "input.json"
            output_path = tmp_path / "output.json"
            input_path.write_text(json.dumps(request), encoding="utf-8")

            full_cmd = [self.python, str(self.wrapper), "--input", str(input_path), "--output", str(output_path)]
            try:
                proc = subprocess.run(
                    full_cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    timeout=timeout_sec,
                    text=True,
                    check=False,
                )
            except subprocess.TimeoutExpired:
                elapsed = int((time.monotonic() - started) * 1000)
                return {
                    "success": False,
                    "error": {"name": "TimeoutError", "message": f"Execution exceeded {timeout_sec}s"},
                    "execution_time_ms": elapsed,
                }

            elapsed = int((time.monotonic() - started) * 1000)
            if proc.returncode != 0 or not output_path.exists():
                stderr = (proc.stderr or "").strip()
                return {
                    "success": False,
                    "error": {"name": "WrapperError", "message": stderr or "wrapper produced no output"},
                    "execution_time_ms": elapsed,
                }

            try:
                payload = json.loads(output_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                return {
                    "success": False,
                    "error": {"name": "WrapperError", "message": f"Invalid wrapper JSON output: {exc}"},
                    "execution_time_ms": elapsed,
                }
            payload["execution_time_ms"] = elapsed
            return payload
