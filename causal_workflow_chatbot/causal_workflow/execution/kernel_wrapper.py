#!/usr/bin/env python3
"""Subprocess wrapper that executes generated analysis code against a dataset."""

from __future__ import annotations

import argparse
import ast
import contextlib
import io
import json
import traceback
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pandas as pd


def _jsonify(v: Any) -> Any:
    if isinstance(v, dict):
        return {str(k): _jsonify(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonify(x) for x in v]
    if isinstance(v, np.ndarray):
        return v.tolist()
    if isinstance(v, (np.floating, np.integer)):
        return v.item()
    if isinstance(v, np.bool_):
        return bool(v)
    if isinstance(v, pd.DataFrame):
        return v.to_dict("records")
    if isinstance(v, pd.Series):
        return v.tolist()
    if isinstance(v, Path):
        return str(v)
    try:
        json.dumps(v)
        return v
    except TypeError:
        return repr(v)


def _namespace(target: str | None) -> Dict[str, Any]:
    namespace: Dict[str, Any] = {"pd": pd, "np": np}
    if target:
        namespace["df"] = pd.read_csv(target)
    return namespace


def _run_cell(code: str, namespace: Dict[str, Any], outputs: List[Dict[str, Any]], silent: bool) -> None:
    tree = ast.parse(code, mode="exec")
    trailing_expr = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        trailing_expr = ast.Expression(tree.body.pop().value)

    stdout = io.StringIO()
    with contextlib.redirect_stdout(stdout):
        exec(compile(tree, "<cell>", "exec"), namespace)
        value = eval(compile(trailing_expr, "<cell>", "eval"), namespace) if trailing_expr else None

    if silent:
        return
    if stdout.getvalue():
        outputs.append({"output_type": "stream", "text": stdout.getvalue()})
    if value is not None:
        html = getattr(value, "_repr_html_", None)
        outputs.append({
            "output_type": "execute_result",
            "text": repr(value),
            "data": html() if callable(html) else None,
            "metadata": {},
        })


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--input", required=True)
    parser.add_argument("--output", required=True)
    args = parser.parse_args()

    request = json.loads(Path(args.input).read_text(encoding="utf-8"))
    response: Dict[str, Any] = {"success": False, "outputs": [], "error": None}

    try:
        namespace = _namespace(request.get("target"))
        for cell in request.get("history", []):
            _run_cell(cell, namespace, [], silent=True)

        if request.get("mode") == "get_variable":
            name = request["variable"]
            if name not in namespace:
                raise NameError(f"name '{name}' is not defined")
            response["value"] = _jsonify(namespace[name])
        else:
            _run_cell(request.get("code", ""), namespace, response["outputs"], bool(request.get("silent")))
        response["success"] = True
    except Exception as exc:
        response["error"] = {
            "name": type(exc).__name__,
            "message": str(exc),
            "traceback": traceback.format_exc().splitlines(),
        }
        response["outputs"].append({"output_type": "error", "text": f"{type(exc).__name__}: {exc}"})

    Path(args.output).write_text(json.dumps(response), encoding="utf-8")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
