from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import typer
from rich import print
from rich.markup import escape

from ..memory_tools import ToolResult
from ..store import MemoryStore, NoActiveSessionError


def emit(result: ToolResult, *, as_json: bool = False) -> None:
    if result.is_error:
        print(f"[red]{escape(result.text)}[/red]")
        raise typer.Exit(code=1)
    if as_json:
        print(escape(json.dumps(result.items, indent=2, ensure_ascii=False)))
        return
    print(escape(result.text))


def run_tool(
    store_from_path: Callable[[str | None], MemoryStore],
    db_path: str | None,
    operation: Callable[[MemoryStore], ToolResult],
    *,
    as_json: bool = False,
) -> None:
    store = store_from_path(db_path)
    try:
        try:
            result = operation(store)
        except (ValueError, NoActiveSessionError) as exc:
            result = ToolResult(text=f"Error: {exc}", is_error=True)
        emit(result, as_json=as_json)
    finally:
        store.close()


def read_stdin_json(raw: str) -> dict[str, Any]:
    if not raw.strip():
        print("[red]Expected a JSON payload on stdin[/red]")
        raise typer.Exit(code=1)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        print(f"[red]Invalid JSON payload: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    if not isinstance(payload, dict):
        print("[red]Payload must be a JSON object[/red]")
        raise typer.Exit(code=1)
    return payload
