"""Shared helpers for the scaffolding generator.

Child processes (``git clone`` of remote bricks), the Dart naming
conventions used by templates, JSON variable files and the Rich console
used for all progress output.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shlex
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

console = Console()

_verbose = False

# ---------------------------------------------------------------------------
# Child processes
# ---------------------------------------------------------------------------


async def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: int = 120,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run *cmd* without a shell and collect its output.

    A string command is split with :func:`shlex.split`.  *env* is layered on
    top of the current environment.

    Returns:
        ``(returncode, stdout, stderr)`` with both streams decoded and
        stripped.  When *timeout* expires the process is killed and
        ``(-1, "", "<command> timed out after <n>s")`` is returned.
    """
    argv = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
    child_env = {**os.environ, **env} if env else None

    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=None if cwd is None else str(cwd),
        env=child_env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return -1, "", f"{shlex.join(argv)} timed out after {timeout}s"

    return process.returncode or 0, _decode(out), _decode(err)


def _decode(raw: bytes | None) -> str:
    return (raw or b"").decode("utf-8", errors="replace").strip()


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

# Acronym runs ("HTTP" in "HTTPServer"), capitalised words, lower runs, digits.
_WORD = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+\d*|[A-Z]+\d*|\d+")


def _words(value: str) -> list[str]:
    return [w.lower() for w in _WORD.findall(value)]


def snake_case(value: str) -> str:
    """``ContactForm``, ``contact-form`` or ``HTTPServer`` to ``contact_form`` / ``http_server``.

    Applying it twice gives the same result as applying it once.
    """
    return "_".join(_words(value))


def pascal_case(value: str) -> str:
    return "".join(w.capitalize() for w in _words(value))


def camel_case(value: str) -> str:
    pascal = pascal_case(value)
    return pascal[:1].lower() + pascal[1:]


def title_case(value: str) -> str:
    """Form label text: ``firstName`` -> ``First name``."""
    return " ".join(_words(value)).capitalize()


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> dict[str, Any]:
    """Read a JSON object from *path*.

    Raises:
        FileNotFoundError: *path* does not exist.
        ValueError: The content is not JSON or its root is not an object
            (``json.JSONDecodeError`` is a ``ValueError``).
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
    return data


# ---------------------------------------------------------------------------
# Console output
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """``0.042`` -> ``42ms``, ``3.7`` -> ``3.7s``, ``65.2`` -> ``1m 5s``."""
    if seconds < 1:
        return f"{max(0, round(seconds * 1000))}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes}m {rest}s"


def set_verbose(enabled: bool) -> None:
    """Turn :func:`print_debug` output on or off."""
    global _verbose
    _verbose = enabled


def is_verbose() -> bool:
    return _verbose


def print_info(message: str) -> None:
    console.print(f"[cyan]•[/cyan] {message}")


def print_debug(message: str) -> None:
    if _verbose:
        console.print(f"[dim]  {message}[/dim]")


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    console.print(f"[bold red]✗ {message}[/bold red]")


def print_warning(message: str) -> None:
    console.print(f"[yellow]! {message}[/yellow]")


def print_summary_table(rows: list[dict[str, str]], title: str = "Summary") -> None:
    """Render *rows* as a table; the first row's keys become the columns."""
    if not rows:
        return
    columns = list(rows[0])
    table = Table(title=title, header_style="bold magenta", show_lines=False)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(str(row.get(column, "")) for column in columns))
    console.print(table)
