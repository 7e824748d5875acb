"""Scaffolding build pipeline.

Implements the per-file build step:

PARSING            -- Read the domain model and extract its fields.
VARIABLE_BUILDING  -- Derive the brick variables.
FEATURE_GENERATION -- Generate the CRUD feature brick into a scratch dir.
INDEX_GENERATION   -- Generate the home/index brick into a scratch dir.
BUNDLING           -- Merge every generated file into one module.
WRITING            -- Write ``<name>.scaffold.dart`` beside the input.

Usage::

    python -m scaffolding.pipeline build lib/features/contact.dart
    python -m scaffolding.pipeline build --glob "lib/features/*.dart"
    python -m scaffolding.pipeline make bundled:scaffolding --vars vars.json -o out/
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from rich.panel import Panel

from scaffolding.bundler import bundle
from scaffolding.config import Config
from scaffolding.errors import (
    BuildCancelled,
    BundlingError,
    ScaffoldError,
    WriteError,
)
from scaffolding.parser import DomainInfo, parse_domain_file
from scaffolding.scaffolder import (
    BrickEngine,
    ConflictPolicy,
    GeneratedFileSet,
    TemplateEngine,
    build_feature_variables,
    build_index_variables,
)
from scaffolding.utils import (
    console,
    format_duration,
    load_json,
    print_debug,
    print_error,
    print_info,
    print_success,
    print_summary_table,
    print_warning,
    set_verbose,
)

# ---------------------------------------------------------------------------
# Build state
# ---------------------------------------------------------------------------


class BuildState(str, Enum):
    """States of one build invocation."""

    IDLE = "idle"
    PARSING = "parsing"
    VARIABLE_BUILDING = "variable_building"
    FEATURE_GENERATION = "feature_generation"
    INDEX_GENERATION = "index_generation"
    BUNDLING = "bundling"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (BuildState.DONE, BuildState.FAILED, BuildState.CANCELLED)


class CancelToken:
    """Cooperative cancellation flag checked between build steps."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BuildResult:
    """Outcome of one build invocation."""

    input_path: Path
    output_path: Path
    state: BuildState = BuildState.IDLE
    history: list[BuildState] = field(default_factory=lambda: [BuildState.IDLE])
    domain: DomainInfo | None = None
    error: Exception | None = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    duration: float = 0.0

    def transition(self, state: BuildState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def success(self) -> bool:
        return self.state is BuildState.DONE


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class ScaffoldBuilder:
    """Runs the build step for domain model files.

    All collaborators are passed in explicitly; the default engine resolves
    bricks with a ``BrickEngine`` configured from *config*.

    Attributes:
        config: Builder configuration.
        engine: Template engine used for both brick invocations.
        package_name: Dart package the generated code belongs to.
    """

    build_extensions = {".dart": [".scaffold.dart"]}

    def __init__(self, config: Config, engine: TemplateEngine | None = None) -> None:
        self.config = config
        self.engine: TemplateEngine = engine or BrickEngine(
            cache_dir=config.brick_cache_dir,
            base_dir=config.project_root,
            timeout=config.command_timeout,
        )
        self.package_name = config.resolve_package_name()

    # ------------------------------------------------------------------
    # Single invocation
    # ------------------------------------------------------------------

    async def build(self, input_path: str | Path, cancel: CancelToken | None = None) -> BuildResult:
        """Build the scaffold for one domain model file.

        Raises:
            ScaffoldError: Whatever step failed; ``result.state`` is
                ``FAILED`` (or ``CANCELLED``) and nothing was written.
        """
        source = Path(input_path)
        result = BuildResult(input_path=source, output_path=self.config.output_path_for(source))
        start = time.monotonic()
        scratch: Path | None = None

        def step(state: BuildState) -> None:
            if cancel is not None and cancel.cancelled:
                raise BuildCancelled(source, state.value)
            result.transition(state)

        try:
            print_info(f"Generating scaffold for {source.name}")

            step(BuildState.PARSING)
            info = await parse_domain_file(source)
            result.domain = info
            print_info(f"Found domain object {info.name} with the fields: {', '.join(info.field_names)}")

            step(BuildState.VARIABLE_BUILDING)
            feature_vars = build_feature_variables(self.package_name, info)
            index_vars = build_index_variables(self.package_name, [info.name])

            scratch = await asyncio.to_thread(self._create_scratch)
            files = await self._generate(feature_vars, index_vars, scratch, step)
            print_info("Generated scaffold files, now bundling")

            step(BuildState.BUNDLING)
            bundled = bundle(
                self.package_name, files.as_pairs(), aggregator=self.config.aggregator_filename
            )

            step(BuildState.WRITING)
            await asyncio.to_thread(_write_atomic, result.output_path, bundled)

            result.transition(BuildState.DONE)
            print_success(f"Bundled into {result.output_path}")
            return result
        except BuildCancelled as exc:
            result.error = exc
            result.transition(BuildState.CANCELLED)
            print_warning(str(exc))
            raise
        except Exception as exc:
            result.error = exc
            result.transition(BuildState.FAILED)
            raise
        finally:
            result.duration = time.monotonic() - start
            if scratch is not None:
                if self.config.keep_scratch:
                    print_debug(f"Keeping scratch directory {scratch}")
                else:
                    await asyncio.to_thread(shutil.rmtree, scratch, True)

    async def _generate(
        self,
        feature_vars: dict[str, Any],
        index_vars: dict[str, Any],
        scratch: Path,
        step: Any,
    ) -> GeneratedFileSet:
        """Run the feature and index bricks into separate scratch subdirectories."""
        feature_dir = scratch / "feature"
        index_dir = scratch / "index"

        if self.config.parallel_generation:
            step(BuildState.FEATURE_GENERATION)
            step(BuildState.INDEX_GENERATION)
            tasks = [
                asyncio.create_task(
                    self.engine.generate(
                        self.config.feature_brick, feature_vars, feature_dir, ConflictPolicy.OVERWRITE
                    )
                ),
                asyncio.create_task(
                    self.engine.generate(
                        self.config.index_brick, index_vars, index_dir, ConflictPolicy.OVERWRITE
                    )
                ),
            ]
            try:
                feature_files, index_files = await asyncio.gather(*tasks)
            except BaseException:
                # Both bricks must have stopped writing before the scratch dir is removed.
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            return feature_files + index_files

        step(BuildState.FEATURE_GENERATION)
        feature_files = await self.engine.generate(
            self.config.feature_brick, feature_vars, feature_dir, ConflictPolicy.OVERWRITE
        )
        step(BuildState.INDEX_GENERATION)
        index_files = await self.engine.generate(
            self.config.index_brick, index_vars, index_dir, ConflictPolicy.OVERWRITE
        )
        return feature_files + index_files

    def _create_scratch(self) -> Path:
        parent = self.config.scratch_parent
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        try:
            parent.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix=f"scaffolding_{stamp}_", dir=parent))
        except OSError as exc:
            raise WriteError(parent, f"cannot create scratch directory: {exc}") from exc

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def build_all(self, inputs: list[Path] | None = None) -> list[BuildResult]:
        """Build every input concurrently, bounded by ``max_parallel_builds``.

        Failures do not stop the other invocations; each result records its
        own outcome.
        """
        if not self.config.enabled:
            print_warning("Scaffolding is disabled in the configuration -- nothing to do.")
            return []

        paths = inputs if inputs is not None else self.config.find_inputs()
        semaphore = asyncio.Semaphore(self.config.max_parallel_builds)

        def _failed(path: Path, exc: Exception) -> BuildResult:
            failed = BuildResult(input_path=path, output_path=self.config.output_path_for(path))
            failed.error = exc
            failed.transition(BuildState.FAILED)
            return failed

        async def _one(path: Path) -> BuildResult:
            async with semaphore:
                try:
                    return await self.build(path)
                except ScaffoldError as exc:
                    print_error(str(exc))
                    return _failed(path, exc)
                except Exception as exc:
                    print_error(f"Unexpected error while building {path}: {exc}")
                    print_debug(traceback.format_exc())
                    return _failed(path, exc)

        return list(await asyncio.gather(*(_one(p) for p in paths)))


# ---------------------------------------------------------------------------
# Supersession
# ---------------------------------------------------------------------------


class BuildScheduler:
    """Runs builds so that a newer request for a file supersedes an older one.

    Intended for a file watcher: calling :meth:`submit` for a path whose
    previous build is still running cancels that build at its next step
    boundary.
    """

    def __init__(self, builder: ScaffoldBuilder) -> None:
        self.builder = builder
        self._running: dict[Path, tuple[CancelToken, asyncio.Task[BuildResult]]] = {}

    def submit(self, input_path: str | Path) -> asyncio.Task[BuildResult]:
        path = Path(input_path).resolve()
        previous = self._running.get(path)
        if previous is not None and not previous[1].done():
            previous[0].cancel()

        token = CancelToken()
        task = asyncio.create_task(self.builder.build(path, token))
        self._running[path] = (token, task)
        task.add_done_callback(lambda t, p=path: self._forget(p, t))
        return task

    def _forget(self, path: Path, task: asyncio.Task[BuildResult]) -> None:
        current = self._running.get(path)
        if current is not None and current[1] is task:
            del self._running[path]

    async def drain(self) -> None:
        """Wait for every scheduled build to finish, ignoring their errors."""
        tasks = [task for _, task in self._running.values()]
        await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_atomic(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file so no partial artifact remains."""
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise WriteError(path, exc.strerror or str(exc)) from exc


def _print_results(results: list[BuildResult]) -> None:
    rows = [
        {
            "Input": str(r.input_path),
            "State": r.state.value,
            "Output": str(r.output_path) if r.success else "-",
            "Time": format_duration(r.duration),
        }
        for r in results
    ]
    print_summary_table(rows, title="Scaffold build")


async def make_brick(
    reference: str,
    variables: dict[str, Any],
    output_dir: Path,
    config: Config,
    conflict_policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
) -> GeneratedFileSet:
    """Generate a single brick straight into *output_dir* (no parsing, no bundling)."""
    engine = BrickEngine(
        cache_dir=config.brick_cache_dir,
        base_dir=config.project_root,
        timeout=config.command_timeout,
    )
    return await engine.generate(reference, variables, output_dir, conflict_policy)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``scaffolding`` / ``python -m scaffolding.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="scaffolding",
        description="Generate bundled CRUD scaffolds from Dart domain models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  scaffolding build lib/features/contact.dart\n"
            "  scaffolding build --glob 'lib/features/*.dart' --parallel\n"
            "  scaffolding make bundled:scaffolding --vars vars.json -o ./out\n"
        ),
    )
    parser.add_argument("--project-root", "-C", default=None, help="Dart package root")
    parser.add_argument("--package", default=None, help="Override the Dart package name")
    parser.add_argument("--config", default=None, help="JSON config saved with Config.save")
    parser.add_argument("--build-yaml", default=None, help="Read enable flag/glob from build.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed progress")
    sub = parser.add_subparsers(dest="command", required=True)

    build_cmd = sub.add_parser("build", help="Build scaffolds for domain model files")
    build_cmd.add_argument("inputs", nargs="*", help="Domain model files (default: --glob)")
    build_cmd.add_argument("--glob", default=None, help="Input glob relative to the project root")
    build_cmd.add_argument("--feature-brick", default=None, help="Feature brick reference")
    build_cmd.add_argument("--index-brick", default=None, help="Index brick reference")
    build_cmd.add_argument("--keep-scratch", action="store_true", help="Keep scratch dirs")
    build_cmd.add_argument(
        "--parallel", action="store_true", help="Generate feature and index bricks concurrently"
    )

    make_cmd = sub.add_parser("make", help="Generate one brick directly")
    make_cmd.add_argument("brick", help="Brick reference, e.g. bundled:scaffolding")
    make_cmd.add_argument("--vars", required=True, help="JSON file with the brick variables")
    make_cmd.add_argument("--output", "-o", default=".", help="Target directory")
    make_cmd.add_argument(
        "--on-conflict",
        choices=[p.value for p in ConflictPolicy],
        default=ConflictPolicy.OVERWRITE.value,
    )

    args = parser.parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.project_root:
        overrides["project_root"] = Path(args.project_root)
    if args.package:
        overrides["package_name"] = args.package
    if args.verbose:
        overrides["verbose"] = True
    if args.command == "build":
        if args.glob:
            overrides["input_glob"] = args.glob
        if args.feature_brick:
            overrides["feature_brick"] = args.feature_brick
        if args.index_brick:
            overrides["index_brick"] = args.index_brick
        if args.keep_scratch:
            overrides["keep_scratch"] = True
        if args.parallel:
            overrides["parallel_generation"] = True

    try:
        if args.config:
            config = Config.load(Path(args.config)).model_copy(update=overrides)
        elif args.build_yaml:
            config = Config.from_build_yaml(Path(args.build_yaml), **overrides)
        else:
            config = Config.from_env(**overrides)
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] Invalid configuration: {exc}")
        sys.exit(1)

    set_verbose(config.verbose)

    if args.command == "make":
        try:
            variables = load_json(args.vars)
            files = asyncio.run(
                make_brick(
                    args.brick, variables, Path(args.output), config, ConflictPolicy(args.on_conflict)
                )
            )
        except (OSError, ValueError) as exc:
            console.print(f"[bold red]Error:[/bold red] Cannot read vars: {exc}")
            sys.exit(1)
        except ScaffoldError as exc:
            print_error(str(exc))
            sys.exit(1)
        print_success(f"Generated {len(files)} file(s) into {Path(args.output).resolve()}")
        return

    console.print(
        Panel(
            f"[bold bright_cyan]Scaffolding[/bold bright_cyan]\n"
            f"Project : {config.project_root.resolve()}\n"
            f"Feature : {config.feature_brick}\n"
            f"Index   : {config.index_brick}",
            title="[bold]Build[/bold]",
            border_style="bright_cyan",
        )
    )

    inputs = [Path(p) for p in args.inputs] or None
    for path in inputs or []:
        if not path.exists():
            console.print(f"[bold red]Error:[/bold red] Input file not found: {path}")
            sys.exit(1)

    try:
        builder = ScaffoldBuilder(config)
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] Cannot read package name: {exc}")
        sys.exit(1)

    results = asyncio.run(builder.build_all(inputs))
    if not results:
        return
    _print_results(results)
    if not all(r.success for r in results):
        console.print("[bold red]Scaffold build failed.[/bold red]")
        sys.exit(1)
    console.print("[bold green]Scaffold build completed successfully![/bold green]")


if __name__ == "__main__":
    main()
