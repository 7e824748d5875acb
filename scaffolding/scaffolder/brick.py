"""Brick loading, resolution and generation.

A brick is a parameterised bundle of file templates::

    my_brick/
        brick.yaml          # name, description, version, vars
        __brick__/          # Jinja2 templates; paths may contain {{ vars }}
        hooks/
            pre_gen.py      # optional: run(context) -> updated vars | None
            post_gen.py     # optional: run(context)

``BrickRef`` resolves a reference (bundled, local path, git or archive URL)
to a local brick directory, ``BrickGenerator`` materialises one brick into a
target directory, and ``BrickEngine`` combines both behind the
``TemplateEngine`` protocol used by the build pipeline.
"""

from __future__ import annotations

import asyncio
import hashlib
import importlib.util
import io
import shutil
import tarfile
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Protocol

import httpx
import yaml
from jinja2 import TemplateError
from pydantic import BaseModel, Field, ValidationError

from scaffolding.errors import TemplateResolutionError
from scaffolding.utils import print_debug, run_command

from .templates import TemplateRenderer

BUNDLED_BRICKS_DIR = Path(__file__).resolve().parent.parent / "bricks"
MANIFEST_NAME = "brick.yaml"
TEMPLATES_DIR_NAME = "__brick__"
HOOKS_DIR_NAME = "hooks"


# ---------------------------------------------------------------------------
# Generated output
# ---------------------------------------------------------------------------


class ConflictPolicy(str, Enum):
    """What to do when a generated file already exists in the target."""

    OVERWRITE = "overwrite"
    SKIP = "skip"
    APPEND = "append"


@dataclass(frozen=True)
class GeneratedFile:
    """One file produced by a brick."""

    path: Path
    content: str

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class GeneratedFileSet:
    """Ordered files produced by one or more brick invocations."""

    files: list[GeneratedFile] = field(default_factory=list)

    def __iter__(self) -> Iterator[GeneratedFile]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    def __add__(self, other: "GeneratedFileSet") -> "GeneratedFileSet":
        return GeneratedFileSet([*self.files, *other.files])

    @property
    def paths(self) -> list[Path]:
        return [f.path for f in self.files]

    def as_pairs(self) -> list[tuple[Path, str]]:
        return [(f.path, f.content) for f in self.files]


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class BrickVar(BaseModel):
    """A variable declared in ``brick.yaml``."""

    type: str = Field(default="string", description="string, number, boolean, list, array")
    description: str = Field(default="")
    default: Any = Field(default=None, description="Used when the caller omits the var")
    required: bool = Field(default=True)


class BrickManifest(BaseModel):
    """Parsed ``brick.yaml``."""

    name: str
    description: str = Field(default="")
    version: str = Field(default="0.1.0")
    vars: dict[str, BrickVar] = Field(default_factory=dict)


@dataclass
class HookContext:
    """State handed to a brick hook's ``run`` function."""

    vars: dict[str, Any]
    working_directory: Path
    brick: BrickManifest


class Brick:
    """A brick loaded from a local directory."""

    def __init__(self, path: Path, manifest: BrickManifest, reference: str = "") -> None:
        self.path = path
        self.manifest = manifest
        self.reference = reference or str(path)

    @property
    def template_dir(self) -> Path:
        return self.path / TEMPLATES_DIR_NAME

    def hook_path(self, stage: str) -> Path:
        return self.path / HOOKS_DIR_NAME / f"{stage}.py"

    @classmethod
    def load(cls, path: str | Path, reference: str = "") -> "Brick":
        """Load the brick at *path*.

        Raises:
            TemplateResolutionError: If the directory, its ``brick.yaml`` or
                its ``__brick__`` directory is missing or invalid.
        """
        brick_path = Path(path)
        ref = reference or str(brick_path)
        manifest_path = brick_path / MANIFEST_NAME
        if not manifest_path.is_file():
            raise TemplateResolutionError(ref, f"no {MANIFEST_NAME} in {brick_path}")
        try:
            data = yaml.safe_load(manifest_path.read_text(encoding="utf-8")) or {}
            manifest = BrickManifest.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as exc:
            raise TemplateResolutionError(ref, f"invalid {MANIFEST_NAME}: {exc}") from exc
        if not (brick_path / TEMPLATES_DIR_NAME).is_dir():
            raise TemplateResolutionError(ref, f"no {TEMPLATES_DIR_NAME} directory in {brick_path}")
        return cls(brick_path, manifest, ref)


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


class BrickSource(str, Enum):
    BUNDLED = "bundled"
    LOCAL = "local"
    GIT = "git"
    ARCHIVE = "archive"


class BrickRef(BaseModel):
    """A parsed brick reference.

    Accepted forms::

        bundled:scaffolding
        path:../bricks/scaffolding      (or a bare path)
        git:https://github.com/org/bricks#bricks/scaffolding@main
        https://example.com/bricks.tar.gz#bricks/scaffolding
    """

    source: BrickSource
    location: str
    subpath: str = ""
    ref: str = ""

    @classmethod
    def parse(cls, text: str) -> "BrickRef":
        text = text.strip()
        if not text:
            raise TemplateResolutionError(text, "empty brick reference")
        if text.startswith("bundled:"):
            return cls(source=BrickSource.BUNDLED, location=text[len("bundled:"):])
        if text.startswith("git:"):
            url, _, fragment = text[len("git:"):].partition("#")
            subpath, _, ref = fragment.rpartition("@") if "@" in fragment else (fragment, "", "")
            return cls(source=BrickSource.GIT, location=url, subpath=subpath, ref=ref)
        if text.startswith(("http://", "https://")):
            url, _, subpath = text.partition("#")
            return cls(source=BrickSource.ARCHIVE, location=url, subpath=subpath)
        if text.startswith("path:"):
            text = text[len("path:"):]
        return cls(source=BrickSource.LOCAL, location=text)

    def __str__(self) -> str:
        if self.source is BrickSource.BUNDLED:
            return f"bundled:{self.location}"
        if self.source is BrickSource.GIT:
            suffix = f"#{self.subpath}" if self.subpath or self.ref else ""
            suffix += f"@{self.ref}" if self.ref else ""
            return f"git:{self.location}{suffix}"
        if self.source is BrickSource.ARCHIVE:
            return f"{self.location}#{self.subpath}" if self.subpath else self.location
        return self.location

    async def resolve(
        self, cache_dir: Path, base_dir: Path | None = None, timeout: int = 120
    ) -> Path:
        """Return a local directory holding the brick, fetching it if needed.

        Raises:
            TemplateResolutionError: If the brick cannot be found or fetched.
        """
        if self.source is BrickSource.BUNDLED:
            root = BUNDLED_BRICKS_DIR / self.location
        elif self.source is BrickSource.LOCAL:
            root = Path(self.location).expanduser()
            if not root.is_absolute() and base_dir is not None:
                root = base_dir / root
        elif self.source is BrickSource.GIT:
            root = await self._fetch_git(cache_dir, timeout)
        else:
            root = await self._fetch_archive(cache_dir, timeout)

        brick_dir = root / self.subpath if self.subpath else root
        if not brick_dir.is_dir():
            raise TemplateResolutionError(str(self), f"directory not found: {brick_dir}")
        return brick_dir

    def _cache_key(self) -> str:
        return hashlib.sha1(f"{self.location}@{self.ref}".encode("utf-8")).hexdigest()[:16]

    async def _fetch_git(self, cache_dir: Path, timeout: int) -> Path:
        dest = cache_dir / "git" / self._cache_key()
        if (dest / ".git").is_dir():
            print_debug(f"Using cached clone of {self.location} at {dest}")
            return dest
        await asyncio.to_thread(dest.parent.mkdir, parents=True, exist_ok=True)
        cmd = ["git", "clone", "--depth", "1"]
        if self.ref:
            cmd += ["--branch", self.ref]
        cmd += [self.location, str(dest)]
        print_debug(f"Cloning {self.location} into {dest}")
        returncode, _, stderr = await run_command(cmd, timeout=timeout)
        if returncode != 0:
            await asyncio.to_thread(shutil.rmtree, dest, True)
            raise TemplateResolutionError(str(self), f"git clone failed: {stderr or returncode}")
        return dest

    async def _fetch_archive(self, cache_dir: Path, timeout: int) -> Path:
        dest = cache_dir / "archives" / self._cache_key()
        if dest.is_dir() and any(dest.iterdir()):
            return _archive_root(dest)
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(float(timeout), connect=10.0), follow_redirects=True
            ) as client:
                response = await client.get(self.location)
                response.raise_for_status()
                payload = response.content
        except httpx.HTTPError as exc:
            raise TemplateResolutionError(str(self), f"download failed: {exc}") from exc
        try:
            await asyncio.to_thread(_extract_archive, payload, dest)
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
            await asyncio.to_thread(shutil.rmtree, dest, True)
            raise TemplateResolutionError(str(self), f"cannot extract archive: {exc}") from exc
        return _archive_root(dest)


def _extract_archive(payload: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    if zipfile.is_zipfile(io.BytesIO(payload)):
        with zipfile.ZipFile(io.BytesIO(payload)) as archive:
            archive.extractall(dest)
        return
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:*") as archive:
        archive.extractall(dest, filter="data")


def _archive_root(dest: Path) -> Path:
    """Unwrap the single top-level directory most source archives contain."""
    entries = [p for p in dest.iterdir() if not p.name.startswith(".")]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class BrickGenerator:
    """Materialises one brick into a target directory."""

    def __init__(self, brick: Brick) -> None:
        self.brick = brick
        self.renderer = TemplateRenderer(brick.template_dir)

    def _apply_manifest(self, variables: dict[str, Any]) -> dict[str, Any]:
        """Fill declared defaults and reject missing required vars."""
        merged = dict(variables)
        missing: list[str] = []
        for name, spec in self.brick.manifest.vars.items():
            if name in merged:
                continue
            if spec.default is not None:
                merged[name] = spec.default
            elif spec.required:
                missing.append(name)
        if missing:
            raise TemplateResolutionError(
                self.brick.reference, f"missing required vars: {', '.join(sorted(missing))}"
            )
        return merged

    def _load_hook(self, stage: str) -> Any | None:
        path = self.brick.hook_path(stage)
        if not path.is_file():
            return None
        module_name = f"_scaffolding_hook_{self.brick.manifest.name}_{stage}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise TemplateResolutionError(self.brick.reference, f"cannot load hook {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise TemplateResolutionError(
                self.brick.reference, f"{stage} hook failed to import: {exc}"
            ) from exc
        if not callable(getattr(module, "run", None)):
            raise TemplateResolutionError(self.brick.reference, f"{stage} hook has no run()")
        return module

    async def _run_hook(self, stage: str, context: HookContext) -> Any:
        module = self._load_hook(stage)
        if module is None:
            return None
        print_debug(f"Running {stage} hook of {self.brick.manifest.name}")
        try:
            return await _in_thread(module.run, context)
        except Exception as exc:
            raise TemplateResolutionError(
                self.brick.reference, f"{stage} hook failed: {exc}"
            ) from exc

    async def pre_gen(self, variables: dict[str, Any], working_directory: Path) -> dict[str, Any]:
        """Run the ``pre_gen`` hook and return the (possibly updated) vars."""
        context = HookContext(dict(variables), working_directory, self.brick.manifest)
        result = await self._run_hook("pre_gen", context)
        if result is None:
            return context.vars
        if not isinstance(result, dict):
            raise TemplateResolutionError(
                self.brick.reference, "pre_gen hook must return a dict or None"
            )
        return result

    async def post_gen(self, variables: dict[str, Any], working_directory: Path) -> None:
        """Run the ``post_gen`` hook, if the brick has one."""
        context = HookContext(dict(variables), working_directory, self.brick.manifest)
        await self._run_hook("post_gen", context)

    def render_all(self, variables: dict[str, Any]) -> list[tuple[Path, str]]:
        """Render every template to ``(relative output path, content)`` pairs."""
        rendered: list[tuple[Path, str]] = []
        try:
            for template_path in self.renderer.list_templates():
                output = self.renderer.render_path(template_path, variables)
                rendered.append((output, self.renderer.render(template_path, variables)))
        except (TemplateError, ValueError) as exc:
            raise TemplateResolutionError(
                self.brick.reference, f"rendering failed: {exc}"
            ) from exc
        return rendered

    async def generate(
        self,
        target_dir: str | Path,
        variables: dict[str, Any],
        conflict_policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
    ) -> GeneratedFileSet:
        """Run hooks and write the rendered brick into *target_dir*.

        Files are returned in template order with the content found on disk
        after the ``post_gen`` hook ran.
        """
        target = Path(target_dir)
        await _in_thread(target.mkdir, parents=True, exist_ok=True)

        merged = self._apply_manifest(variables)
        merged = await self.pre_gen(merged, target)

        written: list[Path] = []
        for relative, content in self.render_all(merged):
            out = target / relative
            await _in_thread(_write_file, out, content, conflict_policy)
            written.append(out)

        await self.post_gen(merged, target)

        files = await asyncio.to_thread(_read_back, written)
        print_debug(f"Brick {self.brick.manifest.name} generated {len(files)} file(s) in {target}")
        return GeneratedFileSet(files)


async def _in_thread(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Run *func* in a worker thread; a cancellation waits for it to return."""
    work = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(work)
    except asyncio.CancelledError:
        await asyncio.wait([work])
        raise


def _write_file(path: Path, content: str, policy: ConflictPolicy) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        if policy is ConflictPolicy.SKIP:
            return
        if policy is ConflictPolicy.APPEND:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(content)
            return
    path.write_text(content, encoding="utf-8")


def _read_back(paths: list[Path]) -> list[GeneratedFile]:
    return [
        GeneratedFile(path, path.read_text(encoding="utf-8"))
        for path in paths
        if path.is_file()
    ]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TemplateEngine(Protocol):
    """What the build pipeline needs from a template engine."""

    async def generate(
        self,
        reference: str,
        variables: dict[str, Any],
        target_dir: Path,
        conflict_policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
    ) -> GeneratedFileSet: ...


class BrickEngine:
    """Resolves brick references and generates them.

    Resolved bricks are cached per reference for the lifetime of the engine,
    so concurrent builds fetch a remote brick only once.
    """

    def __init__(
        self,
        cache_dir: Path,
        base_dir: Path | None = None,
        timeout: int = 120,
    ) -> None:
        self.cache_dir = cache_dir
        self.base_dir = base_dir
        self.timeout = timeout
        self._bricks: dict[str, Brick] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self, reference: str) -> Brick:
        """Resolve and load *reference*, reusing an earlier resolution."""
        lock = self._locks.setdefault(reference, asyncio.Lock())
        async with lock:
            if reference not in self._bricks:
                ref = BrickRef.parse(reference)
                path = await ref.resolve(self.cache_dir, self.base_dir, self.timeout)
                self._bricks[reference] = Brick.load(path, reference)
            return self._bricks[reference]

    async def generate(
        self,
        reference: str,
        variables: dict[str, Any],
        target_dir: Path,
        conflict_policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
    ) -> GeneratedFileSet:
        brick = await self.load(reference)
        return await BrickGenerator(brick).generate(target_dir, variables, conflict_policy)
