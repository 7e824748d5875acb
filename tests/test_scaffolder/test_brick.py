"""Unit tests for brick loading, resolution and generation (scaffolding.scaffolder.brick).

Tests cover:
- BrickRef parsing and formatting for every source kind
- Resolution of bundled, local, git (mock run_command) and archive (mock httpx) bricks
- Brick.load validation of brick.yaml and __brick__
- BrickGenerator: path rendering, manifest defaults and required vars,
  pre/post hooks, conflict policies, determinism, cancellation during a write
- BrickEngine caching
"""

from __future__ import annotations

import asyncio
import io
import tarfile
import threading
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from scaffolding.errors import TemplateResolutionError
from scaffolding.scaffolder.brick import (
    BUNDLED_BRICKS_DIR,
    Brick,
    BrickEngine,
    BrickGenerator,
    BrickRef,
    BrickSource,
    ConflictPolicy,
    GeneratedFile,
    GeneratedFileSet,
)

GREETING_VARS = {
    "name": {"type": "string", "description": "Who to greet"},
    "punctuation": {"type": "string", "default": "!"},
}
GREETING_TEMPLATES = {
    "{{ name }}/hello_{{ name }}.txt.j2": "Hello {{ name | pascal_case }}{{ punctuation }}\n",
    "notes.txt": "static notes\n",
}


def _mock_http_client(payload: bytes = b"", error: Exception | None = None) -> MagicMock:
    """Return a MagicMock usable as ``async with httpx.AsyncClient(...)``."""
    response = MagicMock()
    response.content = payload
    response.raise_for_status = MagicMock()
    client = MagicMock()
    client.get = AsyncMock(return_value=response, side_effect=error)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _tar_gz(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# BrickRef
# ---------------------------------------------------------------------------


class TestBrickRefParse:
    @pytest.mark.unit
    def test_bundled(self):
        ref = BrickRef.parse("bundled:scaffolding")
        assert ref.source is BrickSource.BUNDLED
        assert ref.location == "scaffolding"

    @pytest.mark.unit
    @pytest.mark.parametrize("text", ["path:../bricks/x", "../bricks/x"])
    def test_local(self, text: str):
        ref = BrickRef.parse(text)
        assert ref.source is BrickSource.LOCAL
        assert ref.location == "../bricks/x"

    @pytest.mark.unit
    def test_git_with_subpath_and_ref(self):
        ref = BrickRef.parse("git:https://github.com/org/bricks.git#bricks/scaffolding@v1.2")
        assert ref.source is BrickSource.GIT
        assert ref.location == "https://github.com/org/bricks.git"
        assert ref.subpath == "bricks/scaffolding"
        assert ref.ref == "v1.2"

    @pytest.mark.unit
    def test_git_without_fragment(self):
        ref = BrickRef.parse("git:https://github.com/org/brick.git")
        assert ref.subpath == ""
        assert ref.ref == ""

    @pytest.mark.unit
    def test_archive(self):
        ref = BrickRef.parse("https://example.com/bricks.tar.gz#greeting")
        assert ref.source is BrickSource.ARCHIVE
        assert ref.location == "https://example.com/bricks.tar.gz"
        assert ref.subpath == "greeting"

    @pytest.mark.unit
    def test_empty_reference(self):
        with pytest.raises(TemplateResolutionError, match="empty brick reference"):
            BrickRef.parse("   ")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "text",
        [
            "bundled:scaffolding",
            "git:https://github.com/org/bricks.git#bricks/scaffolding@main",
            "git:https://github.com/org/bricks.git",
            "https://example.com/bricks.tar.gz#greeting",
            "../bricks/x",
        ],
    )
    def test_str_round_trip(self, text: str):
        assert str(BrickRef.parse(text)) == text


class TestBrickRefResolve:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bundled(self, tmp_path: Path):
        path = await BrickRef.parse("bundled:scaffolding").resolve(tmp_path)
        assert path == BUNDLED_BRICKS_DIR / "scaffolding"
        assert (path / "brick.yaml").is_file()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_relative_to_base_dir(self, make_brick, tmp_path: Path):
        make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)
        path = await BrickRef.parse("bricks/greeting").resolve(tmp_path / "cache", base_dir=tmp_path)
        assert path == tmp_path / "bricks" / "greeting"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(TemplateResolutionError, match="directory not found"):
            await BrickRef.parse("bundled:does_not_exist").resolve(tmp_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_git_clone(self, tmp_path: Path):
        async def fake_clone(cmd, **kwargs):
            dest = Path(cmd[-1])
            (dest / ".git").mkdir(parents=True)
            (dest / "bricks" / "greeting").mkdir(parents=True)
            return (0, "", "")

        mock_run = AsyncMock(side_effect=fake_clone)
        ref = BrickRef.parse("git:https://example.com/bricks.git#bricks/greeting@v1")
        with patch("scaffolding.scaffolder.brick.run_command", mock_run):
            path = await ref.resolve(tmp_path)
            again = await ref.resolve(tmp_path)

        assert path == again
        assert path.name == "greeting"
        assert mock_run.await_count == 1
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["git", "clone", "--depth", "1"]
        assert cmd[4:6] == ["--branch", "v1"]
        assert cmd[6] == "https://example.com/bricks.git"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_git_clone_failure(self, tmp_path: Path):
        mock_run = AsyncMock(return_value=(128, "", "repository not found"))
        ref = BrickRef.parse("git:https://example.com/missing.git")
        with patch("scaffolding.scaffolder.brick.run_command", mock_run):
            with pytest.raises(TemplateResolutionError, match="repository not found"):
                await ref.resolve(tmp_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_git_clone_uses_subprocess(self, tmp_path: Path, mock_subprocess):
        proc = mock_subprocess(stderr="fatal: could not read", returncode=128)
        ref = BrickRef.parse("git:https://example.com/private.git")
        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            with pytest.raises(TemplateResolutionError, match="could not read"):
                await ref.resolve(tmp_path)
        assert mock_exec.call_args[0][:2] == ("git", "clone")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_archive_download(self, tmp_path: Path):
        payload = _tar_gz(
            {
                "bricks-main/greeting/brick.yaml": "name: greeting\n",
                "bricks-main/greeting/__brick__/a.txt": "a\n",
            }
        )
        client = _mock_http_client(payload)
        ref = BrickRef.parse("https://example.com/bricks.tar.gz#greeting")
        with patch("httpx.AsyncClient", return_value=client):
            path = await ref.resolve(tmp_path)
            await ref.resolve(tmp_path)

        assert path.name == "greeting"
        assert path.parent.name == "bricks-main"
        assert (path / "__brick__" / "a.txt").read_text() == "a\n"
        client.get.assert_awaited_once_with("https://example.com/bricks.tar.gz")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_archive_download_failure(self, tmp_path: Path):
        client = _mock_http_client(error=httpx.ConnectError("connection refused"))
        ref = BrickRef.parse("https://example.com/bricks.tar.gz")
        with patch("httpx.AsyncClient", return_value=client):
            with pytest.raises(TemplateResolutionError, match="download failed"):
                await ref.resolve(tmp_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_archive_not_an_archive(self, tmp_path: Path):
        client = _mock_http_client(b"<html>not found</html>")
        ref = BrickRef.parse("https://example.com/bricks.tar.gz")
        with patch("httpx.AsyncClient", return_value=client):
            with pytest.raises(TemplateResolutionError, match="cannot extract archive"):
                await ref.resolve(tmp_path)


# ---------------------------------------------------------------------------
# Brick.load
# ---------------------------------------------------------------------------


class TestBrickLoad:
    @pytest.mark.unit
    def test_load(self, make_brick):
        brick = Brick.load(make_brick(GREETING_TEMPLATES, vars=GREETING_VARS), "path:greeting")
        assert brick.manifest.name == "greeting"
        assert brick.manifest.vars["punctuation"].default == "!"
        assert brick.reference == "path:greeting"

    @pytest.mark.unit
    def test_missing_manifest(self, tmp_path: Path):
        with pytest.raises(TemplateResolutionError, match="no brick.yaml"):
            Brick.load(tmp_path)

    @pytest.mark.unit
    def test_invalid_manifest(self, tmp_path: Path):
        (tmp_path / "brick.yaml").write_text("name: [unclosed\n", encoding="utf-8")
        with pytest.raises(TemplateResolutionError, match="invalid brick.yaml"):
            Brick.load(tmp_path)

    @pytest.mark.unit
    def test_manifest_without_name(self, tmp_path: Path):
        (tmp_path / "brick.yaml").write_text("description: nameless\n", encoding="utf-8")
        with pytest.raises(TemplateResolutionError, match="invalid brick.yaml"):
            Brick.load(tmp_path)

    @pytest.mark.unit
    def test_missing_template_dir(self, tmp_path: Path):
        (tmp_path / "brick.yaml").write_text("name: empty\n", encoding="utf-8")
        with pytest.raises(TemplateResolutionError, match="no __brick__ directory"):
            Brick.load(tmp_path)


# ---------------------------------------------------------------------------
# BrickGenerator
# ---------------------------------------------------------------------------


class TestBrickGenerator:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generate(self, make_brick, tmp_path: Path):
        generator = BrickGenerator(Brick.load(make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)))
        out = tmp_path / "out"
        files = await generator.generate(out, {"name": "world"})

        assert files.paths == [out / "notes.txt", out / "world" / "hello_world.txt"]
        assert [f.content for f in files] == ["static notes\n", "Hello World!\n"]
        assert (out / "world" / "hello_world.txt").read_text() == "Hello World!\n"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_required_var(self, make_brick, tmp_path: Path):
        generator = BrickGenerator(Brick.load(make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)))
        with pytest.raises(TemplateResolutionError, match="missing required vars: name"):
            await generator.generate(tmp_path / "out", {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_optional_var_without_default(self, make_brick, tmp_path: Path):
        brick = make_brick(
            {"a.txt": "{{ title | default('untitled') }}\n"},
            vars={"title": {"type": "string", "required": False}},
        )
        files = await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {})
        assert files.files[0].content == "untitled\n"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_undeclared_undefined_var(self, make_brick, tmp_path: Path):
        brick = make_brick({"a.txt": "{{ nowhere }}"})
        with pytest.raises(TemplateResolutionError, match="rendering failed"):
            await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pre_gen_hook_updates_vars(self, make_brick, tmp_path: Path):
        brick = make_brick(
            GREETING_TEMPLATES,
            vars=GREETING_VARS,
            hooks={
                "pre_gen": """
                    def run(context):
                        variables = dict(context.vars)
                        variables["name"] = variables["name"] + "_friend"
                        return variables
                """
            },
        )
        files = await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {"name": "old"})
        assert files.paths[-1].name == "hello_old_friend.txt"
        assert files.files[-1].content == "Hello OldFriend!\n"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pre_gen_hook_mutating_context(self, make_brick, tmp_path: Path):
        brick = make_brick(
            GREETING_TEMPLATES,
            vars=GREETING_VARS,
            hooks={
                "pre_gen": """
                    def run(context):
                        context.vars["punctuation"] = "?"
                """
            },
        )
        files = await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {"name": "you"})
        assert files.files[-1].content == "Hello You?\n"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_post_gen_changes_are_returned(self, make_brick, tmp_path: Path):
        brick = make_brick(
            GREETING_TEMPLATES,
            vars=GREETING_VARS,
            hooks={
                "post_gen": """
                    def run(context):
                        notes = context.working_directory / "notes.txt"
                        notes.write_text(notes.read_text().upper())
                """
            },
        )
        files = await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {"name": "x"})
        assert files.files[0].content == "STATIC NOTES\n"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_hook(self, make_brick, tmp_path: Path):
        brick = make_brick(
            GREETING_TEMPLATES,
            vars=GREETING_VARS,
            hooks={"pre_gen": "def run(context):\n    raise RuntimeError('boom')\n"},
        )
        with pytest.raises(TemplateResolutionError, match="pre_gen hook failed: boom"):
            await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {"name": "x"})
        assert not (tmp_path / "out" / "notes.txt").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hook_without_run(self, make_brick, tmp_path: Path):
        brick = make_brick(GREETING_TEMPLATES, vars=GREETING_VARS, hooks={"post_gen": "X = 1\n"})
        with pytest.raises(TemplateResolutionError, match="post_gen hook has no run"):
            await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {"name": "x"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pre_gen_must_return_mapping(self, make_brick, tmp_path: Path):
        brick = make_brick(
            GREETING_TEMPLATES,
            vars=GREETING_VARS,
            hooks={"pre_gen": "def run(context):\n    return ['not', 'a', 'dict']\n"},
        )
        with pytest.raises(TemplateResolutionError, match="must return a dict"):
            await BrickGenerator(Brick.load(brick)).generate(tmp_path / "out", {"name": "x"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            (ConflictPolicy.OVERWRITE, "static notes\n"),
            (ConflictPolicy.SKIP, "existing\n"),
            (ConflictPolicy.APPEND, "existing\nstatic notes\n"),
        ],
    )
    async def test_conflict_policy(self, make_brick, tmp_path: Path, policy, expected):
        out = tmp_path / "out"
        out.mkdir()
        (out / "notes.txt").write_text("existing\n", encoding="utf-8")
        generator = BrickGenerator(Brick.load(make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)))
        files = await generator.generate(out, {"name": "x"}, policy)
        assert files.files[0].content == expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deterministic_output(self, make_brick, tmp_path: Path):
        generator = BrickGenerator(Brick.load(make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)))
        first = await generator.generate(tmp_path / "a", {"name": "same"})
        second = await generator.generate(tmp_path / "b", {"name": "same"})
        assert [f.content for f in first] == [f.content for f in second]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_waits_for_write_in_flight(self, make_brick, tmp_path: Path):
        started = threading.Event()
        release = threading.Event()
        finished: list[Path] = []

        def slow_write(path, content, policy):
            started.set()
            release.wait(5)
            finished.append(path)

        generator = BrickGenerator(Brick.load(make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)))
        with patch("scaffolding.scaffolder.brick._write_file", side_effect=slow_write):
            task = asyncio.create_task(generator.generate(tmp_path / "out", {"name": "x"}))
            await asyncio.to_thread(started.wait, 5)
            task.cancel()
            await asyncio.sleep(0.05)
            assert not task.done()

            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task
        assert len(finished) == 1


# ---------------------------------------------------------------------------
# GeneratedFileSet & BrickEngine
# ---------------------------------------------------------------------------


class TestGeneratedFileSet:
    @pytest.mark.unit
    def test_add_and_pairs(self):
        a = GeneratedFileSet([GeneratedFile(Path("a.dart"), "a")])
        b = GeneratedFileSet([GeneratedFile(Path("b.dart"), "b")])
        combined = a + b
        assert len(combined) == 2
        assert combined.as_pairs() == [(Path("a.dart"), "a"), (Path("b.dart"), "b")]
        assert len(a) == 1


class TestBrickEngine:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_is_cached(self, make_brick, tmp_path: Path):
        make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)
        engine = BrickEngine(cache_dir=tmp_path / "cache", base_dir=tmp_path)
        first = await engine.load("path:bricks/greeting")
        second = await engine.load("path:bricks/greeting")
        assert first is second

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generate(self, make_brick, tmp_path: Path):
        make_brick(GREETING_TEMPLATES, vars=GREETING_VARS)
        engine = BrickEngine(cache_dir=tmp_path / "cache", base_dir=tmp_path)
        files = await engine.generate("bricks/greeting", {"name": "engine"}, tmp_path / "out")
        assert [p.name for p in files.paths] == ["notes.txt", "hello_engine.txt"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference(self, tmp_path: Path):
        engine = BrickEngine(cache_dir=tmp_path / "cache")
        with pytest.raises(TemplateResolutionError):
            await engine.generate("bundled:nope", {}, tmp_path / "out")
