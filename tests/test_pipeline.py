"""Tests for the scaffold pipeline orchestrator and the ``pi`` command line.

The pipeline is driven against real template directories under ``tmp_path``
with an isolated home directory.  Remote fetches are mocked.
"""

from __future__ import annotations

import os
import stat
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from projinit.config import Settings
from projinit.pipeline import ScaffoldPipeline, _parse_answers, main
from projinit.scaffolder.builder import BuildState
from projinit.scaffolder.errors import AlreadyExistsError, RenderSyntaxError, TemplateNotFoundError
from projinit.scaffolder.source import TemplateRoot, TemplateSource

TEMPLATE_TOML = """
[files]
directories = ["src"]
files = ["data.bin"]
templates = ["README.md", "src/{{ project }}.py"]
scripts = ["bootstrap.sh"]

[config]
license = "MIT"

[prompts]
description = "Describe the project"
unused = "Never asked"
"""

TEMPLATE_FILES: dict[str, str | bytes] = {
    "README.md": "# {{ Project }}\n\n{{ description }}\n\nby {{ author.name }} <{{ email }}> ({{ year }})\n",
    "src/{{ project }}.py": "VERSION = '{{ version }}'\n",
    "bootstrap.sh": "#!/bin/sh\necho {{ project }}\n",
    "data.bin": b"\x00\x01\x02",
}

GLOBAL_TOML = """
[author]
name = "Ada Lovelace"
email = "ada@example.com"
github_username = "ada"
"""


@pytest.fixture
def global_template(settings: Settings, make_template: Callable[..., Path]) -> Path:
    return make_template(
        TEMPLATE_FILES, toml=TEMPLATE_TOML, parent=settings.global_templates_path, name="python"
    )


@pytest.fixture
def pipeline_factory(
    settings: Settings, workdir: Path, fixed_now: datetime
) -> Callable[..., ScaffoldPipeline]:
    def _make(**kwargs) -> ScaffoldPipeline:
        kwargs.setdefault("interactive", False)
        return ScaffoldPipeline(settings, cwd=workdir, now=fixed_now, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# ScaffoldPipeline
# ---------------------------------------------------------------------------


class TestRunNew:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_builds_from_global_template(
        self,
        global_template: Path,
        write_global_config: Callable[[str], Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        workdir: Path,
    ):
        write_global_config(GLOBAL_TOML)
        pipeline = pipeline_factory(answers={"description": "A small tool."})

        result = await pipeline.run_new("python", "my-app")

        dest = workdir / "my-app"
        assert result.destination == dest
        assert result.state is BuildState.COMMITTED
        assert result.written == [
            "src",
            "data.bin",
            "README.md",
            "src/my-app.py",
            "bootstrap.sh",
            "LICENSE",
        ]
        assert (dest / "README.md").read_text() == (
            "# My-app\n\nA small tool.\n\nby Ada Lovelace <ada@example.com> (2024)\n"
        )
        assert (dest / "src" / "my-app.py").read_text() == "VERSION = '0.1.0'\n"
        assert (dest / "data.bin").read_bytes() == b"\x00\x01\x02"
        assert stat.S_IMODE((dest / "bootstrap.sh").stat().st_mode) == 0o755
        assert "Copyright (c) 2024 Ada Lovelace" in (dest / "LICENSE").read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_template_shadows_global(
        self,
        global_template: Path,
        make_template: Callable[..., Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        workdir: Path,
    ):
        make_template({"LOCAL.md": "local {{ project }}"}, parent=workdir, name="python")

        result = await pipeline_factory().run_new("python", "demo")

        assert result.written == ["LOCAL.md"]
        assert (workdir / "demo" / "LOCAL.md").read_text() == "local demo"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_template(self, pipeline_factory: Callable[..., ScaffoldPipeline]):
        with pytest.raises(TemplateNotFoundError):
            await pipeline_factory().run_new("cobol", "demo")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_prompts_only_for_referenced_keys(
        self,
        global_template: Path,
        write_global_config: Callable[[str], Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        make_prompter: Callable,
        workdir: Path,
    ):
        write_global_config(GLOBAL_TOML)
        prompter = make_prompter({"Describe the project": "Prompted."})
        pipeline = pipeline_factory(interactive=True, prompter=prompter)

        await pipeline.run_new("python", "demo")

        assert prompter.questions == ["Describe the project"]
        assert "Prompted." in (workdir / "demo" / "README.md").read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bundled_license_asks_for_author(
        self,
        make_template: Callable[..., Path],
        settings: Settings,
        write_global_config: Callable[[str], Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        make_prompter: Callable,
        workdir: Path,
    ):
        write_global_config('license = "MIT"\n')
        make_template({"main.txt": "{{ project }}"}, parent=settings.global_templates_path, name="plain")
        prompter = make_prompter({"Enter your name": "Grace Hopper"})

        await pipeline_factory(interactive=True, prompter=prompter).run_new("plain", "demo")

        assert prompter.questions == ["Enter your name"]
        assert "Copyright (c) 2024 Grace Hopper" in (workdir / "demo" / "LICENSE").read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_template_license_file_needs_no_author(
        self,
        make_template: Callable[..., Path],
        settings: Settings,
        write_global_config: Callable[[str], Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        make_prompter: Callable,
        workdir: Path,
    ):
        write_global_config('license = "MIT"\n')
        make_template(
            {"LICENSE": "Public domain.", "main.txt": "{{ project }}"},
            parent=settings.global_templates_path,
            name="plain",
        )
        prompter = make_prompter()

        await pipeline_factory(interactive=True, prompter=prompter).run_new("plain", "demo")

        assert prompter.questions == []
        assert (workdir / "demo" / "LICENSE").read_text() == "Public domain."


class TestRunInit:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_builds_into_cwd_named_after_it(
        self,
        make_template: Callable[..., Path],
        settings: Settings,
        pipeline_factory: Callable[..., ScaffoldPipeline],
        workdir: Path,
    ):
        make_template({"NAME": "{{ project }}"}, parent=settings.global_templates_path, name="bare")

        result = await pipeline_factory().run_init("bare")

        assert result.destination == workdir.absolute()
        assert (workdir / "NAME").read_text() == "work"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_current_directory_stays_valid(
        self,
        make_template: Callable[..., Path],
        settings: Settings,
        workdir: Path,
        fixed_now: datetime,
        monkeypatch: pytest.MonkeyPatch,
    ):
        make_template({"NAME": "{{ project }}"}, parent=settings.global_templates_path, name="bare")
        monkeypatch.chdir(workdir)

        await ScaffoldPipeline(settings, interactive=False, now=fixed_now).run_init("bare")

        assert os.listdir(".") == ["NAME"]
        assert Path("NAME").read_text() == "work"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_empty_cwd_needs_force(
        self,
        make_template: Callable[..., Path],
        settings: Settings,
        pipeline_factory: Callable[..., ScaffoldPipeline],
        workdir: Path,
    ):
        make_template({"NAME": "{{ project }}"}, parent=settings.global_templates_path, name="bare")
        (workdir / "existing.txt").write_text("keep")

        with pytest.raises(AlreadyExistsError):
            await pipeline_factory().run_init("bare", "named")

        await pipeline_factory(overwrite=True).run_init("bare", "named")
        assert (workdir / "NAME").read_text() == "named"
        assert (workdir / "existing.txt").read_text() == "keep"


class TestRunGit:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetched_template_is_cleaned_up(
        self,
        tmp_path: Path,
        make_template: Callable[..., Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        workdir: Path,
    ):
        fetched = tmp_path / "fetched"
        path = make_template({"README.md": "# {{ project }}"}, parent=fetched, name="template")
        remote_root = TemplateRoot(path=path, origin="remote", temp_dir=fetched)

        with patch.object(
            TemplateSource, "fetch", new_callable=AsyncMock, return_value=remote_root
        ) as fetch:
            await pipeline_factory().run_git("acme/tpl", "demo", method="archive")

        fetch.assert_awaited_once_with("acme/tpl", method="archive")
        assert (workdir / "demo" / "README.md").read_text() == "# demo"
        assert not fetched.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_after_failure(
        self,
        tmp_path: Path,
        make_template: Callable[..., Path],
        pipeline_factory: Callable[..., ScaffoldPipeline],
        workdir: Path,
    ):
        fetched = tmp_path / "fetched"
        path = make_template({"README.md": "{% if %}"}, parent=fetched, name="template")
        remote_root = TemplateRoot(path=path, origin="remote", temp_dir=fetched)

        with patch.object(TemplateSource, "fetch", new_callable=AsyncMock, return_value=remote_root):
            with pytest.raises(RenderSyntaxError):
                await pipeline_factory().run_git("acme/tpl", "demo")

        assert not fetched.exists()
        assert not (workdir / "demo").exists()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestParseAnswers:
    @pytest.mark.unit
    def test_pairs(self):
        assert _parse_answers(["a=1", "b = x=y ", "flag=true", "off=False"]) == {
            "a": "1",
            "b": " x=y ",
            "flag": True,
            "off": False,
        }

    @pytest.mark.unit
    @pytest.mark.parametrize("pair", ["novalue", "=x"])
    def test_invalid(self, pair: str):
        with pytest.raises(ValueError):
            _parse_answers([pair])


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, home_dir: Path, workdir: Path) -> Path:
    """Point the CLI at the temporary home and run it from ``workdir``."""
    for var in ("PROJINIT_CONFIG", "PROJINIT_TEMPLATES", "PROJINIT_GITHUB_URL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("PROJINIT_HOME", str(home_dir))
    monkeypatch.chdir(workdir)
    return workdir


class TestMain:
    @pytest.mark.unit
    def test_new(self, cli_env: Path, global_template: Path):
        code = main(["new", "python", "my-app", "--no-input", "--set", "description=From CLI"])

        assert code == 0
        assert "From CLI" in (cli_env / "my-app" / "README.md").read_text()

    @pytest.mark.unit
    def test_alias_and_config_override(
        self, cli_env: Path, global_template: Path, tmp_path: Path
    ):
        config = tmp_path / "other.toml"
        config.write_text('[author]\nname = "Grace Hopper"\n', encoding="utf-8")

        code = main(["n", "python", "demo", "--no-input", "--config", str(config)])

        assert code == 0
        assert "by Grace Hopper" in (cli_env / "demo" / "README.md").read_text()

    @pytest.mark.unit
    def test_existing_destination_fails(self, cli_env: Path, global_template: Path, capsys):
        (cli_env / "demo").mkdir()
        (cli_env / "demo" / "file.txt").write_text("x")

        code = main(["new", "python", "demo", "--no-input"])

        assert code == 1
        assert "--force" in capsys.readouterr().err
        assert os.listdir(cli_env / "demo") == ["file.txt"]

    @pytest.mark.unit
    def test_force_overwrites(self, cli_env: Path, global_template: Path):
        (cli_env / "demo").mkdir()
        (cli_env / "demo" / "file.txt").write_text("x")

        assert main(["new", "python", "demo", "--no-input", "--force"]) == 0
        assert (cli_env / "demo" / "README.md").exists()
        assert (cli_env / "demo" / "file.txt").exists()

    @pytest.mark.unit
    def test_missing_template(self, cli_env: Path, capsys):
        assert main(["new", "nope", "demo", "--no-input"]) == 1
        assert "template not found" in capsys.readouterr().err

    @pytest.mark.unit
    def test_bad_answer(self, cli_env: Path, capsys):
        assert main(["new", "python", "demo", "--set", "oops"]) == 1
        assert "KEY=VALUE" in capsys.readouterr().err

    @pytest.mark.unit
    def test_bad_timeout_variable(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch, capsys):
        monkeypatch.setenv("PROJINIT_VCS_TIMEOUT", "forever")

        assert main(["list"]) == 1
        err = capsys.readouterr().err
        assert "invalid environment" in err
        assert "vcs_timeout" in err

    @pytest.mark.unit
    def test_init(self, cli_env: Path, global_template: Path):
        assert main(["init", "python", "--name", "inited", "--no-input"]) == 0
        assert (cli_env / "src" / "inited.py").exists()

    @pytest.mark.unit
    def test_list(self, cli_env: Path, settings: Settings, global_template: Path, capsys):
        (settings.global_templates_path / "rust").mkdir()

        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert out.index("python") < out.index("rust")

    @pytest.mark.unit
    def test_list_empty(self, cli_env: Path, capsys):
        assert main(["l"]) == 0
        assert "No templates found" in capsys.readouterr().out

    @pytest.mark.unit
    def test_git_archive_flag(self, cli_env: Path):
        with patch.object(
            TemplateSource,
            "fetch",
            new_callable=AsyncMock,
            side_effect=TemplateNotFoundError("unreachable"),
        ) as fetch:
            assert main(["g", "acme/tpl", "demo", "--archive", "--no-input"]) == 1
        fetch.assert_awaited_once_with("acme/tpl", method="archive")

    @pytest.mark.unit
    def test_requires_subcommand(self):
        with pytest.raises(SystemExit):
            main([])
