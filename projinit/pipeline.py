"""projinit pipeline orchestrator and command line.

Drives one scaffold run end to end:

1. locate the template (current directory, then ``~/.pi_templates``) or
   fetch it from a remote repository;
2. parse its manifest and collect the placeholders it references;
3. resolve the context from ``~/.pi.toml``, ``template.toml`` and answers;
4. build the project through the staging/commit builder.

Usage::

    pi new python my-app
    pi init python --name my-app --force
    pi git vmchale/haskell-template my-app
    pi list
"""

from __future__ import annotations

import asyncio
import sys
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.panel import Panel

from projinit.config import Settings
from projinit.scaffolder.builder import BuildResult, ProjectBuilder, include_sources
from projinit.scaffolder.context import ConfigStore, Prompter
from projinit.scaffolder.errors import ScaffoldError
from projinit.scaffolder.manifest import TemplateManifest
from projinit.scaffolder.manifest import parse as parse_manifest
from projinit.scaffolder.source import TemplateRoot, TemplateSource
from projinit.scaffolder.templates import TemplateRenderer
from projinit.utils import (
    console,
    format_duration,
    print_error,
    print_success,
    print_summary_table,
)

# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class ScaffoldPipeline:
    """Runs the locate -> resolve -> build sequence for one invocation.

    Attributes:
        settings: Where global config and templates live.
        answers: Pre-supplied answers (``--set KEY=VALUE``).
        interactive: Whether missing declared keys may be prompted for.
        overwrite: Allow building into a non-empty directory.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        interactive: bool = True,
        prompter: Prompter | None = None,
        overwrite: bool = False,
        answers: Mapping[str, Any] | None = None,
        cwd: str | Path | None = None,
        now: datetime | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.interactive = interactive
        self.prompter = prompter
        self.overwrite = overwrite
        self.answers = dict(answers or {})
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.now = now
        self.source = TemplateSource(self.settings)

    # -- Commands ----------------------------------------------------------

    async def run_new(self, template: str, name: str) -> BuildResult:
        """Build *template* into ``<cwd>/<name>``."""
        root = self.source.locate(template, self.cwd)
        return await self.scaffold(root, name, self.cwd / name)

    async def run_init(self, template: str, name: str | None = None) -> BuildResult:
        """Build *template* into the current directory itself."""
        root = self.source.locate(template, self.cwd)
        return await self.scaffold(root, name or self.cwd.resolve().name, self.cwd)

    async def run_git(self, remote: str, name: str, *, method: str = "git") -> BuildResult:
        """Fetch a remote template, build it into ``<cwd>/<name>``, clean up."""
        console.print(f"  Fetching [bold]{remote}[/bold] ({method})...")
        root = await self.source.fetch(remote, method=method)
        try:
            return await self.scaffold(root, name, self.cwd / name)
        finally:
            root.cleanup()

    # -- Core --------------------------------------------------------------

    async def scaffold(
        self,
        template_root: TemplateRoot | str | Path,
        name: str,
        destination: str | Path,
    ) -> BuildResult:
        """Parse, resolve and build.

        Raises:
            ScaffoldError: Any fatal configuration, manifest, render or
                build error.
        """
        root = template_root if isinstance(template_root, TemplateRoot) else TemplateRoot(Path(template_root))
        console.print(
            Panel(f"[bold]Scaffolding {name}[/bold] from {root.path} ({root.origin})", style="cyan")
        )

        manifest = parse_manifest(root.path)
        renderer = TemplateRenderer(root.path)
        referenced = renderer.referenced_keys(_template_sources(root.path, manifest))

        store = ConfigStore(
            name,
            prompter=self.prompter,
            interactive=self.interactive,
            now=self.now,
        )
        context = store.resolve(
            self.settings.global_config_path,
            root.config_path,
            self.answers,
            referenced_keys=referenced,
            include_keys=_include_keys(renderer, manifest),
        )

        builder = ProjectBuilder(
            renderer,
            overwrite=self.overwrite,
            vcs_timeout=self.settings.vcs_timeout,
        )
        return await builder.build(root.path, manifest, context, destination)


def _template_sources(root: Path, manifest: TemplateManifest) -> dict[str, str]:
    """Collect every manifest path and rendered body for key discovery.

    Unreadable bodies are skipped here; the builder reports them while
    planning.
    """
    sources = {f"path:{path}": path for path in manifest.all_paths()}
    for rel in manifest.rendered_sources():
        try:
            sources[rel] = (root / rel).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
    return sources


def _include_keys(
    renderer: TemplateRenderer, manifest: TemplateManifest
) -> Callable[[Mapping[str, Any]], set[str]]:
    """Key discovery for the bundled files the template does not provide itself."""
    produced = set(manifest.all_paths())

    def _keys(layer: Mapping[str, Any]) -> set[str]:
        sources = {
            destination: text
            for destination, text in include_sources(layer).items()
            if destination not in produced
        }
        return renderer.referenced_keys(sources)

    return _keys


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _parse_answers(pairs: list[str]) -> dict[str, Any]:
    answers: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected KEY=VALUE, got '{pair}'")
        lowered = value.strip().lower()
        answers[key.strip()] = {"true": True, "false": False}.get(lowered, value)
    return answers


def _build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="pi",
        description="Quickly initialize projects from a template.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  pi new python my-app\n"
            "  pi init python --name my-app --force\n"
            "  pi git vmchale/haskell-template my-app --set description='A parser'\n"
        ),
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--set",
        dest="answers",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Provide a value up front (repeatable); overrides every config file",
    )
    common.add_argument(
        "--no-input",
        action="store_true",
        help="Never prompt; keys without a value render empty",
    )
    common.add_argument(
        "--config",
        default=None,
        help="Global configuration file (default: ~/.pi.toml)",
    )
    common.add_argument(
        "--force", "-f",
        action="store_true",
        help="Initialize project even if the directory already exists",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", aliases=["n"], parents=[common], help="Use a local or global template")
    new.add_argument("template", help="Template directory in the current directory or ~/.pi_templates")
    new.add_argument("name", help="Project name, also the project directory")

    init = sub.add_parser("init", aliases=["i"], parents=[common], help="Materialize a template into the current directory")
    init.add_argument("template", help="Template directory in the current directory or ~/.pi_templates")
    init.add_argument("--name", default=None, help="Project name (default: current directory name)")

    git = sub.add_parser("git", aliases=["g"], parents=[common], help="Fetch a template from a remote repository")
    git.add_argument("remote", metavar="USER/REPO", help="Repository holding the template (USER/REPO[@REF] or URL)")
    git.add_argument("name", help="Project name, also the project directory")
    git.add_argument(
        "--archive",
        action="store_true",
        help="Download a tarball over HTTP instead of cloning with git",
    )

    sub.add_parser("list", aliases=["l"], help="List templates installed in ~/.pi_templates")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for ``pi`` / ``python -m projinit.pipeline``."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
    except ValueError as exc:
        print_error(f"invalid environment: {exc}")
        return 1
    if getattr(args, "config", None):
        settings.config_path = Path(args.config).expanduser()

    command = {"n": "new", "i": "init", "g": "git", "l": "list"}.get(args.command, args.command)

    if command == "list":
        templates = TemplateSource(settings).list_templates()
        if not templates:
            console.print(f"No templates found in {settings.global_templates_path}")
        for name in templates:
            console.print(f"  {name}")
        return 0

    try:
        answers = _parse_answers(args.answers)
    except ValueError as exc:
        print_error(str(exc))
        return 1

    pipeline = ScaffoldPipeline(
        settings,
        interactive=not args.no_input,
        overwrite=args.force,
        answers=answers,
    )

    started = time.monotonic()
    try:
        if command == "new":
            result = asyncio.run(pipeline.run_new(args.template, args.name))
        elif command == "init":
            result = asyncio.run(pipeline.run_init(args.template, args.name))
        else:
            method = "archive" if args.archive else "git"
            result = asyncio.run(pipeline.run_git(args.remote, args.name, method=method))
    except ScaffoldError as exc:
        print_error(str(exc))
        return 1
    except KeyboardInterrupt:
        print_error("interrupted")
        return 1

    print_summary_table(
        {
            "Destination": str(result.destination),
            "Entries written": str(len(result.written)),
            "Version control": "initialized" if result.vcs_initialized else "skipped",
            "Elapsed": format_duration(time.monotonic() - started),
        },
        title="projinit",
    )
    print_success(f"Finished initializing project in {result.destination}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
