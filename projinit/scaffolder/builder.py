"""Project materialisation with staging and rollback.

The builder runs in three phases:

* **planning** renders every destination path, validates it and compiles
  every template body.  Nothing touches the filesystem, so a bad manifest,
  an unsafe path or a syntax error fails with zero writes.
* **writing** executes the jobs inside a staging directory created next to
  the destination.  Any failure removes the staging directory and the
  parent directories created for it.
* **commit** moves the staged tree into place: a single rename for a missing
  destination, or a journaled merge (with backups of replaced entries) into
  any existing directory.

Version control is initialised after the commit and is best-effort.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from pathlib import Path, PurePosixPath
from typing import Any

from projinit.scaffolder.context import Context, License, VersionControl
from projinit.scaffolder.errors import (
    AlreadyExistsError,
    BuildIOError,
    ManifestConflictError,
    ManifestError,
    RenderError,
    ScaffoldError,
    UnsafePathError,
    VersionControlError,
)
from projinit.scaffolder.manifest import TemplateManifest
from projinit.scaffolder.templates import TemplateRenderer
from projinit.scaffolder.vcs import init_repository
from projinit.utils import print_warning

SCRIPT_MODE = 0o755
README_INCLUDE = "README.md.j2"


class BuildState(str, Enum):
    """Lifecycle of a single build."""

    PLANNING = "planning"
    WRITING = "writing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class JobKind(str, Enum):
    DIRECTORY = "directory"
    FILE = "file"
    TEMPLATE = "template"
    SCRIPT = "script"
    INCLUDE = "include"


@dataclass
class RenderJob:
    """One directory or file to materialise.

    ``destination`` is the raw manifest path (it may hold placeholders);
    ``target`` is the rendered, validated project-relative path filled in
    during planning.  ``content`` holds the template text of bundled
    includes.
    """

    kind: JobKind
    destination: str
    source: str | None = None
    content: str | None = None
    target: PurePosixPath | None = None


@dataclass
class BuildResult:
    """Outcome of :meth:`ProjectBuilder.build`."""

    destination: Path
    state: BuildState
    written: list[str] = field(default_factory=list)
    vcs_initialized: bool = False
    warnings: list[str] = field(default_factory=list)


def load_include(*parts: str) -> str:
    """Read a text file bundled under ``projinit/scaffolder/includes``."""
    return resources.files("projinit.scaffolder").joinpath("includes", *parts).read_text(
        encoding="utf-8"
    )


def include_sources(context: Mapping[str, Any]) -> dict[str, str]:
    """Return ``{destination: template_text}`` for the includes *context* asks for.

    ``LICENSE`` when the license has a bundled text, ``README.md`` when
    ``with_readme`` is set.
    """
    sources: dict[str, str] = {}
    license_ = License.parse(context.get("license"))
    if license_ is not None:
        sources["LICENSE"] = load_include("licenses", license_.value)
    if context.get("with_readme"):
        sources["README.md"] = load_include(README_INCLUDE)
    return sources


# ---------------------------------------------------------------------------
# ProjectBuilder
# ---------------------------------------------------------------------------


class ProjectBuilder:
    """Materialises a template manifest into a project directory.

    Args:
        renderer: Renderer to use.  Defaults to a ``TemplateRenderer``
            rooted at the template being built.
        overwrite: Allow building into an existing, non-empty directory.
        version_control: VCS to initialise after commit.  Defaults to the
            context's ``version_control`` key.
        vcs_timeout: Seconds allowed for each VCS command.
    """

    def __init__(
        self,
        renderer: TemplateRenderer | None = None,
        *,
        overwrite: bool = False,
        version_control: VersionControl | str | None = None,
        vcs_timeout: float = 60,
    ) -> None:
        self.renderer = renderer
        self.overwrite = overwrite
        self.version_control = version_control
        self.vcs_timeout = vcs_timeout
        self.state = BuildState.PLANNING

    # -- Public API --------------------------------------------------------

    async def build(
        self,
        template_root: str | Path,
        manifest: TemplateManifest,
        context: Context,
        destination: str | Path,
    ) -> BuildResult:
        """Plan, write and commit the project, then initialise VCS.

        Returns:
            A ``BuildResult`` with the written paths in creation order.

        Raises:
            AlreadyExistsError: Destination exists and is not empty (and
                ``overwrite`` is off).  Raised before any write.
            UnsafePathError: A rendered path leaves the project root.
            ManifestError: Missing template sources or conflicting targets.
            RenderError: A template failed to compile or render.
            BuildIOError: A filesystem operation failed while writing.
        """
        root = Path(template_root)
        dest = Path(destination).absolute()
        renderer = self.renderer or TemplateRenderer(root)
        context = dict(context)

        self.state = BuildState.PLANNING
        jobs = self.plan(root, manifest, context, dest, renderer)

        self.state = BuildState.WRITING
        result = BuildResult(destination=dest, state=self.state)
        await self._write(jobs, root, dest, context, renderer, result)
        self.state = result.state = BuildState.COMMITTED

        await self._init_version_control(dest, context, result)
        return result

    def plan(
        self,
        root: Path,
        manifest: TemplateManifest,
        context: Context,
        dest: Path,
        renderer: TemplateRenderer,
    ) -> list[RenderJob]:
        """Build and validate every job without writing anything.

        Adds the ``files`` key (rendered plain-file paths) to *context*.
        """
        self._check_destination(dest)

        jobs = [RenderJob(JobKind.DIRECTORY, d) for d in manifest.directories]
        jobs += [RenderJob(JobKind.FILE, f, source=f) for f in manifest.files]
        jobs += [RenderJob(JobKind.TEMPLATE, t, source=t) for t in manifest.templates]
        jobs += [RenderJob(JobKind.SCRIPT, s, source=s) for s in manifest.scripts]

        claimed: dict[PurePosixPath, str] = {}
        for job in jobs:
            job.target = _safe_target(renderer.render_path(job.destination, context), job.destination)
            if job.target in claimed:
                raise ManifestConflictError(
                    f"'{job.destination}' and '{claimed[job.target]}' both render to this path",
                    job.target.as_posix(),
                )
            claimed[job.target] = job.destination
            self._check_source(root, job, renderer)

        for job in self._include_jobs(context):
            if job.target in claimed:
                continue
            renderer.check_syntax(job.content or "", job.destination)
            claimed[job.target] = job.destination
            jobs.append(job)

        context["files"] = [job.target.as_posix() for job in jobs if job.kind is JobKind.FILE]
        return jobs

    # -- Planning helpers --------------------------------------------------

    def _check_destination(self, dest: Path) -> None:
        if not dest.exists():
            return
        if not dest.is_dir():
            raise AlreadyExistsError("destination exists and is not a directory", dest)
        if not self.overwrite and any(dest.iterdir()):
            raise AlreadyExistsError(
                "destination already exists and is not empty, rerun with --force to overwrite",
                dest,
            )

    @staticmethod
    def _check_source(root: Path, job: RenderJob, renderer: TemplateRenderer) -> None:
        if job.source is None:
            return
        source_path = root / job.source
        if job.kind is JobKind.FILE:
            if source_path.exists() and not source_path.is_file():
                raise ManifestError("listed under 'files' but is not a file", job.source)
            return
        if job.kind in (JobKind.TEMPLATE, JobKind.SCRIPT):
            if not source_path.is_file():
                raise ManifestError("template file not found", source_path)
            try:
                text = source_path.read_text(encoding="utf-8")
            except UnicodeDecodeError as exc:
                raise ManifestError(
                    "not valid UTF-8 text, list it under 'files' to copy it verbatim",
                    job.source,
                ) from exc
            except OSError as exc:
                raise ManifestError(f"could not read template: {exc}", job.source) from exc
            renderer.check_syntax(text, job.source)

    @staticmethod
    def _include_jobs(context: Context) -> list[RenderJob]:
        return [
            RenderJob(JobKind.INCLUDE, destination, content=text, target=PurePosixPath(destination))
            for destination, text in include_sources(context).items()
        ]

    # -- Writing -----------------------------------------------------------

    async def _write(
        self,
        jobs: list[RenderJob],
        root: Path,
        dest: Path,
        context: Context,
        renderer: TemplateRenderer,
        result: BuildResult,
    ) -> None:
        created = _missing_ancestors(dest.parent)
        try:
            staging = await asyncio.to_thread(_make_staging, dest)
        except OSError as exc:
            _remove_empty_dirs(created)
            raise BuildIOError(f"could not create staging directory: {exc}", dest.parent) from exc

        current: RenderJob | None = None
        try:
            for current in jobs:
                await asyncio.to_thread(self._execute, current, root, staging, context, renderer)
                result.written.append(current.target.as_posix())
            current = None
            await asyncio.to_thread(self._commit, staging, dest)
        except BaseException as exc:
            self.state = result.state = BuildState.ROLLED_BACK
            shutil.rmtree(staging, ignore_errors=True)
            _remove_empty_dirs(created)
            result.written.clear()
            if isinstance(exc, OSError):
                failing = current.target.as_posix() if current and current.target else dest
                raise BuildIOError(exc.strerror or str(exc), failing) from exc
            raise

    @staticmethod
    def _execute(
        job: RenderJob,
        root: Path,
        staging: Path,
        context: Context,
        renderer: TemplateRenderer,
    ) -> None:
        out = staging.joinpath(*job.target.parts)
        if job.kind is JobKind.DIRECTORY:
            out.mkdir(parents=True, exist_ok=True)
            return

        out.parent.mkdir(parents=True, exist_ok=True)
        if job.kind is JobKind.FILE:
            source_path = root / job.source
            if source_path.is_file():
                shutil.copy2(source_path, out)
            else:
                out.touch()
            return

        if job.kind is JobKind.INCLUDE:
            text = renderer.render_text(job.content or "", context, name=job.destination)
            out.write_text(text, encoding="utf-8", newline="")
            return

        text = _render_source(renderer, job.source, context)
        out.write_text(text, encoding="utf-8", newline="")
        shutil.copymode(root / job.source, out)
        if job.kind is JobKind.SCRIPT:
            out.chmod(SCRIPT_MODE)

    # -- Commit ------------------------------------------------------------

    def _commit(self, staging: Path, dest: Path) -> None:
        # Existing directories are filled in place, never replaced.
        if not dest.exists():
            os.replace(staging, dest)
            return
        _merge_into(staging, dest)
        shutil.rmtree(staging, ignore_errors=True)

    # -- Version control ---------------------------------------------------

    async def _init_version_control(self, dest: Path, context: Context, result: BuildResult) -> None:
        kind = self.version_control or context.get("version_control")
        if not kind:
            return
        try:
            await init_repository(kind, dest, timeout=self.vcs_timeout)
        except VersionControlError as exc:
            message = f"version control not initialized: {exc}"
            print_warning(message)
            result.warnings.append(message)
            return
        result.vcs_initialized = True


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _safe_target(rendered: str, raw: str) -> PurePosixPath:
    """Validate a rendered destination path and return it as a relative path."""
    if rendered.startswith("/") or PurePosixPath(rendered).is_absolute():
        raise UnsafePathError(f"'{raw}' renders to an absolute path '{rendered}'", raw)
    segments = rendered.split("/")
    if any(segment == ".." for segment in segments):
        raise UnsafePathError(f"'{raw}' renders to '{rendered}', outside the project root", raw)
    if any(not segment.strip() for segment in segments):
        raise UnsafePathError(f"'{raw}' renders to '{rendered}', which has an empty segment", raw)
    target = PurePosixPath(rendered)
    if target == PurePosixPath("."):
        raise UnsafePathError(f"'{raw}' renders to the project root itself", raw)
    return target


def _render_source(renderer: TemplateRenderer, source: str, context: Context) -> str:
    try:
        return renderer.render_file(source, context)
    except ScaffoldError:
        raise
    except (TypeError, ValueError, ArithmeticError, LookupError) as exc:
        raise RenderError(str(exc), source) from exc


def _make_staging(dest: Path) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{dest.name}.", suffix=".staging", dir=dest.parent))
    # mkdtemp creates 0700; give the project root the usual umask-derived mode.
    umask = os.umask(0)
    os.umask(umask)
    staging.chmod(0o777 & ~umask)
    return staging


def _missing_ancestors(path: Path) -> list[Path]:
    """Return the ancestors of *path* (itself included) that do not exist yet, outermost first."""
    missing: list[Path] = []
    while not path.exists() and path != path.parent:
        missing.append(path)
        path = path.parent
    return missing[::-1]


def _remove_empty_dirs(dirs: list[Path]) -> None:
    for path in reversed(dirs):
        try:
            path.rmdir()
        except OSError:
            return


def _merge_into(staging: Path, dest: Path) -> None:
    """Move every staged entry into *dest*, undoing everything on failure.

    Replaced entries are parked in a backup directory until the merge
    completes, then discarded.
    """
    backup_root = Path(tempfile.mkdtemp(prefix=f".{dest.name}.", suffix=".backup", dir=dest.parent))
    journal: list[tuple[str, Path, Path | None]] = []

    def _park(target: Path, rel: Path) -> Path:
        backup = backup_root / rel
        backup.parent.mkdir(parents=True, exist_ok=True)
        os.replace(target, backup)
        return backup

    try:
        for src in sorted(staging.rglob("*")):
            rel = src.relative_to(staging)
            target = dest / rel
            if src.is_dir() and not src.is_symlink():
                if target.is_dir() and not target.is_symlink():
                    continue
                if target.exists() or target.is_symlink():
                    journal.append(("move", target, _park(target, rel)))
                target.mkdir()
                journal.append(("mkdir", target, None))
                shutil.copymode(src, target)
                continue

            backup = None
            if target.exists() or target.is_symlink():
                backup = _park(target, rel)
            journal.append(("move", target, backup))
            os.replace(src, target)
    except BaseException:
        for action, target, backup in reversed(journal):
            if action == "mkdir":
                shutil.rmtree(target, ignore_errors=True)
                continue
            _remove(target)
            if backup is not None:
                os.replace(backup, target)
        raise
    finally:
        shutil.rmtree(backup_root, ignore_errors=True)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink()

