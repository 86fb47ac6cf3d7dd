"""Locating templates on disk and fetching them from remote repositories.

Local lookup checks the current directory before the global template
directory, so a project-local template shadows a globally installed one of
the same name.  Remote templates are cloned (or downloaded as an archive)
into a fresh temporary directory that the caller releases with
:meth:`TemplateRoot.cleanup`.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from projinit.config import TEMPLATE_FILENAME, Settings
from projinit.scaffolder.errors import FetchError, TemplateNotFoundError
from projinit.utils import run_command

_OWNER_REPO_RE = re.compile(r"^(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?(?:@(?P<ref>[^\s@]+))?$")


@dataclass
class TemplateRoot:
    """A directory holding a template.

    ``origin`` is ``"local"`` (current directory), ``"global"``
    (``~/.pi_templates``) or ``"remote"`` (fetched into a temporary
    directory owned by this object).
    """

    path: Path
    origin: str = "local"
    temp_dir: Path | None = None

    @property
    def config_path(self) -> Path:
        """The template's ``template.toml`` (which may not exist)."""
        return self.path / TEMPLATE_FILENAME

    def cleanup(self) -> None:
        """Remove the temporary checkout of a fetched template."""
        if self.temp_dir is not None:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None


@dataclass(frozen=True)
class RemoteRef:
    """A remote template: ``owner/repo`` on the configured host, or a full URL."""

    url: str
    name: str
    ref: str | None = None
    owner: str | None = None
    repo: str | None = None

    @classmethod
    def parse(cls, spec: str, base_url: str = "https://github.com") -> "RemoteRef":
        """Parse ``owner/repo``, ``owner/repo@ref`` or a clone URL.

        Raises:
            FetchError: If *spec* is neither form.
        """
        spec = spec.strip()
        match = _OWNER_REPO_RE.match(spec)
        if match:
            owner, repo = match.group("owner"), match.group("repo")
            return cls(
                url=f"{base_url.rstrip('/')}/{owner}/{repo}",
                name=f"{owner}-{repo}",
                ref=match.group("ref"),
                owner=owner,
                repo=repo,
            )
        if re.match(r"^(https?|ssh|git|file)://", spec) or spec.startswith("git@"):
            url, _, ref = spec.partition("#")
            name = url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git") or "template"
            return cls(url=url, name=name, ref=ref or None)
        raise FetchError("expected OWNER/REPO[@REF] or a repository URL", spec)

    @property
    def archive_url(self) -> str:
        """Tarball URL for GitHub-style hosts."""
        if self.owner is None or self.repo is None:
            raise FetchError("archive download needs an OWNER/REPO reference", self.url)
        base = self.url[: -len(f"/{self.owner}/{self.repo}")]
        return f"{base}/{self.owner}/{self.repo}/archive/{self.ref or 'HEAD'}.tar.gz"


# ---------------------------------------------------------------------------
# TemplateSource
# ---------------------------------------------------------------------------


class TemplateSource:
    """Resolves where a template lives.

    Args:
        settings: Provides the global template directory, the remote host
            and the fetch timeout.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()

    # -- Local lookup ------------------------------------------------------

    def locate(self, name: str, cwd: str | Path | None = None) -> TemplateRoot:
        """Find template *name* in *cwd*, then in the global template directory.

        Raises:
            TemplateNotFoundError: If neither location holds a directory
                called *name*.
        """
        base = Path(cwd) if cwd is not None else Path.cwd()
        candidates = [
            (base / name, "local"),
            (self.settings.global_templates_path / name, "global"),
        ]
        for path, origin in candidates:
            if path.is_dir():
                return TemplateRoot(path=path, origin=origin)
        searched = ", ".join(str(path) for path, _ in candidates)
        raise TemplateNotFoundError(f"template not found (searched {searched})", name)

    def list_templates(self) -> list[str]:
        """Names of the globally installed templates."""
        root = self.settings.global_templates_path
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))

    # -- Remote fetch ------------------------------------------------------

    async def fetch(self, remote: RemoteRef | str, *, method: str = "git") -> TemplateRoot:
        """Retrieve a remote template into a fresh temporary directory.

        Args:
            remote: A ``RemoteRef`` or a string accepted by ``RemoteRef.parse``.
            method: ``"git"`` to clone, ``"archive"`` to download a tarball.

        Raises:
            FetchError: On any network, authentication or VCS failure.  The
                temporary directory is removed before raising.
        """
        ref = remote if isinstance(remote, RemoteRef) else RemoteRef.parse(remote, self.settings.github_url)
        if method not in ("git", "archive"):
            raise FetchError(f"unknown fetch method '{method}'", ref.url)

        temp_dir = Path(tempfile.mkdtemp(prefix=f"projinit-{ref.name}-"))
        try:
            if method == "git":
                path = await self._clone(ref, temp_dir)
            else:
                path = await self._download(ref, temp_dir)
        except BaseException:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise
        return TemplateRoot(path=path, origin="remote", temp_dir=temp_dir)

    async def _clone(self, ref: RemoteRef, temp_dir: Path) -> Path:
        checkout = temp_dir / "template"
        cmd = ["git", "clone", "--depth", "1"]
        if ref.ref:
            cmd += ["--branch", ref.ref]
        cmd += [ref.url, str(checkout)]
        try:
            returncode, _stdout, stderr = await run_command(
                cmd,
                timeout=self.settings.fetch_timeout,
                env={"GIT_TERMINAL_PROMPT": "0"},
            )
        except FileNotFoundError as exc:
            raise FetchError("git is not installed or not on PATH", ref.url) from exc
        if returncode != 0:
            raise FetchError(f"failed to clone repository: {stderr or 'unknown error'}", ref.url)
        return checkout

    def _client(self) -> httpx.AsyncClient:
        """Return a fresh ``AsyncClient`` for archive downloads."""
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.fetch_timeout, connect=10.0),
            follow_redirects=True,
        )

    async def _download(self, ref: RemoteRef, temp_dir: Path) -> Path:
        url = ref.archive_url
        archive = temp_dir / "template.tar.gz"
        try:
            async with self._client() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with archive.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"download failed with HTTP {exc.response.status_code}", url
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"download failed: {exc}", url) from exc

        return await asyncio.to_thread(_extract_archive, archive, temp_dir / "template")


def _extract_archive(archive: Path, target: Path) -> Path:
    """Unpack a tarball and return its single top-level directory."""
    try:
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(target, filter="data")
    except (tarfile.TarError, OSError) as exc:
        raise FetchError(f"could not unpack archive: {exc}", archive) from exc
    finally:
        archive.unlink(missing_ok=True)

    if not target.is_dir():
        raise FetchError("archive is empty", archive)
    entries = list(target.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return target
