"""Version-control initialisation for freshly generated projects.

Runs ``<tool> init`` followed by ``<tool> add`` in the project root.  The
builder treats any failure here as a warning: by the time this runs the
project files are already committed to disk.
"""

from __future__ import annotations

from pathlib import Path

from projinit.scaffolder.context import VersionControl
from projinit.scaffolder.errors import VersionControlError
from projinit.utils import run_command

INIT_COMMANDS: dict[VersionControl, list[list[str]]] = {
    VersionControl.GIT: [["git", "init"], ["git", "add", "."]],
    VersionControl.HG: [["hg", "init"], ["hg", "add"]],
    VersionControl.MERCURIAL: [["hg", "init"], ["hg", "add"]],
    VersionControl.PIJUL: [["pijul", "init"], ["pijul", "add", "--recursive", "."]],
    VersionControl.DARCS: [["darcs", "init"], ["darcs", "add", "--recursive", "."]],
}


async def init_repository(
    kind: VersionControl | str,
    path: str | Path,
    timeout: float = 60,
) -> None:
    """Initialise a repository of *kind* at *path* and stage every file.

    Raises:
        VersionControlError: If the tool is missing or a command fails.
    """
    vcs = kind if isinstance(kind, VersionControl) else VersionControl.parse(kind)
    if vcs is None:
        raise VersionControlError(f"unsupported version control '{kind}'", path)

    for cmd in INIT_COMMANDS[vcs]:
        cmd_str = " ".join(cmd)
        try:
            returncode, _stdout, stderr = await run_command(cmd, cwd=path, timeout=timeout)
        except FileNotFoundError as exc:
            raise VersionControlError(
                f"{cmd[0]} failed to initialize, is it on your PATH?", path
            ) from exc
        if returncode != 0:
            raise VersionControlError(
                f"'{cmd_str}' failed (exit {returncode}): {stderr}", path
            )
