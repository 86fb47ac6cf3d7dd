"""Exceptions raised while locating, resolving and materialising templates.

Every error carries an optional ``path`` (the file, key or job the failure
is about) so the CLI can print one line naming the culprit and the cause.
"""

from __future__ import annotations

from pathlib import Path


class ScaffoldError(Exception):
    """Base class for every fatal projinit error."""

    def __init__(self, message: str, path: str | Path | None = None) -> None:
        self.path = str(path) if path is not None else None
        self.message = message
        super().__init__(f"{self.path}: {message}" if self.path else message)


class ConfigError(ScaffoldError):
    """Invalid configuration."""


class ConfigParseError(ConfigError):
    """A configuration file exists but is not valid TOML or has bad values."""


class TemplateNotFoundError(ScaffoldError):
    """No template directory matched the requested name."""


class FetchError(ScaffoldError):
    """A remote template could not be retrieved."""


class ManifestError(ScaffoldError):
    """The template manifest declares something invalid."""


class ManifestConflictError(ManifestError):
    """The same path is produced by more than one manifest entry."""


class RenderError(ScaffoldError):
    """A template failed while rendering."""


class RenderSyntaxError(RenderError):
    """A template body or path is not valid template syntax."""

    def __init__(self, message: str, path: str | Path | None = None, lineno: int | None = None) -> None:
        self.lineno = lineno
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message, path)


class BuildError(ScaffoldError):
    """Materialising the project failed."""


class AlreadyExistsError(BuildError):
    """The destination exists and is not empty."""


class UnsafePathError(BuildError):
    """A rendered destination path would leave the project root."""


class BuildIOError(BuildError):
    """A filesystem operation failed while writing the project."""


class VersionControlError(ScaffoldError):
    """Repository initialisation failed.  Reported as a warning only."""
