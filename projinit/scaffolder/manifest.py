"""Template manifest parsing.

A manifest says what a template produces.  It comes from the ``[files]``
table of ``template.toml`` when one exists, or from walking the template
root otherwise.  Every check here runs before the builder writes anything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from projinit.config import TEMPLATE_FILENAME
from projinit.scaffolder.context import load_template_config
from projinit.scaffolder.errors import ManifestConflictError, ManifestError
from projinit.utils import print_warning

_SKIPPED_NAMES = frozenset({TEMPLATE_FILENAME, ".git"})
_BINARY_SNIFF_BYTES = 8192


@dataclass
class TemplateManifest:
    """Ordered lists of what a template materialises.

    ``files`` are copied verbatim (or created empty), ``templates`` are
    rendered, ``scripts`` are rendered and made executable.
    """

    directories: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    templates: list[str] = field(default_factory=list)
    scripts: list[str] = field(default_factory=list)
    explicit: bool = False

    def sections(self) -> dict[str, list[str]]:
        """Return the lists keyed by their ``template.toml`` name."""
        return {
            "directories": self.directories,
            "files": self.files,
            "templates": self.templates,
            "scripts": self.scripts,
        }

    def rendered_sources(self) -> list[str]:
        """Template-relative paths whose contents go through the renderer."""
        return [*self.templates, *self.scripts]

    def all_paths(self) -> list[str]:
        return [path for entries in self.sections().values() for path in entries]


def parse(template_root: str | Path) -> TemplateManifest:
    """Build the manifest for the template at *template_root*.

    Raises:
        ManifestError: For absolute or parent-escaping entries.
        ManifestConflictError: If a path appears in more than one list.
        ConfigParseError: If ``template.toml`` exists but is malformed.
    """
    root = Path(template_root)
    if not root.is_dir():
        raise ManifestError("template root is not a directory", root)

    config_path = root / TEMPLATE_FILENAME
    if config_path.is_file():
        manifest = _from_config(config_path)
    else:
        manifest = _from_directory(root)

    validate(manifest)
    return manifest


def validate(manifest: TemplateManifest) -> None:
    """Normalise entries in place and reject unsafe or conflicting ones."""
    owner: dict[str, str] = {}
    for section, entries in manifest.sections().items():
        unique: list[str] = []
        for entry in entries:
            normalized = _normalize_entry(entry, section)
            previous = owner.get(normalized)
            if previous == section:
                print_warning(f"'{normalized}' is listed twice in {section}, ignoring the duplicate")
                continue
            if previous is not None:
                raise ManifestConflictError(
                    f"declared in both '{previous}' and '{section}'", normalized
                )
            owner[normalized] = section
            unique.append(normalized)
        entries[:] = unique


def _normalize_entry(entry: str, section: str) -> str:
    raw = str(entry).replace("\\", "/").strip()
    if not raw:
        raise ManifestError(f"empty path in '{section}'")
    path = PurePosixPath(raw)
    if path.is_absolute():
        raise ManifestError(f"absolute path in '{section}'", raw)
    if ".." in path.parts:
        raise ManifestError(f"path in '{section}' escapes the template", raw)
    normalized = path.as_posix()
    if normalized == ".":
        raise ManifestError(f"path in '{section}' points at the template root", raw)
    return normalized


def _from_config(config_path: Path) -> TemplateManifest:
    config = load_template_config(config_path)
    if config.files is None:
        print_warning(f"{config_path} has no [files] table, nothing will be generated from it")
        return TemplateManifest(explicit=True)
    return TemplateManifest(
        directories=list(config.files.directories),
        files=list(config.files.files),
        templates=list(config.files.templates),
        scripts=list(config.files.scripts),
        explicit=True,
    )


def _from_directory(root: Path) -> TemplateManifest:
    """Treat the whole template root as the manifest."""
    manifest = TemplateManifest()
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if rel.parts[0] in _SKIPPED_NAMES:
            continue
        rel_str = rel.as_posix()
        if path.is_dir():
            manifest.directories.append(rel_str)
        elif path.is_file():
            if _looks_binary(path):
                manifest.files.append(rel_str)
            else:
                manifest.templates.append(rel_str)
    return manifest


def _looks_binary(path: Path) -> bool:
    with path.open("rb") as handle:
        chunk = handle.read(_BINARY_SNIFF_BYTES)
    if b"\0" in chunk:
        return True
    try:
        chunk.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character cut off at the end of the chunk is fine.
        return exc.start < len(chunk) - 3
    return False
