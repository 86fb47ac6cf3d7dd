"""Configuration fragments and the layered context they resolve into.

Three sources feed every build, lowest precedence first:

1. the user's global ``~/.pi.toml``;
2. the template's own ``template.toml``;
3. answers given on the command line or collected by prompting.

Each source is parsed into a :class:`ConfigFragment` and the fragments are
folded left-to-right with :func:`merge_contexts`.  Scalars are replaced by
later layers while nested tables such as ``author`` and ``custom_keys`` are
merged field by field, so a template that only sets ``custom_keys.website``
keeps a globally configured ``custom_keys.github_org``.
"""

from __future__ import annotations

import tomllib
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from projinit.scaffolder.errors import ConfigParseError
from projinit.utils import capitalize_first, print_warning, upper_camel_case

Context = dict[str, Any]
Prompter = Callable[[str], str]

DEFAULT_VERSION = "0.1.0"
DATE_FORMAT = "%m-%d-%Y"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class VersionControl(str, Enum):
    """Version-control systems projinit can initialise."""

    GIT = "git"
    HG = "hg"
    MERCURIAL = "mercurial"
    PIJUL = "pijul"
    DARCS = "darcs"

    @classmethod
    def parse(cls, value: str | None) -> "VersionControl | None":
        """Return the matching member, or ``None`` (with a warning) if unknown."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            print_warning(
                f"version control '{value}' is not supported "
                "(supported: git, hg, mercurial, pijul, darcs), ignoring it"
            )
            return None


class License(str, Enum):
    """Licenses with a bundled LICENSE text."""

    BSD3 = "BSD3"
    BSD = "BSD"
    GPL3 = "GPL3"
    MIT = "MIT"
    ALL_RIGHTS_RESERVED = "AllRightsReserved"

    @classmethod
    def parse(cls, value: str | None) -> "License | None":
        """Match *value* case-insensitively, ignoring ``_`` and ``-``."""
        if not value:
            return None
        normalized = value.replace("_", "").replace("-", "").replace(" ", "").lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return None


# ---------------------------------------------------------------------------
# Fragment models
# ---------------------------------------------------------------------------


class Author(BaseModel):
    """Author identity; every field optional inside a single fragment."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    email: str | None = None
    github_username: str | None = None


class ConfigFragment(BaseModel):
    """One partially-specified configuration source."""

    model_config = ConfigDict(extra="ignore")

    license: str | None = None
    version_control: str | None = None
    version: str | None = None
    author: Author | None = None
    custom_keys: dict[str, Any] = Field(default_factory=dict)
    with_readme: bool | None = None

    @field_validator("custom_keys", mode="before")
    @classmethod
    def _merge_repeated_tables(cls, value: Any) -> Any:
        # ``[[custom_keys]]`` arrives as a list of tables; fold it in order.
        if isinstance(value, list):
            merged: dict[str, Any] = {}
            for table in value:
                if not isinstance(table, dict):
                    raise ValueError("custom_keys entries must be tables")
                merged = merge_contexts(merged, table)
            return merged
        if value is None:
            return {}
        return value

    def as_layer(self) -> Context:
        """Return the fragment as a plain mapping without unset values."""
        return self.model_dump(exclude_none=True)


class FilesSection(BaseModel):
    """The ``[files]`` table of a ``template.toml``."""

    model_config = ConfigDict(extra="ignore")

    files: list[str] = Field(default_factory=list)
    directories: list[str] = Field(default_factory=list)
    templates: list[str] = Field(default_factory=list)
    scripts: list[str] = Field(default_factory=list)


class ProjectSettings(BaseModel):
    """The ``[config]`` table of a ``template.toml``."""

    model_config = ConfigDict(extra="ignore")

    version_control: str | None = None
    version: str | None = None
    license: str | None = None
    with_readme: bool | None = None


class TemplateConfig(ConfigFragment):
    """A parsed ``template.toml``: a fragment plus manifest and prompts."""

    files: FilesSection | None = None
    config: ProjectSettings | None = None
    prompts: dict[str, str] = Field(default_factory=dict)

    def as_layer(self) -> Context:
        layer = self.model_dump(exclude={"files", "config", "prompts"}, exclude_none=True)
        if self.config is not None:
            layer = merge_contexts(layer, self.config.model_dump(exclude_none=True))
        return layer


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_toml(path: str | Path) -> dict[str, Any] | None:
    """Parse a TOML file.

    Returns:
        The parsed document, or ``None`` if the file does not exist.

    Raises:
        ConfigParseError: If the file exists but cannot be read or parsed.
    """
    file_path = Path(path)
    if not file_path.is_file():
        return None
    try:
        raw = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigParseError(f"could not read file: {exc}", file_path) from exc
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigParseError(f"invalid TOML: {exc}", file_path) from exc


def _validate(model: type[BaseModel], data: dict[str, Any], path: Path) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigParseError(f"invalid configuration ({problems})", path) from exc


def load_fragment(path: str | Path) -> ConfigFragment:
    """Load a global configuration file; absent means empty."""
    data = load_toml(path)
    if data is None:
        print_warning(f"{path} not found, using default configuration")
        return ConfigFragment()
    return _validate(ConfigFragment, data, Path(path))


def load_template_config(path: str | Path) -> TemplateConfig:
    """Load a ``template.toml``; absent means empty."""
    data = load_toml(path)
    if data is None:
        return TemplateConfig()
    return _validate(TemplateConfig, data, Path(path))


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def merge_contexts(base: Mapping[str, Any], override: Mapping[str, Any]) -> Context:
    """Merge *override* on top of *base* and return a new mapping.

    Nested mappings merge recursively, any other value in *override*
    replaces the one in *base*.  ``None`` never overrides.
    """
    merged: Context = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_contexts(current, value)
        else:
            merged[key] = value
    return merged


_FRAGMENT_FIELDS = frozenset({"license", "version_control", "version", "with_readme"})
_AUTHOR_FIELDS = frozenset(Author.model_fields)


def answers_to_layer(answers: Mapping[str, Any]) -> Context:
    """Turn ``{key: value}`` answers into a fragment-shaped layer.

    Fragment fields keep their meaning, ``author.<field>`` sets an author
    field and everything else becomes a custom key.
    """
    layer: Context = {}
    for key, value in answers.items():
        if key in _FRAGMENT_FIELDS:
            layer[key] = value
        elif key.startswith("author.") and key[len("author."):] in _AUTHOR_FIELDS:
            layer.setdefault("author", {})[key[len("author."):]] = value
        else:
            layer.setdefault("custom_keys", {})[key] = value
    return layer


# ---------------------------------------------------------------------------
# ConfigStore
# ---------------------------------------------------------------------------


def _default_prompter(question: str) -> str:
    from rich.prompt import Prompt

    return Prompt.ask(question, default="", show_default=False)


class ConfigStore:
    """Resolves the context for one build invocation.

    Args:
        project_name: Name given on the command line.
        prompter: Callable reading one line of input for a question.
            Defaults to ``rich.prompt.Prompt.ask``.
        interactive: When ``False`` nothing is ever prompted; keys with no
            provider stay unresolved.
        now: Timestamp used for the ``year``/``date`` keys (tests pin it).
    """

    # Implicit prompts for the author identity, keyed by context name.
    AUTHOR_PROMPTS: dict[str, str] = {
        "name": "Enter your name",
        "email": "Enter your email",
    }

    def __init__(
        self,
        project_name: str,
        *,
        prompter: Prompter | None = None,
        interactive: bool = True,
        now: datetime | None = None,
    ) -> None:
        self.project_name = project_name
        self.prompter = prompter or _default_prompter
        self.interactive = interactive
        self.now = now
        self.prompted: list[str] = []

    def resolve(
        self,
        global_path: str | Path | None,
        template_config_path: str | Path | None,
        interactive_answers: Mapping[str, Any] | None = None,
        *,
        referenced_keys: Iterable[str] | None = None,
        include_keys: Callable[[Context], Iterable[str]] | None = None,
    ) -> Context:
        """Load, merge, prompt and derive the final context.

        Args:
            global_path: Global config file (``None`` skips it).
            template_config_path: The template's ``template.toml``.
            interactive_answers: Pre-supplied answers; highest precedence.
            referenced_keys: Placeholder names used by the template.  Only
                referenced keys are prompted for; ``None`` treats every
                declared key as referenced.
            include_keys: Given the merged layers, returns the keys used by
                the bundled files that layer will generate.  They count as
                referenced.

        Raises:
            ConfigParseError: If a present config file is malformed.
        """
        global_fragment = load_fragment(global_path) if global_path else ConfigFragment()
        template_config = (
            load_template_config(template_config_path)
            if template_config_path
            else TemplateConfig()
        )

        layers = [
            global_fragment.as_layer(),
            template_config.as_layer(),
            answers_to_layer(interactive_answers or {}),
        ]
        merged: Context = {}
        for layer in layers:
            merged = merge_contexts(merged, layer)

        referenced = set(referenced_keys) if referenced_keys is not None else None
        if referenced is not None and include_keys is not None:
            referenced |= set(include_keys(merged))
        merged = merge_contexts(merged, self._collect_prompts(merged, template_config.prompts, referenced))
        return self.build_context(merged)

    # -- Prompting ---------------------------------------------------------

    def _collect_prompts(
        self,
        merged: Context,
        declared: Mapping[str, str],
        referenced: set[str] | None,
    ) -> Context:
        """Ask for every declared key that is referenced but has no value."""
        if not self.interactive:
            return {}

        answers: dict[str, str] = {}
        author = merged.get("author", {})
        for key, question in self.AUTHOR_PROMPTS.items():
            if author.get(key):
                continue
            if referenced is not None and key not in referenced and "author" not in referenced:
                continue
            answers[f"author.{key}"] = self._ask(key, question)

        custom = merged.get("custom_keys", {})
        for key, question in declared.items():
            if key in custom or key in answers:
                continue
            if referenced is not None and key not in referenced:
                continue
            answers[key] = self._ask(key, question or f"Enter a value for {key}")

        return answers_to_layer(answers)

    def _ask(self, key: str, question: str) -> str:
        self.prompted.append(key)
        return self.prompter(question).strip()

    # -- Derived keys ------------------------------------------------------

    def build_context(self, merged: Mapping[str, Any]) -> Context:
        """Flatten a merged layer into the context handed to templates."""
        now = self.now or datetime.now()
        context: Context = dict(merged.get("custom_keys", {}))

        version = merged.get("version")
        if not version:
            print_warning(f"no version info found, defaulting to '{DEFAULT_VERSION}'")
            version = DEFAULT_VERSION

        author = merged.get("author", {})
        github_username = author.get("github_username")
        if not github_username:
            print_warning("no github username found, defaulting to ''")
            github_username = ""

        context.update(
            {
                "project": self.project_name,
                "Project": capitalize_first(self.project_name),
                "ProjectCamelCase": upper_camel_case(self.project_name),
                "year": now.year,
                "date": now.strftime(DATE_FORMAT),
                "datetime": now.strftime(DATETIME_FORMAT),
                "version": version,
                "name": author.get("name") or "",
                "email": author.get("email") or "",
                "github_username": github_username,
                "author": {
                    "name": author.get("name") or "",
                    "email": author.get("email") or "",
                    "github_username": github_username,
                },
                "with_readme": bool(merged.get("with_readme", False)),
            }
        )
        # Custom keys that collide with the names above lose to them.
        context.pop("license", None)
        context.pop("version_control", None)

        raw_license = merged.get("license")
        if raw_license:
            parsed = License.parse(raw_license)
            if parsed is None:
                print_warning(f"unknown license '{raw_license}', LICENSE file not generated")
                context["license"] = raw_license
            else:
                context["license"] = parsed.value

        vcs = VersionControl.parse(merged.get("version_control"))
        if vcs is not None:
            context["version_control"] = vcs.value

        return context
