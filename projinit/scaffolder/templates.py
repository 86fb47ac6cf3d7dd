"""Jinja2 template rendering for project scaffolding.

Provides the TemplateRenderer class which renders template bodies and
template *paths* with a resolved context.  Path rendering works segment by
segment so a directory or file name such as ``{{ project }}`` resolves before
anything touches the filesystem.

Unresolved placeholders never fail a build: they render as an empty string
and are reported once as a warning.  Templates routinely guard optional
sections with ``{% if key %}``, and an undefined value there is simply false.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jinja2 import (
    ChainableUndefined,
    Environment,
    FileSystemLoader,
    TemplateError,
    TemplateSyntaxError,
    meta,
)

from projinit.scaffolder.errors import RenderError, RenderSyntaxError
from projinit.utils import print_warning

_MARKUP_RE = re.compile(r"\{\{|\{%|\{#")


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders Jinja2 template strings, template files and template paths.

    When *template_dir* is given, files are loaded through a
    ``FileSystemLoader`` rooted there, so ``{% include %}`` and
    ``{% extends %}`` resolve relative to the template root.

    Attributes:
        missing_keys: Names of placeholders that rendered empty because the
            context did not provide them.
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir) if template_dir is not None else None
        self.missing_keys: set[str] = set()
        loader = FileSystemLoader(str(self.template_dir)) if self.template_dir else None
        self.env = Environment(
            loader=loader,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=_reporting_undefined(self),
        )
        # Register custom filters
        self.env.filters["slugify"] = _slugify_filter
        self.env.filters["pascal_case"] = _pascal_case_filter
        self.env.filters["snake_case"] = _snake_case_filter
        self.env.filters["camel_case"] = _camel_case_filter

    # -- Text rendering ----------------------------------------------------

    def render_text(
        self,
        template_string: str,
        context: Mapping[str, Any],
        *,
        name: str | None = None,
    ) -> str:
        """Render an inline template string with the provided context.

        Args:
            template_string: Template source.
            context: Variables available inside the template.
            name: Label used in error messages (usually the template path).

        Raises:
            RenderSyntaxError: If the source is not valid template syntax.
            RenderError: If rendering fails at runtime (e.g. calling an
                undefined value).
        """
        try:
            template = self.env.from_string(template_string)
        except TemplateSyntaxError as exc:
            raise RenderSyntaxError(exc.message or str(exc), name, exc.lineno) from exc
        try:
            return template.render(**context)
        except TemplateError as exc:
            raise RenderError(str(exc), name) from exc

    def render_file(self, template_path: str, context: Mapping[str, Any]) -> str:
        """Render a template file relative to the template directory."""
        if self.env.loader is None:
            raise RenderError("renderer has no template directory", template_path)
        try:
            template = self.env.get_template(template_path)
        except TemplateSyntaxError as exc:
            raise RenderSyntaxError(exc.message or str(exc), template_path, exc.lineno) from exc
        except TemplateError as exc:
            raise RenderError(str(exc), template_path) from exc
        try:
            return template.render(**context)
        except TemplateError as exc:
            raise RenderError(str(exc), template_path) from exc

    # -- Path rendering ----------------------------------------------------

    def render_path(self, path_string: str, context: Mapping[str, Any]) -> str:
        """Render every segment of a POSIX-style path independently.

        ``"src/{{ project }}/__init__.py"`` with ``project="demo"`` becomes
        ``"src/demo/__init__.py"``.  Segments without template markup are
        passed through untouched.
        """
        segments = path_string.replace("\\", "/").split("/")
        rendered = [
            self.render_text(segment, context, name=path_string)
            if _MARKUP_RE.search(segment)
            else segment
            for segment in segments
        ]
        return "/".join(rendered)

    # -- Inspection --------------------------------------------------------

    def check_syntax(self, source: str, name: str | None = None) -> None:
        """Compile *source* without rendering it.

        Raises:
            RenderSyntaxError: If the source does not parse.
        """
        try:
            self.env.parse(source)
        except TemplateSyntaxError as exc:
            raise RenderSyntaxError(exc.message or str(exc), name, exc.lineno) from exc

    def referenced_keys(self, sources: Mapping[str, str]) -> set[str]:
        """Return the top-level variable names used by the given templates.

        Args:
            sources: Mapping of ``{label: template_source}``.  Labels only
                appear in error messages.
        """
        keys: set[str] = set()
        for label, source in sources.items():
            try:
                ast = self.env.parse(source)
            except TemplateSyntaxError as exc:
                raise RenderSyntaxError(exc.message or str(exc), label, exc.lineno) from exc
            keys |= meta.find_undeclared_variables(ast)
        return keys

    def _report_missing(self, key: str) -> None:
        if key in self.missing_keys:
            return
        self.missing_keys.add(key)
        print_warning(f"no value for '{key}', rendering it as an empty string")


# ---------------------------------------------------------------------------
# Undefined handling
# ---------------------------------------------------------------------------


def _reporting_undefined(renderer: TemplateRenderer) -> type[ChainableUndefined]:
    """Build an ``Undefined`` type that renders empty and notifies *renderer*.

    ``ChainableUndefined`` keeps ``{{ author.website }}`` empty even when
    ``author`` itself is missing.
    """

    class _ReportingUndefined(ChainableUndefined):
        __slots__ = ()

        def __str__(self) -> str:
            renderer._report_missing(self._undefined_name or "<unknown>")
            return ""

    return _ReportingUndefined


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------

def _slugify_filter(value: str) -> str:
    """Convert a string to a URL/filename-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(value).lower().strip())
    return slug.strip("-")


def _pascal_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    parts = re.split(r"[-_\s]+", str(value))
    return "".join(word.capitalize() for word in parts if word)


def _snake_case_filter(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", str(value))
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)
    return re.sub(r"[-\s]+", "_", s2).lower()


def _camel_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``someThing``."""
    pascal = _pascal_case_filter(value)
    if pascal:
        return pascal[0].lower() + pascal[1:]
    return ""
