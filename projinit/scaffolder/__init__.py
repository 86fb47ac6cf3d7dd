"""projinit scaffolder -- turns a template directory into a project.

The pieces, in the order a build uses them:

* :class:`TemplateSource` finds a template locally or fetches a remote one;
* :func:`parse_manifest` reads what the template produces;
* :class:`ConfigStore` merges global, template and interactive
  configuration into one context;
* :class:`TemplateRenderer` renders contents and paths with that context;
* :class:`ProjectBuilder` writes the project through a staging directory
  and rolls back on failure.

Quick usage::

    from projinit.scaffolder import ConfigStore, ProjectBuilder, TemplateSource, parse_manifest

    root = TemplateSource().locate("python")
    manifest = parse_manifest(root.path)
    context = ConfigStore("my-app").resolve(None, root.config_path)
    result = await ProjectBuilder().build(root.path, manifest, context, "my-app")
"""

from projinit.scaffolder.builder import BuildResult, BuildState, ProjectBuilder, RenderJob
from projinit.scaffolder.context import ConfigStore, merge_contexts
from projinit.scaffolder.manifest import TemplateManifest
from projinit.scaffolder.manifest import parse as parse_manifest
from projinit.scaffolder.source import RemoteRef, TemplateRoot, TemplateSource
from projinit.scaffolder.templates import TemplateRenderer

__all__ = [
    "BuildResult",
    "BuildState",
    "ConfigStore",
    "ProjectBuilder",
    "RemoteRef",
    "RenderJob",
    "TemplateManifest",
    "TemplateRenderer",
    "TemplateRoot",
    "TemplateSource",
    "merge_contexts",
    "parse_manifest",
]
