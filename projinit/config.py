"""projinit runtime settings.

Typed configuration for where projinit looks for things: the user's global
``~/.pi.toml``, the global template directory ``~/.pi_templates`` and the
host used for ``owner/repo`` remote templates.  Settings use Pydantic v2
models so they are validated at construction time and can be built from
environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

GLOBAL_CONFIG_FILENAME = ".pi.toml"
GLOBAL_TEMPLATE_DIRECTORY = ".pi_templates"
TEMPLATE_FILENAME = "template.toml"
DEFAULT_GITHUB_URL = "https://github.com"


class Settings(BaseModel):
    """Where projinit reads configuration and templates from.

    ``config_path`` and ``templates_dir`` default to locations under
    ``home`` when left unset.
    """

    home: Path = Field(default_factory=Path.home)
    config_path: Path | None = Field(default=None)
    templates_dir: Path | None = Field(default=None)
    github_url: str = Field(default=DEFAULT_GITHUB_URL)
    fetch_timeout: int = Field(default=120, ge=1, description="Clone/download timeout in seconds")
    vcs_timeout: int = Field(default=60, ge=1, description="Repository init timeout in seconds")

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def global_config_path(self) -> Path:
        """Path to the user's global configuration file."""
        return self.config_path or (self.home / GLOBAL_CONFIG_FILENAME)

    @property
    def global_templates_path(self) -> Path:
        """Directory holding globally installed templates."""
        return self.templates_dir or (self.home / GLOBAL_TEMPLATE_DIRECTORY)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build ``Settings`` from environment variables.

        Recognised variables (all optional):
            PROJINIT_HOME, PROJINIT_CONFIG, PROJINIT_TEMPLATES,
            PROJINIT_GITHUB_URL, PROJINIT_FETCH_TIMEOUT, PROJINIT_VCS_TIMEOUT.

        Raises:
            pydantic.ValidationError: If a timeout is not a positive integer.
        """
        kwargs: dict[str, object] = {}
        if os.environ.get("PROJINIT_HOME"):
            kwargs["home"] = Path(os.environ["PROJINIT_HOME"]).expanduser()
        if os.environ.get("PROJINIT_CONFIG"):
            kwargs["config_path"] = Path(os.environ["PROJINIT_CONFIG"]).expanduser()
        if os.environ.get("PROJINIT_TEMPLATES"):
            kwargs["templates_dir"] = Path(os.environ["PROJINIT_TEMPLATES"]).expanduser()
        if os.environ.get("PROJINIT_GITHUB_URL"):
            kwargs["github_url"] = os.environ["PROJINIT_GITHUB_URL"].rstrip("/")
        if os.environ.get("PROJINIT_FETCH_TIMEOUT"):
            kwargs["fetch_timeout"] = os.environ["PROJINIT_FETCH_TIMEOUT"]
        if os.environ.get("PROJINIT_VCS_TIMEOUT"):
            kwargs["vcs_timeout"] = os.environ["PROJINIT_VCS_TIMEOUT"]
        return cls(**kwargs)
