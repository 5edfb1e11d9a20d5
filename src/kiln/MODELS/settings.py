"""
Runtime settings, resolved from defaults, a project ``.kiln.env`` file and
``KILN_*`` environment variables (later sources win).
"""
import os
from pathlib import Path
from typing import Dict, Literal, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "KILN_"
ENV_FILE = ".kiln.env"

DEFAULT_UBUNTU_MIRROR = (
    "https://partner-images.canonical.com/core/{release}/current/"
    "ubuntu-{release}-core-cloudimg-{arch}-root.tar.gz"
)


class Settings(BaseModel):
    """
    Engine configuration.
    """
    project_dir: str = "."
    cache_dir: Optional[str] = None
    symlink_dir: str = Field(default_factory=lambda: str(Path.home() / ".kiln" / "cmd"))

    install_prefix: str = "/usr"
    isolation: Literal["auto", "chroot", "none"] = "auto"
    bind_project: bool = True

    fetch_timeout: float = Field(default=60.0, gt=0)
    step_timeout: float = Field(default=3600.0, gt=0)
    command_timeout: Optional[float] = None

    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=1.0, ge=0)

    ubuntu_mirror: str = DEFAULT_UBUNTU_MIRROR
    arch: str = "amd64"

    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("command_timeout", mode="before")
    @classmethod
    def empty_timeout(cls, v):
        if v in ("", "0", 0):
            return None
        return v

    @property
    def resolved_cache_dir(self) -> Path:
        """Cache directory; defaults to ``.kiln`` inside the project."""
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return Path(self.project_dir) / ".kiln"

    @classmethod
    def load(cls,
             project_dir: str = ".",
             environ: Optional[Mapping[str, str]] = None,
             **overrides) -> "Settings":
        """
        Builds settings for a project directory.

        :param project_dir: Directory holding the project file and ``.kiln.env``.
        :param environ: Environment to read ``KILN_*`` values from. Defaults to os.environ.
        :param overrides: Explicit values, applied last (e.g. from CLI options).
        """
        values: Dict[str, str] = {}
        env_file = Path(project_dir) / ENV_FILE
        if env_file.is_file():
            values.update(_strip_prefix(dotenv_values(env_file)))
        values.update(_strip_prefix(os.environ if environ is None else environ))
        values["project_dir"] = str(Path(project_dir).resolve())
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _strip_prefix(source: Mapping[str, Optional[str]]) -> Dict[str, str]:
    fields = Settings.model_fields
    result = {}
    for key, value in source.items():
        if not key.startswith(ENV_PREFIX) or value is None:
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in fields:
            result[name] = value
    return result
