"""
Models for the project file: containers, their setup steps, and commands.
"""
import re
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import NotFoundError
from ..UTILS.templates import validate_script

# Distributions that have a bootstrapper
DISTRIBUTIONS = ("ubuntu",)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def normalize_sha256(value: Optional[str]) -> Optional[str]:
    """
    Normalizes a checksum to lowercase bare hex.

    Accepts either ``<hex>`` or ``sha256:<hex>``.
    """
    if value is None:
        return None
    value = str(value).strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    if not _SHA256_RE.match(value):
        raise ValueError(f"Invalid sha256 checksum: {value!r}")
    return value


class _Step(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class OSBootstrap(_Step):
    """
    Materializes a minimal base filesystem for a distribution release.
    """
    step: Literal["bootstrap"] = "bootstrap"
    distribution: str
    release: str

    @field_validator("distribution")
    @classmethod
    def validate_distribution(cls, v: str) -> str:
        v = v.lower()
        if v not in DISTRIBUTIONS:
            raise ValueError(f"Unsupported distribution: {v}")
        return v

    def describe(self) -> str:
        return f"!{self.distribution.capitalize()} {self.release}"

    def fingerprint_data(self) -> dict:
        return {"step": self.step, "distribution": self.distribution,
                "release": self.release}


class PackageInstall(_Step):
    """
    Installs a set of packages with the distribution's package manager.
    The order of names is not significant.
    """
    step: Literal["install"] = "install"
    packages: List[str] = Field(..., min_length=1)

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: List[str]) -> List[str]:
        cleaned = [str(p).strip() for p in v]
        if any(not p or any(c.isspace() for c in p) for p in cleaned):
            raise ValueError(f"Invalid package name in {v!r}")
        return cleaned

    @property
    def package_set(self) -> List[str]:
        return sorted(set(self.packages))

    def describe(self) -> str:
        return f"!Install [{', '.join(self.packages)}]"

    def fingerprint_data(self) -> dict:
        return {"step": self.step, "packages": self.package_set}


class TarInstall(_Step):
    """
    Fetches a tarball and runs an install script from inside it.
    """
    step: Literal["tar-install"] = "tar-install"
    url: str
    script: str
    sha256: Optional[str] = None

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: Optional[str]) -> Optional[str]:
        return normalize_sha256(v)

    @field_validator("script")
    @classmethod
    def check_script(cls, v: str) -> str:
        validate_script(v)
        return v

    def describe(self) -> str:
        return f"!TarInstall {self.url}"

    def fingerprint_data(self) -> dict:
        return {"step": self.step, "url": self.url, "script": self.script,
                "sha256": self.sha256}


class TarExtract(_Step):
    """
    Fetches a tarball and unpacks it at a path inside the container.
    """
    step: Literal["tar"] = "tar"
    url: str
    sha256: Optional[str] = None
    path: str = "/"

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: Optional[str]) -> Optional[str]:
        return normalize_sha256(v)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Extraction path must be absolute: {v!r}")
        if ".." in v.split("/"):
            raise ValueError(f"Extraction path must not contain '..': {v!r}")
        return v

    def describe(self) -> str:
        return f"!Tar {self.url} -> {self.path}"

    def fingerprint_data(self) -> dict:
        return {"step": self.step, "url": self.url, "sha256": self.sha256,
                "path": self.path}


SetupStep = Annotated[
    Union[OSBootstrap, PackageInstall, TarInstall, TarExtract],
    Field(discriminator="step"),
]


class Container(BaseModel):
    """
    A named build environment: ordered setup steps plus an environment map.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    setup: List[SetupStep] = []
    environ: Dict[str, str] = {}

    @field_validator("environ", mode="before")
    @classmethod
    def stringify_environ(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("environ must be a mapping")
        result = {}
        for key, value in v.items():
            if not isinstance(key, str) or not key or "=" in key:
                raise ValueError(f"Invalid environment variable name: {key!r}")
            if isinstance(value, bool):
                value = "true" if value else "false"
            elif value is None:
                value = ""
            elif isinstance(value, (dict, list)):
                raise ValueError(f"Environment value for {key} must be a scalar")
            result[key] = str(value)
        return result

    @model_validator(mode="after")
    def check_step_order(self) -> "Container":
        bootstrapped = False
        for step in self.setup:
            if isinstance(step, OSBootstrap):
                bootstrapped = True
            elif isinstance(step, PackageInstall) and not bootstrapped:
                raise ValueError(
                    f"{step.describe()} requires a preceding distribution bootstrap step"
                )
        return self


class Command(BaseModel):
    """
    A named invocation: an argv template run inside a container.
    """
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: str
    description: str = ""
    container: str
    run: List[str] = Field(..., min_length=1)
    symlink_name: Optional[str] = Field(None, alias="symlink-name")

    @field_validator("run", mode="before")
    @classmethod
    def stringify_run(cls, v):
        if isinstance(v, str):
            raise ValueError("run must be a list of arguments, not a string")
        return [str(a) for a in v] if isinstance(v, list) else v

    @field_validator("symlink_name")
    @classmethod
    def validate_symlink_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (not v or "/" in v or v in (".", "..")):
            raise ValueError(f"Invalid symlink-name: {v!r}")
        return v


class ProjectSpec(BaseModel):
    """
    The parsed project file. Command and container references are resolved
    and the alias table is built once, at load time.
    """
    commands: Dict[str, Command] = {}
    containers: Dict[str, Container] = {}
    aliases: Dict[str, str] = {}

    @model_validator(mode="after")
    def resolve_references(self) -> "ProjectSpec":
        aliases = {}
        for name, command in self.commands.items():
            if command.container not in self.containers:
                raise ValueError(
                    f"Command {name!r} refers to unknown container {command.container!r}"
                )
            alias = command.symlink_name
            if alias is None:
                continue
            if alias in aliases:
                raise ValueError(
                    f"symlink-name {alias!r} is used by both {aliases[alias]!r} and {name!r}"
                )
            if alias in self.commands and alias != name:
                raise ValueError(
                    f"symlink-name {alias!r} of {name!r} shadows another command"
                )
            aliases[alias] = name
        self.aliases = aliases
        return self

    def resolve(self, name: str) -> Command:
        """
        Looks up a command by its name, then by its symlink alias.

        :raises NotFoundError: If neither matches.
        """
        if name in self.commands:
            return self.commands[name]
        if name in self.aliases:
            return self.commands[self.aliases[name]]
        raise NotFoundError(name)

    def get_container(self, name: str) -> Container:
        if name not in self.containers:
            raise NotFoundError(name, kind="container")
        return self.containers[name]
