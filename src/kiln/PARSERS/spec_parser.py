# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parser for kiln project files (``kiln.yaml``).

Steps are written as YAML tags, e.g.::

    containers:
      ubuntu:
        setup:
        - !Ubuntu xenial
        - !Install [git, build-essential]
        - !TarInstall
          url: https://example.org/toolchain.tar.gz
          script: ./install.sh --prefix=/usr
        - !Tar
          url: https://example.org/tool.tar.gz
          sha256: 7deeb489...
          path: /
    commands:
      test: !Command
        container: ubuntu
        run: [cargo, test]

Plain mappings with an explicit ``step`` key are accepted as well.
"""
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from ..errors import DefinitionError, NotFoundError
from ..MODELS.spec_model import Command, Container, ProjectSpec

PROJECT_FILE = "kiln.yaml"

TOP_LEVEL_KEYS = ("commands", "containers")

_MERGE_TAG = "tag:yaml.org,2002:merge"


class SpecLoader(yaml.SafeLoader):
    """
    Safe YAML loader that understands the step tags and rejects duplicate keys.
    """

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen = set()
            for key_node, _ in node.value:
                if key_node.tag == _MERGE_TAG or not isinstance(key_node, yaml.ScalarNode):
                    continue
                if key_node.value in seen:
                    raise yaml.constructor.ConstructorError(
                        "while constructing a mapping", node.start_mark,
                        f"found duplicate key {key_node.value!r}", key_node.start_mark)
                seen.add(key_node.value)
        return super().construct_mapping(node, deep=deep)


def _bootstrap_constructor(distribution: str):
    def construct(loader: SpecLoader, node):
        if not isinstance(node, yaml.ScalarNode):
            raise yaml.constructor.ConstructorError(
                None, None, f"!{distribution.capitalize()} expects a release name",
                node.start_mark)
        return {"step": "bootstrap", "distribution": distribution,
                "release": loader.construct_scalar(node)}
    return construct


def _construct_install(loader: SpecLoader, node):
    if not isinstance(node, yaml.SequenceNode):
        raise yaml.constructor.ConstructorError(
            None, None, "!Install expects a list of packages", node.start_mark)
    return {"step": "install", "packages": loader.construct_sequence(node, deep=True)}


def _mapping_constructor(step: str, tag: str):
    def construct(loader: SpecLoader, node):
        if not isinstance(node, yaml.MappingNode):
            raise yaml.constructor.ConstructorError(
                None, None, f"{tag} expects a mapping", node.start_mark)
        return {"step": step, **loader.construct_mapping(node, deep=True)}
    return construct


def _construct_command(loader: SpecLoader, node):
    if not isinstance(node, yaml.MappingNode):
        raise yaml.constructor.ConstructorError(
            None, None, "!Command expects a mapping", node.start_mark)
    return loader.construct_mapping(node, deep=True)


def _construct_unknown(loader: SpecLoader, tag_suffix: str, node):
    raise yaml.constructor.ConstructorError(
        None, None, f"unknown tag !{tag_suffix}", node.start_mark)


SpecLoader.add_constructor("!Ubuntu", _bootstrap_constructor("ubuntu"))
SpecLoader.add_constructor("!Install", _construct_install)
SpecLoader.add_constructor("!TarInstall", _mapping_constructor("tar-install", "!TarInstall"))
SpecLoader.add_constructor("!Tar", _mapping_constructor("tar", "!Tar"))
SpecLoader.add_constructor("!Command", _construct_command)
SpecLoader.add_multi_constructor("!", _construct_unknown)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error["loc"])
        msg = error["msg"]
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


class SpecParser:
    """
    Parser for kiln project files.
    """

    def parse(self, spec_path: Union[str, Path]) -> ProjectSpec:
        """
        Parses a project file from a path.

        :param spec_path: Path to the project file.
        :return: The validated project.
        :raises DefinitionError: If the file is malformed or inconsistent.
        """
        try:
            with open(spec_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise DefinitionError(f"Cannot read {spec_path}: {e}") from e
        return self.parse_from_string(content, source=str(spec_path))

    def parse_from_string(self, content: str, source: str = "<string>") -> ProjectSpec:
        """
        Parses a project file from a string.

        :param content: YAML content of the project file.
        :param source: Name used in error messages.
        :return: The validated project.
        """
        try:
            data = yaml.load(content, Loader=SpecLoader)
        except yaml.YAMLError as e:
            raise DefinitionError(f"{source}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DefinitionError(f"{source}: top level must be a mapping")

        unknown = [k for k in data if k not in TOP_LEVEL_KEYS]
        if unknown:
            raise DefinitionError(f"{source}: unknown top-level keys: {', '.join(map(str, unknown))}")

        containers = {
            name: self._parse_container(name, spec)
            for name, spec in self._section(data, "containers", source).items()
        }
        commands = {
            name: self._parse_command(name, spec)
            for name, spec in self._section(data, "commands", source).items()
        }

        try:
            return ProjectSpec(commands=commands, containers=containers)
        except ValidationError as e:
            raise DefinitionError(f"{source}: {_format_validation_error(e)}") from e

    def _section(self, data: Dict[str, Any], key: str, source: str) -> Dict[str, Any]:
        section = data.get(key) or {}
        if not isinstance(section, dict):
            raise DefinitionError(f"{source}: {key} must be a mapping")
        for name in section:
            if not isinstance(name, str) or not name:
                raise DefinitionError(f"{source}: invalid name in {key}: {name!r}")
        return section

    def _parse_container(self, name: str, spec: Any) -> Container:
        """
        Parses a single container definition.

        :param name: The name of the container.
        :param spec: The container mapping (``setup`` and ``environ``).
        """
        if not isinstance(spec, dict):
            raise DefinitionError(f"Container {name!r} must be a mapping")
        try:
            return Container.model_validate({**spec, "name": name})
        except ValidationError as e:
            raise DefinitionError(
                f"Container {name!r}: {_format_validation_error(e)}") from e

    def _parse_command(self, name: str, spec: Any) -> Command:
        """
        Parses a single command definition.

        :param name: The name of the command.
        :param spec: The command mapping.
        """
        if not isinstance(spec, dict):
            raise DefinitionError(f"Command {name!r} must be a mapping")
        try:
            return Command.model_validate({**spec, "name": name})
        except ValidationError as e:
            raise DefinitionError(
                f"Command {name!r}: {_format_validation_error(e)}") from e


def find_project_file(start: Optional[Union[str, Path]] = None) -> Path:
    """
    Looks for ``kiln.yaml`` in ``start`` and each of its parents.

    :raises NotFoundError: If no project file is found.
    """
    current = Path(start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / PROJECT_FILE
        if candidate.is_file():
            return candidate
    raise NotFoundError(str(current), kind=f"project ({PROJECT_FILE} not found above)")


def load(source: Union[str, Path]) -> ProjectSpec:
    """
    Loads a project from a path, or from YAML text when ``source`` is not an
    existing file.
    """
    if isinstance(source, Path) or (isinstance(source, str) and "\n" not in source
                                    and Path(source).is_file()):
        return SpecParser().parse(source)
    return SpecParser().parse_from_string(str(source))
