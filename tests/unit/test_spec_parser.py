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
Unit tests for the project file parser.
"""
import pytest

from kiln.errors import DefinitionError, NotFoundError
from kiln.MODELS.spec_model import OSBootstrap, PackageInstall, TarExtract, TarInstall
from kiln.PARSERS.spec_parser import SpecParser, find_project_file, load

BULK_SHA = "7deeb4895b3909afea46194ef01bafdeb30ff89fc4a7b6497172ba117734040e"

PROJECT = f"""
commands:

  make: !Command
    description: Build the library
    container: ubuntu
    run: [cargo, build]

  cargo: !Command
    description: Run arbitrary cargo command
    symlink-name: cargo
    container: ubuntu
    run: [cargo]

  test: !Command
    description: Run tests
    container: ubuntu
    run: [cargo, test]

  _bulk: !Command
    description: Run `bulk` command
    container: ubuntu
    run: [bulk]

containers:

  ubuntu:
    setup:
    - !Ubuntu xenial
    - !Install [ca-certificates, git, build-essential, vim]
    - !TarInstall
      url: "https://static.rust-lang.org/dist/rust-1.28.0-x86_64-unknown-linux-gnu.tar.gz"
      script: "./install.sh --prefix=/usr \\
                --components=rustc,rust-std-x86_64-unknown-linux-gnu,cargo"
    - &bulk !Tar
      url: "https://github.com/tailhook/bulk/releases/download/v0.4.12/bulk-v0.4.12.tar.gz"
      sha256: {BULK_SHA}
      path: /

    environ:
      HOME: /work/target
      RUST_BACKTRACE: 1
"""


class TestSpecParser:
    """Tests for SpecParser."""

    def test_parse_tagged_project(self):
        """Test parsing a project written with step tags."""
        spec = SpecParser().parse_from_string(PROJECT)

        assert set(spec.commands) == {"make", "cargo", "test", "_bulk"}
        assert spec.commands["test"].run == ["cargo", "test"]
        assert spec.commands["make"].description == "Build the library"

        ubuntu = spec.containers["ubuntu"]
        bootstrap, install, tar_install, tar = ubuntu.setup
        assert bootstrap == OSBootstrap(distribution="ubuntu", release="xenial")
        assert isinstance(install, PackageInstall)
        assert install.packages == ["ca-certificates", "git", "build-essential", "vim"]
        assert isinstance(tar_install, TarInstall)
        assert tar_install.sha256 is None
        assert tar_install.script.startswith("./install.sh --prefix=/usr")
        assert "--components=rustc" in tar_install.script
        assert isinstance(tar, TarExtract)
        assert tar.sha256 == BULK_SHA
        assert tar.path == "/"

    def test_environ_values_are_strings(self):
        """Test that scalar environment values become strings."""
        spec = SpecParser().parse_from_string(PROJECT)
        assert spec.containers["ubuntu"].environ == {
            "HOME": "/work/target",
            "RUST_BACKTRACE": "1",
        }

    def test_symlink_alias_table(self):
        """Test that aliases are resolved through the lookup table."""
        spec = SpecParser().parse_from_string(PROJECT)
        assert spec.aliases == {"cargo": "cargo"}
        assert spec.resolve("cargo").name == "cargo"
        assert spec.resolve("test").name == "test"

    def test_resolve_prefers_command_name(self):
        """Test that a direct command name wins over an alias."""
        spec = SpecParser().parse_from_string("""
containers:
  c: {setup: []}
commands:
  build: !Command {container: c, run: [make]}
  compile: !Command {container: c, run: [cc], symlink-name: cc}
""")
        assert spec.resolve("cc").name == "compile"
        assert spec.resolve("build").name == "build"

    def test_resolve_unknown(self):
        """Test that unknown names raise NotFoundError."""
        spec = SpecParser().parse_from_string(PROJECT)
        with pytest.raises(NotFoundError):
            spec.resolve("deploy")

    def test_plain_mapping_steps(self):
        """Test steps written as mappings with an explicit step key."""
        spec = SpecParser().parse_from_string("""
containers:
  base:
    setup:
    - {step: bootstrap, distribution: ubuntu, release: focal}
    - {step: install, packages: [git]}
    - {step: tar, url: "file:///tmp/x.tar.gz", path: /opt}
commands: {}
""")
        steps = spec.containers["base"].setup
        assert [s.step for s in steps] == ["bootstrap", "install", "tar"]

    @pytest.mark.parametrize("script", [
        "n=abc; echo ${#n}; ./install.sh --prefix=/usr",
        'awk "{{print $1}}" f',
        "test -d {%dir%} || echo {# not a comment #}",
    ])
    def test_shell_braces_in_install_script(self, script):
        """Test that brace-heavy shell code loads and is kept as written."""
        spec = SpecParser().parse_from_string(
            "containers:\n  a:\n    setup:\n    - !TarInstall\n"
            "      url: 'file:///x.tgz'\n"
            f"      script: |-\n        {script}\n")
        assert spec.containers["a"].setup[0].script == script

    def test_anchor_reuse(self):
        """Test that a step defined once can be reused through an alias."""
        spec = SpecParser().parse_from_string(PROJECT + """
  other:
    setup:
    - *bulk
""")
        assert spec.containers["other"].setup[0] == spec.containers["ubuntu"].setup[3]

    def test_empty_document(self):
        """Test that an empty document is an empty project."""
        spec = SpecParser().parse_from_string("")
        assert spec.commands == {}
        assert spec.containers == {}

    def test_parse_from_file(self, tmp_path):
        """Test parsing from a path."""
        project = tmp_path / "kiln.yaml"
        project.write_text(PROJECT)
        spec = load(project)
        assert "ubuntu" in spec.containers


class TestDefinitionErrors:
    """Structural problems are all reported at load time."""

    @pytest.mark.parametrize("content", [
        # duplicate container
        "containers:\n  a: {setup: []}\n  a: {setup: []}\n",
        # duplicate command
        "containers:\n  a: {setup: []}\ncommands:\n"
        "  x: !Command {container: a, run: [ls]}\n  x: !Command {container: a, run: [ls]}\n",
        # dangling container reference
        "containers: {}\ncommands:\n  x: !Command {container: nope, run: [ls]}\n",
        # unknown step tag
        "containers:\n  a:\n    setup:\n    - !Alpine v3.18\n",
        # install before any bootstrap
        "containers:\n  a:\n    setup:\n    - !Install [git]\n",
        # unsupported distribution
        "containers:\n  a:\n    setup:\n    - {step: bootstrap, distribution: plan9, release: '4'}\n",
        # relative extraction path
        "containers:\n  a:\n    setup:\n    - !Tar {url: 'file:///x.tgz', path: opt}\n",
        # malformed checksum
        "containers:\n  a:\n    setup:\n    - !Tar {url: 'file:///x.tgz', sha256: abc}\n",
        # missing script
        "containers:\n  a:\n    setup:\n    - !TarInstall {url: 'file:///x.tgz'}\n",
        # unknown variable in script template
        "containers:\n  a:\n    setup:\n    - !TarInstall {url: 'file:///x.tgz', script: 'make @@{ dest }@@'}\n",
        # empty argv
        "containers:\n  a: {setup: []}\ncommands:\n  x: !Command {container: a, run: []}\n",
        # argv given as a string
        "containers:\n  a: {setup: []}\ncommands:\n  x: !Command {container: a, run: 'make all'}\n",
        # unknown key in a step
        "containers:\n  a:\n    setup:\n    - !Tar {url: 'file:///x.tgz', mode: fast}\n",
        # unknown top-level key
        "services: {}\n",
        # not a mapping
        "- a\n- b\n",
        # invalid YAML
        "containers: [\n",
    ])
    def test_rejected(self, content):
        """Test that malformed projects raise DefinitionError."""
        with pytest.raises(DefinitionError):
            SpecParser().parse_from_string(content)

    def test_alias_collision(self):
        """Test that two commands cannot share a symlink-name."""
        content = """
containers:
  a: {setup: []}
commands:
  x: !Command {container: a, run: [ls], symlink-name: l}
  y: !Command {container: a, run: [ls], symlink-name: l}
"""
        with pytest.raises(DefinitionError, match="symlink-name"):
            SpecParser().parse_from_string(content)

    def test_alias_shadowing_other_command(self):
        """Test that an alias cannot take another command's name."""
        content = """
containers:
  a: {setup: []}
commands:
  x: !Command {container: a, run: [ls], symlink-name: y}
  y: !Command {container: a, run: [ls]}
"""
        with pytest.raises(DefinitionError):
            SpecParser().parse_from_string(content)

    def test_error_names_the_container(self):
        """Test that the error message identifies the offending container."""
        with pytest.raises(DefinitionError, match="broken"):
            SpecParser().parse_from_string(
                "containers:\n  broken:\n    setup:\n    - !Install [git]\n")

    def test_missing_file(self, tmp_path):
        """Test that an unreadable file is a DefinitionError."""
        with pytest.raises(DefinitionError):
            SpecParser().parse(tmp_path / "missing.yaml")


class TestFindProjectFile:
    """Tests for project file discovery."""

    def test_finds_in_parent(self, tmp_path):
        project = tmp_path / "kiln.yaml"
        project.write_text("containers: {}\n")
        nested = tmp_path / "src" / "deep"
        nested.mkdir(parents=True)
        assert find_project_file(nested) == project.resolve()

    def test_not_found(self, tmp_path):
        with pytest.raises(NotFoundError):
            find_project_file(tmp_path)
