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
Dispatch of command invocations: resolve, build if stale, run inside.
"""
import logging
from typing import List, Optional, Sequence

from ..BUILDERS.build_planner import BuildPlanner
from ..ISOLATION.chroot_runner import WORK_DIR, ChrootRunner
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.spec_model import Command, ProjectSpec

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """
    Maps an invocation name (a command name or its symlink alias) to
    "ensure the container image, then run the command inside it".
    """
    def __init__(self,
                 spec: ProjectSpec,
                 planner: BuildPlanner,
                 runner: ChrootRunner,
                 environment: Optional[EnvironmentManager] = None,
                 workdir: str = WORK_DIR):
        """
        Initializes the dispatcher.

        Args:
            spec: The loaded project.
            planner: Provides up-to-date images.
            runner: Executes the final argv inside the image.
            environment: Builds the environment overlay.
            workdir: Working directory inside the image.
        """
        self.spec = spec
        self.planner = planner
        self.runner = runner
        self.environment = environment or EnvironmentManager()
        self.workdir = workdir

    def resolve(self, name: str) -> Command:
        """
        Resolves a command name, then a symlink alias.

        Raises:
            NotFoundError: If the name matches neither.
        """
        return self.spec.resolve(name)

    def build_argv(self, command: Command, extra_args: Sequence[str]) -> List[str]:
        """The command's argv template followed verbatim by ``extra_args``."""
        return list(command.run) + list(extra_args)

    def invoke(self, name: str, extra_args: Sequence[str] = ()) -> int:
        """
        Runs a command by name or alias.

        Args:
            name: Command name or symlink alias.
            extra_args: Appended to the command's argv without reinterpretation.

        Returns:
            The exit code of the command, unchanged.
        """
        command = self.resolve(name)
        container = self.spec.get_container(command.container)
        image = self.planner.ensure_image(container)

        argv = self.build_argv(command, extra_args)
        env = self.environment.get_merged_environment(container)
        logger.info("Running %s in container %s", argv, container.name)
        exit_code = self.runner.run(argv, env, image.path, workdir=self.workdir)
        logger.debug("Command %s exited with %d", command.name, exit_code)
        return exit_code
