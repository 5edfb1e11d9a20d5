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
Wiring of the cache, build and dispatch components for one invocation.
"""
import logging
from typing import Optional

from ..BUILDERS.build_planner import BuildPlanner
from ..BUILDERS.step_executor import StepExecutor
from ..ISOLATION.chroot_runner import ChrootRunner
from ..MODELS.settings import Settings
from ..MODELS.spec_model import ProjectSpec
from ..REGISTRY.image_cache import ImageCache
from ..REGISTRY.tar_fetcher import TarFetcher
from ..RUNNERS.dispatcher import CommandDispatcher
from .bootstrap_manager import BootstrapManager, UbuntuBootstrapper
from .environment_manager import EnvironmentManager
from .package_manager import AptPackageManager, PackageManagerRegistry

logger = logging.getLogger(__name__)


class Engine:
    """
    Owns the image cache for the lifetime of an invocation and hands out the
    planner and dispatcher built on top of it.

    Use as a context manager so the cache is opened and closed explicitly.
    """
    def __init__(self,
                 spec: ProjectSpec,
                 settings: Settings,
                 executor: Optional[StepExecutor] = None,
                 runner: Optional[ChrootRunner] = None):
        """
        Initializes the engine.

        :param spec: The loaded project.
        :param settings: Engine settings.
        :param executor: Step executor; built from ``settings`` when omitted.
        :param runner: Process runner; built from ``settings`` when omitted.
        """
        self.spec = spec
        self.settings = settings
        self.cache = ImageCache(str(settings.resolved_cache_dir))
        self.runner = runner or ChrootRunner(
            isolation=settings.isolation,
            project_dir=settings.project_dir,
            bind_project=settings.bind_project,
            timeout=settings.command_timeout,
        )
        self.fetcher = TarFetcher(
            self.cache.downloads_dir,
            timeout=settings.fetch_timeout,
            retry_attempts=settings.retry_attempts,
            retry_backoff=settings.retry_backoff,
        )
        self.executor = executor or self._default_executor()
        self.planner = BuildPlanner(
            self.cache, self.executor,
            retry_attempts=settings.retry_attempts,
            retry_backoff=settings.retry_backoff,
        )
        self.dispatcher = CommandDispatcher(spec, self.planner, self.runner, EnvironmentManager())

    def _default_executor(self) -> StepExecutor:
        bootstrap = BootstrapManager({
            "ubuntu": UbuntuBootstrapper(self.fetcher, self.settings.ubuntu_mirror,
                                         arch=self.settings.arch),
        })
        packages = PackageManagerRegistry({
            "ubuntu": AptPackageManager(self.runner, timeout=self.settings.step_timeout),
            "debian": AptPackageManager(self.runner, timeout=self.settings.step_timeout),
        })
        return StepExecutor(bootstrap, packages, self.fetcher, self.runner,
                            install_prefix=self.settings.install_prefix,
                            script_timeout=self.settings.step_timeout)

    def open(self) -> "Engine":
        self.cache.open()
        return self

    def close(self) -> None:
        self.cache.close()

    def __enter__(self) -> "Engine":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fingerprints(self) -> dict:
        """Current fingerprint of every container in the project."""
        return {name: self.planner.fingerprint(container)
                for name, container in self.spec.containers.items()}
