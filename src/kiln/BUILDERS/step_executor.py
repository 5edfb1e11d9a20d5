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
Applies individual setup steps to a build root.
"""
import hashlib
import logging
import shutil
from pathlib import Path
from typing import Optional

from ..errors import IntegrityError, KilnError, ProvisionError
from ..ISOLATION.chroot_runner import ChrootRunner
from ..MANAGERS.bootstrap_manager import BootstrapManager
from ..MANAGERS.environment_manager import DEFAULT_PATH
from ..MANAGERS.package_manager import PackageManagerRegistry
from ..MODELS.spec_model import OSBootstrap, PackageInstall, SetupStep, TarExtract, TarInstall
from ..REGISTRY.tar_fetcher import TarFetcher
from ..UTILS.templates import render_script

logger = logging.getLogger(__name__)


class StepExecutor:
    """
    Applies one setup step at a time against a build root.

    Every step can be re-applied to a root that already carries its effects.
    Failures of the underlying services surface as ProvisionError naming the
    step; checksum and archive-scoping failures surface as IntegrityError.
    """

    def __init__(self,
                 bootstrap: BootstrapManager,
                 packages: PackageManagerRegistry,
                 fetcher: TarFetcher,
                 runner: ChrootRunner,
                 install_prefix: str = "/usr",
                 script_timeout: Optional[float] = None):
        """
        Initializes the executor.

        :param bootstrap: Service laying down base distributions.
        :param packages: Service installing distribution packages.
        :param fetcher: Fetches and unpacks tarballs.
        :param runner: Runs install scripts against the build root.
        :param install_prefix: Prefix substituted into install scripts.
        :param script_timeout: Timeout for a single install script, in seconds.
        """
        self.bootstrap = bootstrap
        self.packages = packages
        self.fetcher = fetcher
        self.runner = runner
        self.install_prefix = install_prefix
        self.script_timeout = script_timeout

    def apply(self, step: SetupStep, root: Path) -> None:
        """
        Applies a single step to ``root``.

        :param step: The step to apply.
        :param root: The build root.
        :raises ProvisionError: If the underlying service failed.
        :raises IntegrityError: If fetched content failed verification.
        """
        try:
            if isinstance(step, OSBootstrap):
                self.bootstrap.bootstrap(step.distribution, step.release, root)
            elif isinstance(step, PackageInstall):
                self.packages.install(step.package_set, root)
            elif isinstance(step, TarInstall):
                self._tar_install(step, root)
            elif isinstance(step, TarExtract):
                self._tar_extract(step, root)
            else:
                raise TypeError(f"Unknown setup step: {step!r}")
        except IntegrityError:
            raise
        except ProvisionError as e:
            raise ProvisionError(step, e.cause, transient=e.transient) from e
        except (OSError, KilnError) as e:
            raise ProvisionError(step, e) from e

    def _tar_extract(self, step: TarExtract, root: Path) -> None:
        archive = self.fetcher.fetch(step.url, step.sha256)
        dest = root / step.path.lstrip("/")
        count = self.fetcher.extract(archive, dest, url=step.url, root=root)
        logger.info("Extracted %d entries from %s into %s", count, step.url, step.path)

    def _tar_install(self, step: TarInstall, root: Path) -> None:
        archive = self.fetcher.fetch(step.url, step.sha256)
        scratch_name = "kiln-tarinstall-" + hashlib.sha256(step.url.encode("utf-8")).hexdigest()[:12]
        scratch = root / "tmp" / scratch_name
        if scratch.exists():
            shutil.rmtree(scratch)
        try:
            self.fetcher.extract(archive, scratch, url=step.url, root=root)

            # Tarballs usually wrap everything in one top-level directory
            srcdir = f"/tmp/{scratch_name}"
            entries = list(scratch.iterdir())
            if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
                srcdir = f"{srcdir}/{entries[0].name}"

            if self.runner.uses_chroot:
                prefix, root_path, srcdir_path = self.install_prefix, "/", srcdir
            else:
                logger.warning("Running install script for %s outside of a chroot; "
                               "only prefix/root substitutions point into the build root",
                               step.url)
                prefix = str(root) + self.install_prefix
                root_path = str(root)
                srcdir_path = str(root) + srcdir

            script = render_script(step.script, prefix=prefix, root=root_path, srcdir=srcdir_path)
            env = {"PATH": DEFAULT_PATH, "HOME": "/root", "LANG": "C.UTF-8"}
            rc = self.runner.run(["/bin/sh", "-exc", script], env, str(root),
                                 workdir=srcdir, timeout=self.script_timeout)
            if rc != 0:
                raise ProvisionError(step, f"install script exited with {rc}")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
