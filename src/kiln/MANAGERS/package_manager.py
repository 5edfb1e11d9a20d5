"""
Package installation into a build root with the distribution's own tools.
"""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ProvisionError
from ..ISOLATION.chroot_runner import ChrootRunner
from .environment_manager import DEFAULT_PATH

logger = logging.getLogger(__name__)


def detect_distribution(root: Path) -> Optional[str]:
    """Reads the ``ID`` field of the root's os-release file."""
    for candidate in ("etc/os-release", "usr/lib/os-release"):
        path = root / candidate
        if not path.is_file():
            continue
        for line in path.read_text(errors="replace").splitlines():
            if line.startswith("ID="):
                return line[3:].strip().strip('"\'').lower()
    return None


class PackageManager(ABC):
    """Base interface for package managers."""

    @abstractmethod
    def install(self, packages: List[str], root: Path) -> None:
        """Install ``packages`` into ``root``, resolving dependencies."""


class AptPackageManager(PackageManager):
    """
    Installs Debian packages by running apt-get chrooted into the build root.
    """

    def __init__(self, runner: ChrootRunner, timeout: Optional[float] = None):
        self.runner = runner
        self.timeout = timeout
        self.env = {
            "PATH": DEFAULT_PATH,
            "DEBIAN_FRONTEND": "noninteractive",
            "LANG": "C.UTF-8",
            "HOME": "/root",
        }

    def _has_lists(self, root: Path) -> bool:
        lists = root / "var" / "lib" / "apt" / "lists"
        return lists.is_dir() and any(lists.glob("*_Packages*"))

    def _apt(self, args: List[str], root: Path) -> int:
        return self.runner.run(["apt-get", *args], self.env, str(root),
                               workdir="/", timeout=self.timeout)

    def install(self, packages: List[str], root: Path) -> None:
        step = f"!Install [{', '.join(packages)}]"
        if not self.runner.uses_chroot:
            raise ProvisionError(step, "installing packages requires chroot isolation "
                                       "(run as root, isolation 'auto' or 'chroot')")
        if not self._has_lists(root):
            rc = self._apt(["update"], root)
            if rc != 0:
                # Almost always a mirror or network problem
                raise ProvisionError(step, f"apt-get update exited with {rc}", transient=True)

        logger.info("Installing %d packages into %s", len(packages), root)
        rc = self._apt(["install", "-y", "--no-install-recommends", *packages], root)
        if rc != 0:
            raise ProvisionError(step, f"apt-get install exited with {rc}")
        self._apt(["clean"], root)


class PackageManagerRegistry:
    """
    Selects the package manager matching a build root's distribution.
    """

    def __init__(self, managers: Dict[str, PackageManager]):
        """
        :param managers: Distribution ID (as in os-release) -> manager.
        """
        self.managers = dict(managers)

    def install(self, packages: List[str], root: Path) -> None:
        distribution = detect_distribution(root)
        manager = self.managers.get(distribution) if distribution else None
        if manager is None:
            raise ProvisionError(
                f"!Install [{', '.join(packages)}]",
                f"no package manager for distribution {distribution or 'unknown'} in {root}")
        manager.install(packages, root)
