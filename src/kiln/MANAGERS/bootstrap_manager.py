"""
OS bootstrap: materializing a base distribution filesystem into a build root.
"""
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from ..errors import ProvisionError
from ..REGISTRY.tar_fetcher import TarFetcher

logger = logging.getLogger(__name__)


class Bootstrapper(ABC):
    """Base interface for distribution bootstrappers."""

    @abstractmethod
    def bootstrap(self, release: str, root: Path) -> None:
        """Lay down the base filesystem of ``release`` into ``root``."""


class UbuntuBootstrapper(Bootstrapper):
    """
    Bootstraps Ubuntu from the published core root tarballs, checked against
    the SHA256SUMS file published next to them.
    """

    def __init__(self, fetcher: TarFetcher, mirror: str, arch: str = "amd64"):
        """
        :param fetcher: Fetcher used for the tarball and its checksums.
        :param mirror: URL template with ``{release}`` and ``{arch}`` fields.
        :param arch: Debian architecture name.
        """
        self.fetcher = fetcher
        self.mirror = mirror
        self.arch = arch

    def image_url(self, release: str) -> str:
        return self.mirror.format(release=release, arch=self.arch)

    def published_checksum(self, url: str) -> Optional[str]:
        """
        Looks the tarball up in the SHA256SUMS file of its directory.
        Returns None if the file is not published.
        """
        base, _, filename = url.rpartition("/")
        sums_url = f"{base}/SHA256SUMS"
        try:
            sums = self.fetcher.read_text(sums_url)
        except ProvisionError as e:
            if e.transient or e.exhausted:
                raise
            logger.warning("No checksums published for %s (%s)", url, e.cause)
            return None
        for line in sums.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1].lstrip("*") == filename:
                return parts[0]
        logger.warning("%s is not listed in %s", filename, sums_url)
        return None

    def bootstrap(self, release: str, root: Path) -> None:
        url = self.image_url(release)
        archive = self.fetcher.fetch(url, self.published_checksum(url))
        self.fetcher.extract(archive, root, url=url)
        self._prepare_etc(root)
        logger.info("Bootstrapped Ubuntu %s into %s", release, root)

    def _prepare_etc(self, root: Path) -> None:
        """Make the fresh root usable for package installs inside a chroot."""
        resolv = root / "etc" / "resolv.conf"
        host_resolv = Path("/etc/resolv.conf")
        if host_resolv.exists() and not resolv.is_symlink():
            resolv.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(host_resolv, resolv)

        # Keep maintainer scripts from starting daemons during installs
        policy = root / "usr" / "sbin" / "policy-rc.d"
        policy.parent.mkdir(parents=True, exist_ok=True)
        policy.write_text("#!/bin/sh\nexit 101\n")
        policy.chmod(0o755)


class BootstrapManager:
    """
    Dispatches bootstrap steps to the bootstrapper for their distribution.
    """

    def __init__(self, bootstrappers: Dict[str, Bootstrapper]):
        self.bootstrappers = dict(bootstrappers)

    def bootstrap(self, distribution: str, release: str, root: Path) -> None:
        bootstrapper = self.bootstrappers.get(distribution)
        if bootstrapper is None:
            raise ProvisionError(f"!{distribution.capitalize()} {release}",
                                 f"no bootstrapper for {distribution}")
        bootstrapper.bootstrap(release, root)
