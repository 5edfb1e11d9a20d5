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
Fetching and unpacking of tarballs.
Downloads are verified against a sha256 checksum when one is declared, and
extraction refuses any entry that would land outside its destination root.
"""

import hashlib
import logging
import os
import re
import socket
import tarfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import unquote, urlparse
from urllib.request import Request, urlopen

from .. import __version__
from ..errors import IntegrityError, ProvisionError
from ..MODELS.spec_model import normalize_sha256
from ..UTILS.retry import transient_retrying

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16

# Same bound as the kernel's MAXSYMLINKS
MAX_LINK_HOPS = 40

# Extraction filters exist from 3.10.12 and 3.11.4 on
_EXTRACT_OPTIONS = {"filter": "fully_trusted"} if hasattr(tarfile, "fully_trusted_filter") else {}


def sha256_file(path: Path) -> str:
    """Hex sha256 of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _escapes(relative: str) -> bool:
    norm = os.path.normpath(relative)
    return norm == ".." or norm.startswith(".." + os.sep)


def _strip_dot(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


def _components(path: str):
    return [p for p in path.split(os.sep) if p not in ("", ".")]


def resolve_in_root(relative: str, root: str) -> Optional[str]:
    """
    Resolve ``relative`` below ``root`` the way the path resolves inside the
    image: links are followed, and absolute link targets start over at
    ``root`` rather than at the host's ``/``.

    Returns:
        The host path, free of links up to its last existing component, or
        None when the path climbs above ``root`` or loops.
    """
    pending = _components(relative)
    resolved = []
    hops = 0
    while pending:
        part = pending.pop(0)
        if part == "..":
            if not resolved:
                return None
            resolved.pop()
            continue
        candidate = os.path.join(root, *resolved, part)
        if not os.path.islink(candidate):
            resolved.append(part)
            continue
        hops += 1
        if hops > MAX_LINK_HOPS:
            return None
        target = os.readlink(candidate)
        if os.path.isabs(target):
            resolved = []
        pending = _components(target) + pending
    return os.path.join(root, *resolved)


class TarFetcher:
    """
    Fetches archives into the download cache and extracts them safely.
    """

    def __init__(self,
                 downloads_dir: Path,
                 timeout: float = 60.0,
                 retry_attempts: int = 3,
                 retry_backoff: float = 1.0):
        """
        Initialize the fetcher.

        Args:
            downloads_dir: Directory where fetched archives are kept.
            timeout: Socket timeout for network fetches, in seconds.
            retry_attempts: Attempts for transient network failures.
            retry_backoff: Backoff multiplier between attempts, in seconds.
        """
        self.downloads_dir = Path(downloads_dir)
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def cache_path(self, url: str) -> Path:
        """Location of the cached download for ``url``."""
        key = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
        basename = os.path.basename(unquote(urlparse(url).path)) or "download"
        basename = re.sub(r"[^A-Za-z0-9._-]", "_", basename)
        return self.downloads_dir / f"{key}-{basename}"

    def fetch(self, url: str, expected: Optional[str] = None) -> Path:
        """
        Fetch ``url`` and return the local path of its content.

        Args:
            url: http(s)://, file:// URL or a local path.
            expected: sha256 the content must have. Without it the content is
                trusted as-is.

        Returns:
            Path of the verified archive in the download cache.

        Raises:
            IntegrityError: The content does not match ``expected``.
            ProvisionError: The content could not be fetched.
        """
        expected = normalize_sha256(expected)
        cached = self.cache_path(url)

        if cached.exists():
            if expected is None:
                logger.debug("Using cached download for %s", url)
                return cached
            actual = sha256_file(cached)
            if actual == expected:
                logger.debug("Using verified cached download for %s", url)
                return cached
            logger.warning("Cached download of %s is corrupt, fetching again", url)
            cached.unlink()

        with self._give_up_after_retries():
            for attempt in transient_retrying(self.retry_attempts, self.retry_backoff):
                with attempt:
                    part, actual = self._download(url)

        if expected is not None and actual != expected:
            part.unlink()
            raise IntegrityError(url, expected=expected, actual=actual)
        if expected is None:
            logger.warning("No checksum declared for %s; trusting content %s", url, actual)

        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        os.replace(part, cached)
        return cached

    def read_text(self, url: str) -> str:
        """Read a small text resource without caching it."""
        with self._give_up_after_retries():
            for attempt in transient_retrying(self.retry_attempts, self.retry_backoff):
                with attempt:
                    with self._open(url) as source:
                        return source.read().decode("utf-8", errors="replace")

    @contextmanager
    def _give_up_after_retries(self):
        """
        Turn a transient failure that outlived its retries into a final one,
        so callers further up do not retry the same fetch again.
        """
        try:
            yield
        except ProvisionError as e:
            if not e.transient:
                raise
            raise ProvisionError(
                e.step, f"{e.cause} (gave up after {self.retry_attempts} attempts)",
                exhausted=True) from e

    def _download(self, url: str) -> Tuple[Path, str]:
        """Stream ``url`` into a temporary file while hashing it."""
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        part = self.downloads_dir / f".part.{os.getpid()}.{uuid.uuid4().hex[:8]}"
        digest = hashlib.sha256()
        logger.info("Fetching %s", url)
        try:
            with self._open(url) as source, open(part, "wb") as f:
                for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                    digest.update(chunk)
                    f.write(chunk)
        except BaseException:
            if part.exists():
                part.unlink()
            raise
        return part, digest.hexdigest()

    def _open(self, url: str):
        parsed = urlparse(url)
        step = f"fetch {url}"
        if parsed.scheme in ("http", "https"):
            request = Request(url, headers={"User-Agent": f"kiln/{__version__}"})
            try:
                return urlopen(request, timeout=self.timeout)
            except HTTPError as e:
                transient = e.code >= 500 or e.code == 429
                raise ProvisionError(step, f"HTTP {e.code} {e.reason}", transient=transient) from e
            except (URLError, socket.timeout, ConnectionError, TimeoutError) as e:
                raise ProvisionError(step, e, transient=True) from e
        if parsed.scheme == "file":
            path = unquote(parsed.path)
        elif parsed.scheme == "":
            path = url
        else:
            raise ProvisionError(step, f"unsupported URL scheme {parsed.scheme!r}")
        try:
            return open(path, "rb")
        except OSError as e:
            raise ProvisionError(step, e) from e

    def extract(self, archive: Path, dest: Path, url: Optional[str] = None,
                root: Optional[Path] = None) -> int:
        """
        Extract a tarball into ``dest``.

        Every entry is checked before anything is written: absolute names,
        ``..`` escapes and links leading out of the image root are rejected.
        Absolute symlink targets are kept, they resolve inside the image.
        Links already present below ``root`` are followed the way they
        resolve inside the image, so an entry never lands on the host path
        an absolute link names.

        Args:
            archive: Path to the tarball (any compression tarfile understands).
            dest: Destination directory.
            url: Origin of the archive, for error messages.
            root: Image root containing ``dest``. Defaults to ``dest``.

        Returns:
            Number of entries extracted.

        Raises:
            IntegrityError: An entry would escape the image root.
        """
        url = url or str(archive)
        root = Path(root) if root is not None else Path(dest)
        root.mkdir(parents=True, exist_ok=True)
        root_real = os.path.realpath(root)
        dest_relative = os.path.relpath(os.path.abspath(dest), os.path.abspath(root))
        if _escapes(dest_relative):
            raise IntegrityError(url, detail=f"destination {dest} is outside the image root")
        dest_real = resolve_in_root(dest_relative, root_real)
        if dest_real is None:
            raise IntegrityError(url, detail=f"destination {dest} leads outside the image root")
        os.makedirs(dest_real, exist_ok=True)
        dest_in_root = os.path.relpath(dest_real, root_real)
        is_root = os.geteuid() == 0
        count = 0

        def locate(name: str, what: str) -> str:
            parent = resolve_in_root(os.path.join(dest_in_root, os.path.dirname(name)), root_real)
            if parent is None:
                raise IntegrityError(
                    url, detail=f"{what} {name!r} is written through a link "
                                f"leading outside the image root")
            return os.path.join(parent, os.path.basename(name))

        try:
            with tarfile.open(archive, mode="r:*") as tar:
                members = tar.getmembers()
                for member in members:
                    self._check_member(member, url)

                for member in members:
                    if member.name in ("", "."):
                        continue
                    if (member.ischr() or member.isblk() or member.isfifo()) and not is_root:
                        logger.debug("Skipping device entry %s (not running as root)", member.name)
                        continue
                    target = locate(member.name, "entry")
                    if os.path.islink(target):
                        if member.isdir():
                            if resolve_in_root(os.path.relpath(target, root_real), root_real) is None:
                                raise IntegrityError(
                                    url, detail=f"directory {member.name!r} replaces a link "
                                                f"leading outside the image root")
                            continue
                        os.unlink(target)
                    if member.islnk():
                        member.linkname = os.path.relpath(
                            locate(member.linkname, "hard link target"), root_real)
                    member.name = os.path.relpath(target, root_real)
                    tar.extract(member, root_real, numeric_owner=True, **_EXTRACT_OPTIONS)
                    count += 1
        except tarfile.TarError as e:
            raise ProvisionError(f"extract {url}", e) from e
        return count

    @staticmethod
    def _check_member(member: tarfile.TarInfo, url: str) -> None:
        """Normalize a member's name in place, or reject it."""
        name = _strip_dot(member.name)
        if name in ("", "."):
            member.name = ""
            return
        if os.path.isabs(name) or _escapes(name):
            raise IntegrityError(url, detail=f"entry {member.name!r} escapes the destination")
        member.name = os.path.normpath(name)

        if member.issym():
            target = member.linkname
            if not os.path.isabs(target) and _escapes(
                    os.path.join(os.path.dirname(member.name), target)):
                raise IntegrityError(
                    url, detail=f"symlink {member.name!r} -> {target!r} escapes the destination")
        elif member.islnk():
            target = _strip_dot(member.linkname)
            if os.path.isabs(target) or _escapes(target):
                raise IntegrityError(
                    url, detail=f"hard link {member.name!r} -> {member.linkname!r} "
                                f"escapes the destination")
            member.linkname = os.path.normpath(target)
