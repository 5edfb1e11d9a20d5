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
Local image cache management.
Stores committed container images keyed by fingerprint, plus the download
cache and lock files used while building them.

Layout::

    <cache_dir>/index.json          fingerprint -> image entry
    <cache_dir>/images/<fp>/        committed image roots
    <cache_dir>/tmp/                build roots under construction
    <cache_dir>/downloads/          fetched archives
    <cache_dir>/locks/              per-fingerprint lock files
"""

import json
import logging
import os
import shutil
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import psutil

from ..errors import KilnError
from ..MODELS.build_image import BuildImage
from .locking import file_lock

logger = logging.getLogger(__name__)


class ImageCache:
    """
    Content-addressed store of committed images.

    A fingerprint only appears in the index after its image directory has
    been renamed into place, so readers never see a half-written image.
    """

    def __init__(self, cache_dir: str):
        """
        Initialize the image cache.

        Args:
            cache_dir: Directory for cache storage.
        """
        self.cache_dir = Path(cache_dir)
        self.images_dir = self.cache_dir / "images"
        self.tmp_dir = self.cache_dir / "tmp"
        self.downloads_dir = self.cache_dir / "downloads"
        self.locks_dir = self.cache_dir / "locks"
        self.index_file = self.cache_dir / "index.json"
        self._index_lock = self.locks_dir / "index.lock"
        self._opened = False

    # Lifecycle

    def open(self) -> "ImageCache":
        """Create the cache layout and reclaim abandoned build roots."""
        for d in (self.images_dir, self.tmp_dir, self.downloads_dir, self.locks_dir):
            d.mkdir(parents=True, exist_ok=True)
        self._opened = True
        self.collect_garbage()
        return self

    def close(self) -> None:
        """Close the cache. Index writes are already durable at this point."""
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def __enter__(self) -> "ImageCache":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _check_open(self) -> None:
        if not self._opened:
            raise KilnError(f"Image cache {self.cache_dir} is not open")

    # Index

    def _load_index(self) -> Dict[str, Any]:
        """Load the cache index from disk."""
        if self.index_file.exists():
            try:
                with open(self.index_file, 'r') as f:
                    index = json.load(f)
                if isinstance(index, dict) and isinstance(index.get("images"), dict):
                    return index
                logger.warning("Ignoring malformed cache index %s", self.index_file)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Ignoring unreadable cache index %s: %s", self.index_file, e)
        return {"images": {}}

    def _save_index(self, index: Dict[str, Any]) -> None:
        """Atomically replace the index file."""
        tmp_file = self.index_file.with_name(f".index.{os.getpid()}.{uuid.uuid4().hex[:8]}.json")
        with open(tmp_file, 'w') as f:
            json.dump(index, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, self.index_file)

    def _update_index(self, update: Callable[[Dict[str, Any]], None]) -> None:
        with file_lock(self._index_lock):
            index = self._load_index()
            update(index)
            self._save_index(index)

    # Images

    @contextmanager
    def lock(self, fingerprint: str) -> Iterator[None]:
        """Exclusive cross-process lock for building or modifying one fingerprint."""
        with file_lock(self.locks_dir / f"{fingerprint}.lock"):
            yield

    def image_path(self, fingerprint: str) -> Path:
        return self.images_dir / fingerprint

    def lookup(self, fingerprint: str) -> Optional[BuildImage]:
        """
        Get a committed image.

        Args:
            fingerprint: Container fingerprint.

        Returns:
            BuildImage if committed and still present, None otherwise.
        """
        self._check_open()
        info = self._load_index()["images"].get(fingerprint)
        if info is None:
            return None
        if not Path(info["path"]).is_dir():
            logger.debug("Image %s listed in index but missing on disk", fingerprint[:12])
            return None
        return BuildImage(**info)

    def allocate_build_root(self, fingerprint: str) -> Path:
        """Create a fresh, empty build root under tmp/."""
        self._check_open()
        root = self.tmp_dir / f"{fingerprint[:16]}.{os.getpid()}.{uuid.uuid4().hex[:8]}"
        root.mkdir(parents=True)
        return root

    def discard(self, build_root: Path) -> None:
        """Remove an uncommitted build root."""
        if build_root.exists():
            logger.debug("Discarding build root %s", build_root)
            shutil.rmtree(build_root, ignore_errors=True)

    def commit(self, fingerprint: str, container: str, build_root: Path) -> BuildImage:
        """
        Publish a finished build root as the image for ``fingerprint``.
        The caller must hold ``lock(fingerprint)``.

        Args:
            fingerprint: Container fingerprint.
            container: Container name, for listings.
            build_root: Completed build root under tmp/.

        Returns:
            The committed BuildImage.
        """
        self._check_open()
        target = self.image_path(fingerprint)
        trash = None
        if target.exists():
            # Previous image for a forced rebuild, or an orphan from a crash
            # between rename and index update.
            trash = self.tmp_dir / f"trash.{os.getpid()}.{uuid.uuid4().hex[:8]}"
            os.rename(target, trash)
        os.rename(build_root, target)

        entry = {
            "fingerprint": fingerprint,
            "container": container,
            "path": str(target),
            "created": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "size": self._calculate_dir_size(target),
        }

        def add(index: Dict[str, Any]) -> None:
            index["images"][fingerprint] = entry

        self._update_index(add)
        if trash is not None:
            shutil.rmtree(trash, ignore_errors=True)
        logger.info("Committed image %s for container %s", fingerprint[:12], container)
        return BuildImage(**entry)

    def remove_image(self, fingerprint: str) -> bool:
        """
        Remove an image from the cache.

        Args:
            fingerprint: Image fingerprint

        Returns:
            True if removed, False if not found
        """
        self._check_open()
        with self.lock(fingerprint):
            removed = []

            def drop(index: Dict[str, Any]) -> None:
                if index["images"].pop(fingerprint, None) is not None:
                    removed.append(fingerprint)

            self._update_index(drop)
            image_dir = self.image_path(fingerprint)
            if image_dir.exists():
                shutil.rmtree(image_dir, ignore_errors=True)
                return True
        return bool(removed)

    def list_images(self) -> List[BuildImage]:
        """
        List all committed images.

        Returns:
            List of BuildImage objects
        """
        self._check_open()
        images = []
        for info in self._load_index()["images"].values():
            if Path(info["path"]).is_dir():
                images.append(BuildImage(**info))
        return sorted(images, key=lambda image: (image.container, image.created))

    def prune(self, keep: Iterable[str]) -> Dict[str, int]:
        """
        Remove every image whose fingerprint is not in ``keep``.

        Returns:
            Statistics about removed items
        """
        keep = set(keep)
        removed_images = 0
        freed_bytes = 0
        for image in self.list_images():
            if image.fingerprint in keep:
                continue
            if self.remove_image(image.fingerprint):
                removed_images += 1
                freed_bytes += image.size
        return {"removed_images": removed_images, "freed_bytes": freed_bytes}

    def collect_garbage(self) -> int:
        """
        Reclaim build roots left behind by processes that no longer exist,
        and image directories that never made it into the index.

        Returns:
            Number of directories removed.
        """
        self._check_open()
        removed = 0
        for entry in self.tmp_dir.iterdir():
            parts = entry.name.split(".")
            try:
                pid = int(parts[1])
            except (IndexError, ValueError):
                pid = None
            if pid == os.getpid() or (pid is not None and psutil.pid_exists(pid)):
                continue
            logger.debug("Reclaiming abandoned build root %s", entry)
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink()
            removed += 1

        indexed = set(self._load_index()["images"])
        for entry in self.images_dir.iterdir():
            if entry.name in indexed:
                continue
            with self.lock(entry.name):
                if entry.name in self._load_index()["images"] or not entry.exists():
                    continue
                logger.debug("Reclaiming uncommitted image directory %s", entry)
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        return removed

    def get_cache_size(self) -> int:
        """Get total cache size in bytes."""
        return self._calculate_dir_size(self.cache_dir)

    def _calculate_dir_size(self, path: Path) -> int:
        """Calculate the total size of a directory, not following symlinks."""
        total = 0
        for dirpath, _, filenames in os.walk(path):
            for name in filenames:
                try:
                    st = os.lstat(os.path.join(dirpath, name))
                except OSError:
                    continue
                total += st.st_size
        return total

    @staticmethod
    def format_size(size_bytes: float) -> str:
        """Format a size in bytes to human readable string."""
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if size_bytes < 1024:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024
        return f"{size_bytes:.1f} PB"
