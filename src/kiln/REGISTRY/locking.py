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
Cross-process advisory locks on files in the cache directory.
"""

import fcntl
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..errors import KilnError


@contextmanager
def file_lock(lock_path: Path, shared: bool = False) -> Iterator[None]:
    """
    Holds an flock on ``lock_path`` for the duration of the block.

    Args:
        lock_path: Lock file; created if missing.
        shared: Take a shared lock instead of an exclusive one.
    """
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_handle = lock_path.open("a+", encoding="utf-8")
    except OSError as exc:
        raise KilnError(f"Failed to open lock file {lock_path}: {exc}") from exc
    try:
        try:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        except OSError as exc:
            raise KilnError(f"Failed to acquire lock {lock_path}: {exc}") from exc
        yield
    finally:
        try:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        lock_handle.close()

