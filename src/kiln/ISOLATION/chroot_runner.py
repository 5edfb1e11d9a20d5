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
Process execution inside a committed image or build root.

When running as root the child chroots into the image, optionally inside a
private mount namespace with the project directory bind-mounted at /work.
Without privileges, or with isolation disabled, the command runs on the host
with the prepared environment; this degraded mode is logged.
"""

import ctypes
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil

from ..errors import KilnError

logger = logging.getLogger(__name__)

WORK_DIR = "/work"

# Mount flags and namespace flags (linux/mount.h, linux/sched.h)
MS_BIND = 4096
MS_REC = 16384
MS_PRIVATE = 1 << 18
CLONE_NEWNS = 0x00020000


def _libc() -> ctypes.CDLL:
    return ctypes.CDLL("libc.so.6", use_errno=True)


def _check(ret: int, what: str) -> None:
    if ret != 0:
        errno = ctypes.get_errno()
        raise OSError(errno, f"{what}: {os.strerror(errno)}")


def _enter_root(root: str, workdir: str, bind_source: Optional[str]) -> Callable[[], None]:
    """Build the preexec hook that moves the child into ``root``."""

    def setup() -> None:
        if bind_source is not None:
            libc = _libc()
            _check(libc.unshare(CLONE_NEWNS), "unshare")
            _check(libc.mount(b"none", b"/", None, MS_REC | MS_PRIVATE, None),
                   "make mounts private")
            target = os.path.join(root, WORK_DIR.lstrip("/"))
            os.makedirs(target, exist_ok=True)
            _check(libc.mount(bind_source.encode("utf-8"), target.encode("utf-8"),
                              None, MS_BIND | MS_REC, None), "bind mount")
        os.chroot(root)
        os.chdir(workdir)

    return setup


class ChrootRunner:
    """
    Runs argv vectors with a fully specified environment inside a root
    directory. No shell is involved at any point.
    """

    def __init__(self,
                 isolation: str = "auto",
                 project_dir: Optional[str] = None,
                 bind_project: bool = True,
                 timeout: Optional[float] = None):
        """
        Initialize the runner.

        Args:
            isolation: "auto" (chroot when root), "chroot" (required) or "none".
            project_dir: Host directory exposed as /work.
            bind_project: Bind-mount ``project_dir`` at /work when chrooting.
            timeout: Default timeout in seconds for each run, None for no limit.
        """
        if isolation not in ("auto", "chroot", "none"):
            raise ValueError(f"Invalid isolation mode: {isolation}")
        self.isolation = isolation
        self.project_dir = str(Path(project_dir or os.getcwd()).resolve())
        self.bind_project = bind_project
        self.timeout = timeout
        self._is_linux = sys.platform.startswith("linux")
        self._is_root = hasattr(os, "geteuid") and os.geteuid() == 0

    @property
    def uses_chroot(self) -> bool:
        """Whether commands actually run chrooted into their root."""
        if self.isolation == "none":
            return False
        if self.isolation == "chroot":
            return True
        return self._is_linux and self._is_root

    def host_path(self, root: str, workdir: str) -> str:
        """Where ``workdir`` (a path inside the image) lives on the host."""
        if self.bind_project and (workdir == WORK_DIR or workdir.startswith(WORK_DIR + "/")):
            return os.path.join(self.project_dir, os.path.relpath(workdir, WORK_DIR))
        return os.path.join(root, workdir.lstrip("/"))

    def run(self,
            command: List[str],
            env: Dict[str, str],
            root: str,
            workdir: str = WORK_DIR,
            timeout: Optional[float] = None) -> int:
        """
        Run a command and wait for it.

        Args:
            command: Program and arguments.
            env: Complete environment for the child; nothing is inherited.
            root: Image or build root.
            workdir: Working directory, as a path inside the image.
            timeout: Overrides the runner's default timeout.

        Returns:
            The exit code, or 128 + signal number if the child was killed by a signal.
        """
        if not command:
            raise ValueError("Empty command")
        timeout = timeout if timeout is not None else self.timeout

        if self.uses_chroot:
            if not (self._is_linux and self._is_root):
                raise KilnError("chroot isolation requires running as root on Linux")
            bind_source = None
            if self.bind_project and (workdir == WORK_DIR or workdir.startswith(WORK_DIR + "/")):
                bind_source = self.project_dir
            popen_kwargs = {"preexec_fn": _enter_root(root, workdir, bind_source)}
            logger.debug("Running %s chrooted into %s", command, root)
        else:
            cwd = self.host_path(root, workdir)
            os.makedirs(cwd, exist_ok=True)
            popen_kwargs = {"cwd": cwd}
            logger.debug("Running %s on the host in %s (no isolation)", command, cwd)

        try:
            process = subprocess.Popen(
                command,
                env=env,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                **popen_kwargs,
            )
        except FileNotFoundError as e:
            raise KilnError(f"Command not found: {command[0]}") from e
        except (OSError, subprocess.SubprocessError) as e:
            raise KilnError(f"Failed to start {command[0]} in {root}: {e}") from e

        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self._terminate_tree(process)
            raise KilnError(f"{command[0]} timed out after {timeout}s") from e
        except KeyboardInterrupt:
            self._terminate_tree(process)
            raise

        if returncode < 0:
            return 128 - returncode
        return returncode

    @staticmethod
    def _terminate_tree(process: subprocess.Popen, grace: float = 10.0) -> None:
        """SIGTERM the child and its descendants, SIGKILL whatever survives."""
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return
        for proc in procs:
            try:
                proc.send_signal(signal.SIGTERM)
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=grace)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        process.wait()
