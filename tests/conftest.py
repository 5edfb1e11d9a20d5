"""
Shared fixtures: tarball builders and fake build/run services.
"""
import hashlib
import io
import tarfile
import threading
import time
from pathlib import Path

import pytest

from kiln.errors import ProvisionError
from kiln.MODELS.settings import Settings
from kiln.REGISTRY.image_cache import ImageCache


def _add(tar, kind, name, payload=None):
    info = tarfile.TarInfo(name)
    if kind == "file":
        data = payload if isinstance(payload, bytes) else payload.encode()
        info.size = len(data)
        info.mode = 0o755 if name.endswith(".sh") else 0o644
        tar.addfile(info, io.BytesIO(data))
    elif kind == "dir":
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        tar.addfile(info)
    elif kind == "symlink":
        info.type = tarfile.SYMTYPE
        info.linkname = payload
        tar.addfile(info)
    elif kind == "hardlink":
        info.type = tarfile.LNKTYPE
        info.linkname = payload
        tar.addfile(info)
    else:
        raise ValueError(kind)


@pytest.fixture
def make_tarball(tmp_path):
    """
    Returns ``build(name, entries) -> (path, sha256)`` where entries are
    ``(kind, name[, payload])`` tuples, kind in file/dir/symlink/hardlink.
    """
    out_dir = tmp_path / "archives"
    out_dir.mkdir(exist_ok=True)

    def build(name, entries):
        path = out_dir / name
        with tarfile.open(path, "w:gz") as tar:
            for entry in entries:
                _add(tar, *entry)
        return path, hashlib.sha256(path.read_bytes()).hexdigest()

    return build


class CountingExecutor:
    """Step executor double: records each step into the root and counts calls."""

    def __init__(self, delay=0.0, fail_on=None, failures=None):
        self.calls = []
        self.delay = delay
        self.fail_on = fail_on
        self.failures = list(failures or [])
        self._lock = threading.Lock()

    def apply(self, step, root):
        with self._lock:
            self.calls.append(step)
            failure = self.failures.pop(0) if self.failures else None
        if self.delay:
            time.sleep(self.delay)
        if failure is not None:
            raise failure
        if self.fail_on is not None and step == self.fail_on:
            raise ProvisionError(step, "simulated failure")
        with open(Path(root) / "steps.log", "a") as f:
            f.write(step.describe() + "\n")


class RecordingRunner:
    """Process runner double: records invocations and returns a fixed exit code."""

    uses_chroot = False

    def __init__(self, exit_code=0):
        self.exit_code = exit_code
        self.calls = []

    def run(self, command, env, root, workdir="/work", timeout=None):
        self.calls.append({"command": list(command), "env": dict(env),
                           "root": root, "workdir": workdir})
        return self.exit_code


@pytest.fixture
def counting_executor():
    return CountingExecutor()


@pytest.fixture
def recording_runner():
    return RecordingRunner()


@pytest.fixture
def cache(tmp_path):
    image_cache = ImageCache(str(tmp_path / "cache"))
    image_cache.open()
    yield image_cache
    image_cache.close()


@pytest.fixture
def settings(tmp_path):
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return Settings.load(project_dir=str(project), environ={},
                         cache_dir=str(tmp_path / "cache"),
                         isolation="none", retry_backoff=0)


@pytest.fixture
def make_executor():
    return CountingExecutor
