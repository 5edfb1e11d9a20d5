import os

import pytest

from kiln.BUILDERS.build_planner import BuildPlanner
from kiln.BUILDERS.step_executor import StepExecutor
from kiln.errors import IntegrityError
from kiln.ISOLATION.chroot_runner import ChrootRunner
from kiln.MANAGERS.bootstrap_manager import BootstrapManager
from kiln.MANAGERS.package_manager import PackageManagerRegistry
from kiln.MODELS.spec_model import Container, TarExtract
from kiln.REGISTRY.tar_fetcher import TarFetcher


@pytest.fixture
def fetcher(tmp_path):
    return TarFetcher(tmp_path / "downloads", retry_attempts=1, retry_backoff=0)


@pytest.fixture
def dest(tmp_path):
    path = tmp_path / "sandbox" / "root"
    path.mkdir(parents=True)
    return path


def _nothing_outside(tmp_path):
    return not (tmp_path / "sandbox" / "evil").exists() and not (tmp_path / "evil").exists()


@pytest.mark.parametrize("entries", [
    [("file", "../evil", "x")],
    [("file", "a/../../evil", "x")],
    [("file", "ok", "fine"), ("file", "../../evil", "x")],
])
def test_path_traversal_rejected(fetcher, make_tarball, dest, tmp_path, entries):
    """Entries climbing out of the destination abort the extraction."""
    path, _ = make_tarball("traversal.tar.gz", entries)
    with pytest.raises(IntegrityError):
        fetcher.extract(path, dest)
    assert _nothing_outside(tmp_path)
    # Validation happens before anything is written
    assert list(dest.iterdir()) == []


def test_absolute_name_rejected(fetcher, make_tarball, dest, tmp_path):
    target = tmp_path / "evil"
    path, _ = make_tarball("absolute.tar.gz", [("file", str(target), "x")])
    with pytest.raises(IntegrityError):
        fetcher.extract(path, dest)
    assert not target.exists()


def test_relative_symlink_escape_rejected(fetcher, make_tarball, dest):
    path, _ = make_tarball("link.tar.gz", [("symlink", "sub/link", "../../../etc")])
    with pytest.raises(IntegrityError):
        fetcher.extract(path, dest)


def test_write_through_symlink_rejected(fetcher, make_tarball, dest, tmp_path):
    """A file placed below a link must not land where the link points."""
    outside = tmp_path / "sandbox" / "outside"
    outside.mkdir()
    os.symlink("../outside", dest / "escape")
    path, _ = make_tarball("through.tar.gz", [("file", "escape/evil", "x")])

    with pytest.raises(IntegrityError):
        fetcher.extract(path, dest)
    assert list(outside.iterdir()) == []


def test_absolute_link_cannot_reach_host(fetcher, make_tarball, dest, tmp_path):
    """An absolute link names a path in the image, never the host path of the same name."""
    outside = tmp_path / "sandbox" / "outside"
    outside.mkdir()
    os.symlink(outside, dest / "escape")
    path, _ = make_tarball("through.tar.gz", [("file", "escape/evil", "x")])

    fetcher.extract(path, dest)

    assert list(outside.iterdir()) == []
    assert (dest / str(outside).lstrip("/") / "evil").read_text() == "x"


def test_hardlink_escape_rejected(fetcher, make_tarball, dest):
    path, _ = make_tarball("hardlink.tar.gz", [("hardlink", "passwd", "../../etc/passwd")])
    with pytest.raises(IntegrityError):
        fetcher.extract(path, dest)
    assert not (dest / "passwd").exists()


def test_absolute_hardlink_rejected(fetcher, make_tarball, dest):
    path, _ = make_tarball("hardlink.tar.gz", [("hardlink", "passwd", "/etc/passwd")])
    with pytest.raises(IntegrityError):
        fetcher.extract(path, dest)


def test_absolute_symlink_stays_inside(fetcher, make_tarball, dest):
    """Absolute link targets are legitimate: they resolve inside the image."""
    path, _ = make_tarball("abs.tar.gz", [("symlink", "sh", "/bin/dash")])
    fetcher.extract(path, dest)
    assert os.readlink(dest / "sh") == "/bin/dash"


def test_corrupted_download_never_installed(cache, make_tarball, tmp_path):
    """Flipping one byte of a verified archive aborts the build with nothing committed."""
    path, digest = make_tarball("tool.tar.gz", [("file", "bin/tool", "payload")])
    data = bytearray(path.read_bytes())
    data[len(data) // 2] ^= 0xFF
    path.write_bytes(bytes(data))

    fetcher = TarFetcher(cache.downloads_dir, retry_attempts=1, retry_backoff=0)
    executor = StepExecutor(BootstrapManager({}), PackageManagerRegistry({}), fetcher,
                            ChrootRunner(isolation="none", project_dir=str(tmp_path)))
    planner = BuildPlanner(cache, executor, retry_backoff=0)
    container = Container(name="tools",
                          setup=[TarExtract(url=str(path), sha256=digest, path="/opt")])

    with pytest.raises(IntegrityError):
        planner.ensure_image(container)

    assert cache.lookup(planner.fingerprint(container)) is None
    assert list(cache.images_dir.iterdir()) == []
    assert list(cache.tmp_dir.iterdir()) == []
    assert not fetcher.cache_path(str(path)).exists()


def test_command_injection_attempt(tmp_path):
    """Arguments are passed to the program, never to a shell."""
    runner = ChrootRunner(isolation="none", project_dir=str(tmp_path))
    injected = tmp_path / "injected.txt"
    command = ["echo", "hello", ";", "touch", str(injected), "&&", "touch", str(injected)]

    assert runner.run(command, {"PATH": "/usr/bin:/bin"}, str(tmp_path)) == 0
    assert not injected.exists(), "Command injection successful! Security vulnerability found."

