"""
Pytest configuration and shared fixtures for qscan tests.
"""

import logging
import os
import shutil
import stat
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from qscan.containers.runtime import ContainerRuntime
from qscan.core.models import ScanInvocationOptions
from qscan.exceptions import ExecutionError, ExtractionError

requires_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="needs /bin/sh")
requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="needs tar")

CONFIG_ENV_VARS = (
    "QUALYS_ACCESS_TOKEN",
    "QUALYS_POD",
    "SCAN_TYPES",
    "OUTPUT_DIR",
    "QSCAN_MODE",
    "QSCAN_FORMAT",
    "QSCAN_ENGINE",
    "QSCAN_ENGINE_ARCHIVE",
    "QSCAN_CACHE_DIR",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


def write_executable(path: Path, body: str) -> Path:
    """Write a shell script and mark it executable."""
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    """No qscan settings leak in from the developer's environment or home."""
    for var in CONFIG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CACHE_HOME", str(home / ".cache"))
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def fake_engine(tmp_path):
    """
    Factory for a fake qscanner.

    The script records its arguments and the token it received, optionally
    writes report files into --output-dir, and exits with the given code.
    """

    def factory(exit_code: int = 0, reports: Optional[List[str]] = None, sleep: float = 0,
                name: str = "qscanner") -> SimpleNamespace:
        args_file = tmp_path / f"{name}.args"
        token_file = tmp_path / f"{name}.token"
        touch = ""
        if reports:
            touch = "\n".join(f'[ -n "$out" ] && touch "$out/{r}"' for r in reports)
        body = f"""
out=""
prev=""
for a in "$@"; do
  if [ "$prev" = "--output-dir" ]; then out="$a"; fi
  prev="$a"
done
printf '%s\\n' "$@" > "{args_file}"
printf '%s' "$QUALYS_ACCESS_TOKEN" > "{token_file}"
{touch}
echo "engine stdout"
echo "engine stderr" >&2
{"exec sleep " + str(sleep) if sleep else ""}
exit {exit_code}
"""
        path = write_executable(tmp_path / name, body)
        return SimpleNamespace(
            path=str(path),
            args=lambda: args_file.read_text().splitlines(),
            token=lambda: token_file.read_text(),
            ran=lambda: args_file.exists(),
        )

    return factory


@pytest.fixture
def proc_tree(tmp_path):
    """
    Factory for a fake /proc mount.

    proc_tree.add(pid, os_release=...) creates <proc>/<pid>/root/etc and
    optionally an os-release file.
    """
    proc = tmp_path / "proc"
    proc.mkdir()

    def add(pid: int, os_release: Optional[str] = None, with_etc: bool = True) -> Path:
        root = proc / str(pid) / "root"
        root.mkdir(parents=True)
        if with_etc:
            (root / "etc").mkdir()
            if os_release is not None:
                (root / "etc" / "os-release").write_text(os_release)
        return root

    return SimpleNamespace(path=str(proc), add=add)


def fake_process(pid: int, cmdline: List[str], uid: Optional[int] = None) -> SimpleNamespace:
    """Stand-in for a psutil.Process yielded by process_iter(attrs=...)."""
    uid = os.getuid() if uid is None else uid
    return SimpleNamespace(info={"pid": pid, "cmdline": cmdline, "uids": (uid, uid, uid)})


class FakeRuntime(ContainerRuntime):
    """In-memory runtime: writes a small tree and answers uname."""

    def __init__(self, files: Optional[Dict[str, str]] = None, uname: Optional[bytes] = b"Linux node01 5.15.0 x86_64\n",
                 fail_extract: bool = False):
        self.files = files if files is not None else {"etc/os-release": 'NAME="Alpine Linux"\n', "bin/sh": ""}
        self.uname = uname
        self.fail_extract = fail_extract
        self.extracted_to: List[str] = []

    @property
    def name(self) -> str:
        return "fake"

    def exec(self, image, command):
        if self.uname is None:
            raise ExecutionError("exec failed with exit code 255", stderr="FATAL: no image", returncode=255)
        return self.uname

    def extract_filesystem(self, image, dest_dir):
        self.extracted_to.append(dest_dir)
        if self.fail_extract:
            raise ExtractionError(f"no files extracted from image {image}")
        for rel, content in self.files.items():
            target = Path(dest_dir) / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def sif_file(tmp_path):
    """An image file; contents do not matter to FakeRuntime."""
    path = tmp_path / "images" / "app.sif"
    path.parent.mkdir()
    path.write_bytes(b"SIF_MAGIC")
    return path


@pytest.fixture
def make_options(tmp_path):
    def factory(engine_path: str, **kwargs) -> ScanInvocationOptions:
        values = {
            "token": "secret-token",
            "pod": "US2",
            "scan_types": "pkg,fileinsight",
            "mode": "get-report",
            "output_dir": str(tmp_path / "reports"),
            "quiet": True,
        }
        values.update(kwargs)
        return ScanInvocationOptions(engine_path=engine_path, **values)

    return factory
