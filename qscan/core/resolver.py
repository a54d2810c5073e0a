"""
Target resolution.

Turns a ScanTarget into a ResolvedRoot: a readable directory plus a
best-effort OS description for the engine.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from qscan.containers.discovery import ProcessDiscovery
from qscan.containers.runtime import ContainerRuntime, count_files
from qscan.core.models import UNKNOWN_OS, ResolvedRoot, RootOrigin, ScanTarget, TargetKind
from qscan.exceptions import ExecutionError, TargetAccessError, TargetNotFoundError

logger = logging.getLogger(__name__)

TEMP_PREFIX = "qscan-rootfs-"
OS_PROBE_COMMAND = ["uname", "-a"]


def read_os_release(rootfs: str) -> str:
    """
    Build an OS description from <rootfs>/etc/os-release.

    PRETTY_NAME is preferred, NAME is the fallback. Returns "Linux unknown"
    when the file is absent or has neither key.
    """
    path = os.path.join(rootfs, "etc", "os-release")
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError:
        return UNKNOWN_OS

    for key in ("PRETTY_NAME=", "NAME="):
        for line in lines:
            if line.startswith(key):
                value = line[len(key):].strip().strip('"').strip("'")
                if value:
                    return f"Linux {value}"

    return UNKNOWN_OS


class TargetResolver:
    """
    Resolves scan targets into filesystem roots.

    Holds no mutable state of its own, so distinct targets can be resolved
    from several threads at once.
    """

    def __init__(
        self,
        discovery: Optional[ProcessDiscovery] = None,
        runtime: Optional[ContainerRuntime] = None,
        runtime_factory: Optional[Callable[[], ContainerRuntime]] = None,
        proc_root: str = "/proc",
        temp_dir: Optional[str] = None,
        progress: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the resolver.

        Args:
            discovery: Process discovery used for name patterns
            runtime: Container runtime for image targets
            runtime_factory: Lazily creates the runtime the first time an image is resolved
            proc_root: Mount point of the proc filesystem
            temp_dir: Parent directory for extracted roots (default: system temp)
            progress: Callback receiving human-readable progress messages
        """
        self.discovery = discovery or ProcessDiscovery(proc_root=proc_root)
        self._runtime = runtime
        self._runtime_factory = runtime_factory
        self.proc_root = proc_root
        self.temp_dir = temp_dir
        self._progress = progress

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            if self._runtime_factory is None:
                raise ValueError("image targets need a container runtime")
            self._runtime = self._runtime_factory()
        return self._runtime

    def _report(self, message: str):
        logger.info(message)
        if self._progress:
            self._progress(message)

    def resolve(self, target: ScanTarget) -> ResolvedRoot:
        """
        Resolve a target into a filesystem root.

        An extracted-image root is a temporary directory the caller must
        remove; prefer the resolved() context manager.

        Raises:
            ResolutionError: The target does not exist or cannot be read
            RuntimeAdapterError: Extraction of an image failed
        """
        handlers = {
            TargetKind.IMAGE_PATH: self._resolve_image,
            TargetKind.PROCESS_ID: self._resolve_pid_target,
            TargetKind.PROCESS_NAME_PATTERN: self._resolve_name_pattern,
            TargetKind.DIRECT_PATH: self._resolve_directory,
        }
        return handlers[target.kind](target)

    @contextmanager
    def resolved(self, target: ScanTarget) -> Iterator[ResolvedRoot]:
        """Resolve a target and remove any extracted root on exit."""
        root = self.resolve(target)
        try:
            yield root
        finally:
            if root.is_temporary:
                self.discard(root)

    @staticmethod
    def discard(root: ResolvedRoot):
        logger.debug(f"Removing extracted root {root.path}")
        shutil.rmtree(root.path, ignore_errors=True)

    def _resolve_image(self, target: ScanTarget) -> ResolvedRoot:
        image = os.path.abspath(target.value)
        if not os.path.isfile(image):
            raise TargetNotFoundError(f"SIF file not found: {image}")

        runtime = self.runtime
        temp_root = tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=self.temp_dir)
        try:
            self._report(f"Extracting filesystem from {os.path.basename(image)}...")
            runtime.extract_filesystem(image, temp_root)
            if logger.isEnabledFor(logging.DEBUG) or self._progress:
                self._report(f"Extracted {count_files(temp_root)} files")

            self._report("Detecting OS information...")
            try:
                os_info = runtime.exec(image, OS_PROBE_COMMAND).decode(errors="replace").strip()
            except ExecutionError as e:
                logger.warning(f"OS probe failed for {image}: {e}")
                os_info = ""
        except BaseException:
            shutil.rmtree(temp_root, ignore_errors=True)
            raise

        return ResolvedRoot(
            path=Path(temp_root),
            origin=RootOrigin.EXTRACTED_IMAGE,
            os_description=os_info or UNKNOWN_OS,
        )

    def _resolve_pid_target(self, target: ScanTarget) -> ResolvedRoot:
        return self._resolve_pid(int(target.value))

    def _resolve_pid(self, pid: int, vanished_ok: bool = False) -> ResolvedRoot:
        proc_dir = os.path.join(self.proc_root, str(pid))
        if not os.path.exists(proc_dir):
            if vanished_ok:
                raise TargetNotFoundError(f"process {pid} exited before it could be scanned")
            raise TargetNotFoundError(f"process {pid} does not exist")

        rootfs = os.path.join(proc_dir, "root")
        try:
            os.stat(os.path.join(rootfs, "etc"))
        except OSError as e:
            raise TargetAccessError(
                f"cannot access {rootfs}: permission denied (try running as root or same user)"
            ) from e

        os_info = read_os_release(rootfs)
        self._report(f"Scanning running container (PID: {pid}), OS: {os_info}")

        return ResolvedRoot(
            path=Path(rootfs),
            origin=RootOrigin.LIVE_PROCESS,
            os_description=os_info,
            pid=pid,
        )

    def _resolve_name_pattern(self, target: ScanTarget) -> ResolvedRoot:
        matches = self.discovery.find_by_name_pattern(target.value)
        if not matches:
            raise TargetNotFoundError(f"no running container found matching: {target.value}")

        chosen = matches[0]
        notes = []
        if len(matches) > 1:
            pids = ", ".join(str(m.pid) for m in matches)
            notes.append(
                f"Multiple containers match '{target.value}' (PIDs {pids}); "
                f"using first match (PID {chosen.pid})"
            )
            logger.info(notes[-1])

        root = self._resolve_pid(chosen.pid, vanished_ok=True)
        root.notes.extend(notes)
        return root

    def _resolve_directory(self, target: ScanTarget) -> ResolvedRoot:
        path = os.path.abspath(target.value)
        if not os.path.exists(path):
            raise TargetNotFoundError(f"path not found: {path}")
        if not os.path.isdir(path):
            raise TargetNotFoundError(f"not a directory: {path}")
        return ResolvedRoot(path=Path(path), origin=RootOrigin.DIRECT)
