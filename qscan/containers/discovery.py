"""
Discovery of running Apptainer/Singularity containers.

There is no container registry on an HPC host, so containers are found by
matching command lines in the process table against a list of signature
rules. The match is best-effort: unusual invocations will be missed and an
unrelated process can occasionally look like a container.
"""

import logging
import os
import pwd
import sys
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

import psutil

from qscan.core.models import ContainerProcessInfo, truncate
from qscan.exceptions import DiscoveryError, PlatformUnsupportedError

logger = logging.getLogger(__name__)

RUNTIME_NAMES = ("apptainer", "singularity")
RUNTIME_SUBCOMMANDS = (" run ", " exec ", " shell ", " instance ")
LAUNCHER_NAMES = ("starter-suid", "starter")
IMAGE_SUFFIX = ".sif"

COMMAND_MAX_LEN = 200


class SignatureRule(ABC):
    """Predicate over a process command line."""

    name: str = "rule"

    @abstractmethod
    def matches(self, cmdline: str) -> bool:
        """Return True if the command line looks like a container process."""


class RuntimeSubcommandRule(SignatureRule):
    """`apptainer exec ...`, `singularity run ...` and friends."""

    name = "runtime-subcommand"

    def __init__(
        self,
        runtimes: Sequence[str] = RUNTIME_NAMES,
        subcommands: Sequence[str] = RUNTIME_SUBCOMMANDS,
    ):
        self.runtimes = tuple(runtimes)
        self.subcommands = tuple(subcommands)

    def matches(self, cmdline: str) -> bool:
        lower = cmdline.lower()
        if not any(runtime in lower for runtime in self.runtimes):
            return False
        return any(sub in lower for sub in self.subcommands)


class LauncherRule(SignatureRule):
    """The privileged starter process that hosts the container."""

    name = "launcher"

    def __init__(
        self,
        launchers: Sequence[str] = LAUNCHER_NAMES,
        runtimes: Sequence[str] = RUNTIME_NAMES,
        image_suffix: str = IMAGE_SUFFIX,
    ):
        self.launchers = tuple(launchers)
        self.runtimes = tuple(runtimes)
        self.image_suffix = image_suffix

    def matches(self, cmdline: str) -> bool:
        lower = cmdline.lower()
        if not any(launcher in lower for launcher in self.launchers):
            return False
        # Image suffix is matched case-sensitively, runtime names are not
        if self.image_suffix in cmdline:
            return True
        return any(runtime in lower for runtime in self.runtimes)


DEFAULT_SIGNATURES: Sequence[SignatureRule] = (RuntimeSubcommandRule(), LauncherRule())


def is_container_process(cmdline: str, rules: Iterable[SignatureRule] = DEFAULT_SIGNATURES) -> bool:
    """Check a command line against signature rules."""
    return any(rule.matches(cmdline) for rule in rules)


def is_accessible(rootfs: str) -> bool:
    """
    Check whether a process root can be read by the current user.

    Permission failures are data here, not errors.
    """
    try:
        os.stat(os.path.join(rootfs, "etc"))
        return True
    except OSError:
        return False


def _lookup_user(uids) -> str:
    if not uids:
        return "unknown"
    uid = uids[0]
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


class ProcessDiscovery:
    """
    Enumerates live container processes.

    Results are produced fresh on every call; process state is never cached.
    """

    def __init__(
        self,
        rules: Optional[Sequence[SignatureRule]] = None,
        proc_root: str = "/proc",
        platform: Optional[str] = None,
    ):
        """
        Initialize process discovery.

        Args:
            rules: Signature rules (default: DEFAULT_SIGNATURES)
            proc_root: Mount point of the proc filesystem
            platform: Override for sys.platform (tests)
        """
        self.rules = tuple(rules) if rules is not None else tuple(DEFAULT_SIGNATURES)
        self.proc_root = proc_root
        self.platform = platform or sys.platform

    def process_root(self, pid: int) -> str:
        return os.path.join(self.proc_root, str(pid), "root")

    def list_containers(self) -> List[ContainerProcessInfo]:
        """
        List running container processes.

        Returns:
            One entry per matching PID, in process table order

        Raises:
            PlatformUnsupportedError: Not running on Linux
            DiscoveryError: The process table could not be enumerated
        """
        if not self.platform.startswith("linux"):
            raise PlatformUnsupportedError(
                f"container discovery only works on Linux (current platform: {self.platform})"
            )

        containers: List[ContainerProcessInfo] = []
        seen = set()

        try:
            processes = psutil.process_iter(attrs=["pid", "cmdline", "uids"])
            for proc in processes:
                try:
                    info = proc.info
                    pid = info["pid"]
                    cmdline = " ".join(info.get("cmdline") or [])
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue

                if not cmdline or pid in seen:
                    continue
                if not is_container_process(cmdline, self.rules):
                    continue
                seen.add(pid)

                rootfs = self.process_root(pid)
                containers.append(
                    ContainerProcessInfo(
                        pid=pid,
                        user=_lookup_user(info.get("uids")),
                        command=truncate(cmdline, COMMAND_MAX_LEN),
                        accessible=is_accessible(rootfs),
                        rootfs=rootfs,
                    )
                )
        except psutil.Error as e:
            raise DiscoveryError(f"failed to list processes: {e}") from e
        except OSError as e:
            raise DiscoveryError(f"failed to list processes: {e}") from e

        logger.debug(f"Discovered {len(containers)} container processes")
        return containers

    def find_by_name_pattern(self, pattern: str) -> List[ContainerProcessInfo]:
        """
        Find containers whose command line contains pattern (case-insensitive).

        An empty list means no match; enumeration failures still raise.
        """
        needle = pattern.lower()
        return [c for c in self.list_containers() if needle in c.command.lower()]
