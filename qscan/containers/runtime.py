"""
Container runtime adapter.

The rest of qscan only needs two things from a container tool: run a
command inside an image, and dump the image filesystem into a directory.
New runtimes are added by implementing ContainerRuntime, not by branching
on the tool name.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from qscan.exceptions import ExecutionError, ExtractionError, RuntimeNotFoundError

logger = logging.getLogger(__name__)

RUNTIME_CANDIDATES = ("apptainer", "singularity")

# Pseudo filesystems that must not end up in the extracted root
EXTRACT_EXCLUDES = ("/proc", "/sys", "/dev", "/run", "/tmp")


class ContainerRuntime(ABC):
    """Capability interface over a container command-line tool."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short tool name, e.g. 'apptainer'."""

    @abstractmethod
    def exec(self, image: str, command: Sequence[str]) -> bytes:
        """
        Run a command inside an image without modifying it.

        Returns:
            The command's stdout

        Raises:
            ExecutionError: The command could not run or exited non-zero
        """

    @abstractmethod
    def extract_filesystem(self, image: str, dest_dir: str) -> None:
        """
        Materialize the image filesystem into dest_dir.

        Raises:
            ExtractionError: dest_dir is empty after extraction
        """


class ApptainerRuntime(ContainerRuntime):
    """Apptainer or its predecessor Singularity; both share the same CLI."""

    def __init__(self, binary: str, tar_binary: str = "tar", exec_timeout: Optional[float] = 120):
        """
        Initialize the runtime adapter.

        Args:
            binary: Absolute path of the apptainer/singularity executable
            tar_binary: Host tar used for the unpack stage
            exec_timeout: Timeout in seconds for exec probes
        """
        self.binary = binary
        self.tar_binary = tar_binary
        self.exec_timeout = exec_timeout

    @property
    def name(self) -> str:
        return os.path.basename(self.binary)

    def exec(self, image: str, command: Sequence[str]) -> bytes:
        args = [self.binary, "exec", image, *command]
        logger.debug(f"Running in image: {' '.join(args)}")

        try:
            proc = subprocess.run(args, capture_output=True, timeout=self.exec_timeout)
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(f"exec timed out after {self.exec_timeout}s") from e
        except OSError as e:
            raise ExecutionError(f"exec failed: {e}") from e

        if proc.returncode != 0:
            raise ExecutionError(
                f"exec failed with exit code {proc.returncode}",
                stderr=proc.stderr.decode(errors="replace"),
                returncode=proc.returncode,
            )
        return proc.stdout

    def serialize_command(self, image: str) -> List[str]:
        excludes = [f"--exclude={path}" for path in EXTRACT_EXCLUDES]
        return [self.binary, "exec", image, "tar", "-cf", "-", *excludes, "/"]

    def unpack_command(self, dest_dir: str) -> List[str]:
        return [self.tar_binary, "-xf", "-", "-C", dest_dir]

    def extract_filesystem(self, image: str, dest_dir: str) -> None:
        """
        Stream `tar -c` inside the image into `tar -x` on the host.

        Both stages run concurrently connected by a single pipe. Their exit
        codes are only looked at after both finish, so a failed run may leave
        a partial tree behind; the non-empty check below is the only gate.
        """
        # Stage stderr goes to spooled files so neither stage can block on it
        with tempfile.TemporaryFile() as serialize_err, tempfile.TemporaryFile() as unpack_err:
            read_fd, write_fd = os.pipe()
            try:
                try:
                    unpack = subprocess.Popen(
                        self.unpack_command(dest_dir),
                        stdin=read_fd,
                        stdout=subprocess.DEVNULL,
                        stderr=unpack_err,
                    )
                except OSError as e:
                    raise ExtractionError(f"failed to start extraction: {e}") from e

                try:
                    serialize = subprocess.Popen(
                        self.serialize_command(image),
                        stdin=subprocess.DEVNULL,
                        stdout=write_fd,
                        stderr=serialize_err,
                    )
                except OSError as e:
                    unpack.kill()
                    unpack.wait()
                    raise ExtractionError(f"failed to start tar in image: {e}") from e
            finally:
                # The children hold their own copies; ours must go so tar -x sees EOF
                os.close(read_fd)
                os.close(write_fd)

            serialize.wait()
            unpack.wait()

            for stage, proc, err in (
                ("serialize", serialize, serialize_err),
                ("unpack", unpack, unpack_err),
            ):
                if proc.returncode != 0:
                    err.seek(0)
                    message = err.read().decode(errors="replace").strip()
                    logger.debug(f"{stage} stage exited {proc.returncode}: {message}")

        try:
            entries = os.listdir(dest_dir)
        except OSError as e:
            raise ExtractionError(f"failed to read extracted directory: {e}") from e

        if not entries:
            raise ExtractionError(f"no files extracted from image {image}")

        logger.info(f"Extracted {image} into {dest_dir}")


def detect_runtime(candidates: Sequence[str] = RUNTIME_CANDIDATES) -> ContainerRuntime:
    """
    Find the container runtime installed on this host.

    Candidates are tried in order and the first one on PATH wins.

    Raises:
        RuntimeNotFoundError: None of the candidates is on PATH
    """
    for candidate in candidates:
        path = shutil.which(candidate)
        if path:
            logger.debug(f"Using container runtime {path}")
            return ApptainerRuntime(path)

    raise RuntimeNotFoundError(f"neither {' nor '.join(candidates)} found in PATH")


def count_files(directory: str) -> int:
    """Count regular files below directory, ignoring unreadable entries."""
    count = 0
    for _, _, files in os.walk(directory):
        count += len(files)
    return count
