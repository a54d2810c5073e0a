"""
Core data models for qscan.

This module defines the data structures passed between target resolution,
engine orchestration and result rendering.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


UNKNOWN_OS = "Linux unknown"


class TargetKind(str, Enum):
    """What a user-supplied identifier refers to."""
    IMAGE_PATH = "image_path"
    PROCESS_ID = "process_id"
    PROCESS_NAME_PATTERN = "process_name_pattern"
    DIRECT_PATH = "direct_path"


class RootOrigin(str, Enum):
    """Where a resolved filesystem root came from."""
    EXTRACTED_IMAGE = "extracted-image"
    LIVE_PROCESS = "live-process"
    DIRECT = "direct"


_RESULT_TYPES = {
    TargetKind.IMAGE_PATH: "sif",
    TargetKind.PROCESS_ID: "running",
    TargetKind.PROCESS_NAME_PATTERN: "running",
    TargetKind.DIRECT_PATH: "rootfs",
}


@dataclass(frozen=True)
class ScanTarget:
    """
    Identifies what is to be scanned.

    Attributes:
        kind: Which resolution path applies
        value: Image path, PID, name pattern or directory, as given by the user
    """
    kind: TargetKind
    value: str

    @classmethod
    def image(cls, path: str) -> "ScanTarget":
        return cls(TargetKind.IMAGE_PATH, str(path))

    @classmethod
    def pid(cls, pid: int) -> "ScanTarget":
        return cls(TargetKind.PROCESS_ID, str(int(pid)))

    @classmethod
    def name_pattern(cls, pattern: str) -> "ScanTarget":
        return cls(TargetKind.PROCESS_NAME_PATTERN, pattern)

    @classmethod
    def directory(cls, path: str) -> "ScanTarget":
        return cls(TargetKind.DIRECT_PATH, str(path))

    @classmethod
    def parse_running(cls, text: str) -> "ScanTarget":
        """A bare number is a PID, anything else is a command line pattern."""
        text = text.strip()
        if text.isascii() and text.isdigit():
            return cls.pid(int(text))
        return cls.name_pattern(text)

    @property
    def result_type(self) -> str:
        return _RESULT_TYPES[self.kind]

    def __str__(self) -> str:
        return self.value


@dataclass
class ResolvedRoot:
    """
    A concrete filesystem root ready to be handed to the engine.

    Attributes:
        path: Directory the engine scans
        origin: How the root was obtained
        os_description: Best-effort OS string, e.g. "Linux Ubuntu 22.04.1 LTS"
        pid: Process ID for live-process roots
        notes: Informational messages for the operator (e.g. ambiguous matches)
    """
    path: Path
    origin: RootOrigin
    os_description: str = ""
    pid: Optional[int] = None
    notes: List[str] = field(default_factory=list)

    @property
    def is_temporary(self) -> bool:
        return self.origin == RootOrigin.EXTRACTED_IMAGE


@dataclass
class ContainerProcessInfo:
    """A live process recognized as a container runtime instance."""
    pid: int
    user: str
    command: str
    accessible: bool
    rootfs: str

    def display_command(self, max_len: int = 80) -> str:
        return truncate(self.command, max_len)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "user": self.user,
            "command": self.command,
            "accessible": self.accessible,
            "rootfs": self.rootfs,
        }


@dataclass(frozen=True)
class ScanInvocationOptions:
    """
    Read-only configuration snapshot consumed by the orchestrator.

    The same instance is reused for every target of a batch.
    """
    engine_path: str
    token: str = ""
    pod: str = ""
    scan_types: str = ""
    mode: str = ""
    formats: str = ""
    output_dir: str = "./reports"
    quiet: bool = False
    timeout: Optional[float] = None


@dataclass
class ScanResult:
    """
    Outcome of one scan attempt.

    raw_output keeps the engine's combined stdout and stderr for diagnostics;
    it is never part of the serialized form.
    """
    target: str
    type: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    exit_code: int = 0
    error: str = ""
    os_info: str = ""
    reports: Dict[str, str] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    raw_output: str = field(default="", repr=False)

    def __post_init__(self):
        if self.error and self.exit_code == 0:
            raise ValueError("a ScanResult with an error must have a non-zero exit code")

    @classmethod
    def failed(cls, target: str, type: str, error: str, exit_code: int = 1) -> "ScanResult":
        """Record a wrapper-level failure (resolution, launch) for a target."""
        now = datetime.now()
        return cls(
            target=target,
            type=type,
            start_time=now,
            end_time=now,
            exit_code=exit_code or 1,
            error=error or "scan failed",
        )

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def to_dict(self, include_timestamps: bool = False) -> Dict[str, Any]:
        """Convert result to its shareable dictionary form."""
        data: Dict[str, Any] = {
            "target": self.target,
            "type": self.type,
            "duration_seconds": round(self.duration_seconds, 3),
            "exit_code": self.exit_code,
        }
        if self.error:
            data["error"] = self.error
        if self.os_info:
            data["os_info"] = self.os_info
        if self.reports:
            data["reports"] = dict(self.reports)
        if self.notes:
            data["notes"] = list(self.notes)
        if include_timestamps:
            data["start_time"] = self.start_time.isoformat() if self.start_time else None
            data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


def truncate(text: str, max_len: int) -> str:
    """Shorten text to max_len characters, marking the cut with '...'."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
