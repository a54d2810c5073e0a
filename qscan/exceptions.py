"""
Exception hierarchy for qscan.

Every error raised by qscan derives from QscanError so callers can tell
wrapper-level failures apart from engine-reported ones.
"""


class QscanError(Exception):
    """Base class for all qscan errors."""


class ConfigurationError(QscanError):
    """Missing or malformed configuration (token, POD, config file)."""


class ResolutionError(QscanError):
    """A target could not be turned into a filesystem root."""


class TargetNotFoundError(ResolutionError):
    """Image file, process or directory does not exist."""


class TargetAccessError(ResolutionError):
    """The target exists but its filesystem root is not readable."""


class DiscoveryError(QscanError):
    """The process table could not be enumerated."""


class PlatformUnsupportedError(DiscoveryError):
    """Container discovery needs a Linux process table."""


class RuntimeAdapterError(QscanError):
    """Base class for container runtime tool failures."""


class RuntimeNotFoundError(RuntimeAdapterError):
    """No apptainer or singularity executable on PATH."""


class ExecutionError(RuntimeAdapterError):
    """A command run inside an image failed."""

    def __init__(self, message: str, stderr: str = "", returncode: int = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode

    def __str__(self):
        base = super().__str__()
        if self.stderr:
            return f"{base} (stderr: {self.stderr.strip()})"
        return base


class ExtractionError(RuntimeAdapterError):
    """Filesystem extraction produced no usable root."""


class EngineError(QscanError):
    """The scanning engine could not be prepared or launched."""


class EngineNotFoundError(EngineError):
    """No engine binary configured, cached or on PATH."""


class ScanCancelledError(QscanError):
    """The scan was cancelled before the engine finished."""
