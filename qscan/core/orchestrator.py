"""
Scan orchestration.

Resolves targets, runs the qscanner engine against the resulting root and
turns the outcome into ScanResult records.
"""

import logging
import os
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set

from qscan.core.collector import collect_reports
from qscan.core.models import (
    ResolvedRoot,
    RootOrigin,
    ScanInvocationOptions,
    ScanResult,
    ScanTarget,
    TargetKind,
)
from qscan.core.resolver import TargetResolver
from qscan.exceptions import QscanError, RuntimeNotFoundError, ScanCancelledError

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "QUALYS_ACCESS_TOKEN"
LIVE_EXCLUDE_DIRS = ("/proc", "/sys", "/dev", "/run")
OS_SHELL_COMMAND = "uname -a"

POLL_INTERVAL = 0.2
TERMINATE_GRACE = 5.0


class CancelToken:
    """Cancellation signal shared between the caller and a running scan."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class EngineOutcome:
    """Classified result of one engine subprocess."""
    exit_code: int
    error: str = ""
    output: str = ""


def worst_exit_code(results: Sequence[ScanResult]) -> int:
    """First non-zero exit code across results, else 0."""
    for result in results:
        if result.exit_code != 0:
            return result.exit_code
    return 0


class ScanOrchestrator:
    """
    Drives resolve, scan and collect for one or more targets.

    Example:
        orchestrator = ScanOrchestrator(options, TargetResolver(...))
        result = orchestrator.scan(ScanTarget.image("app.sif"))
    """

    def __init__(
        self,
        options: ScanInvocationOptions,
        resolver: TargetResolver,
        progress: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            options: Engine invocation settings, shared by every target
            resolver: Resolver used to obtain filesystem roots
            progress: Callback receiving human-readable progress messages
        """
        self.options = options
        self.resolver = resolver
        self._progress = progress
        self._claimed_dirs: Set[str] = set()
        self._claim_lock = threading.Lock()

    def _report(self, message: str):
        logger.debug(message)
        if self._progress and not self.options.quiet:
            self._progress(message)

    def global_args(self) -> List[str]:
        """Engine flags that apply to every subcommand."""
        args: List[str] = []
        if self.options.pod:
            args += ["--pod", self.options.pod]
        if self.options.scan_types:
            args += ["--scan-types", self.options.scan_types]
        if self.options.mode:
            args += ["--mode", self.options.mode]
        if self.options.formats:
            args += ["--format", self.options.formats]
        return args

    def build_engine_args(
        self,
        os_info: str,
        output_dir: str,
        rootfs: str,
        exclude_dirs: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Build the argument list for a `rootfs` scan."""
        args = self.global_args()
        if os_info:
            args += ["--shell-commands", f"{OS_SHELL_COMMAND}={os_info}"]
        if output_dir:
            args += ["--output-dir", output_dir]
        if exclude_dirs:
            args += ["--exclude-dirs", ",".join(exclude_dirs)]
        args += ["rootfs", rootfs]
        return args

    def engine_environment(self) -> Dict[str, str]:
        """Process environment for the engine; the token never goes on argv."""
        env = dict(os.environ)
        env[TOKEN_ENV_VAR] = self.options.token
        return env

    def run_engine(
        self,
        args: Sequence[str],
        cancel: Optional[CancelToken] = None,
        capture: bool = True,
    ) -> EngineOutcome:
        """
        Run the engine and classify how it ended.

        Exit code 0 is success, any other exit code is passed through as is.
        If the engine cannot be launched at all the exit code is 1 and error
        explains why.

        Raises:
            ScanCancelledError: cancel was triggered; the engine has been stopped
        """
        command = [self.options.engine_path, *args]
        logger.debug(f"Running engine: {' '.join(command)}")

        pipe = subprocess.PIPE if capture else None
        try:
            proc = subprocess.Popen(
                command,
                env=self.engine_environment(),
                stdin=subprocess.DEVNULL if capture else None,
                stdout=pipe,
                stderr=pipe,
            )
        except OSError as e:
            logger.error(f"Failed to launch engine {self.options.engine_path}: {e}")
            return EngineOutcome(exit_code=1, error=f"failed to launch engine: {e}")

        deadline = time.monotonic() + self.options.timeout if self.options.timeout else None

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(proc.communicate)
            try:
                while True:
                    try:
                        stdout, stderr = future.result(timeout=POLL_INTERVAL)
                        break
                    except FutureTimeout:
                        pass

                    if cancel is not None and cancel.cancelled:
                        self._stop(proc, future)
                        raise ScanCancelledError("scan cancelled")

                    if deadline is not None and time.monotonic() > deadline:
                        stdout, stderr = self._stop(proc, future)
                        return EngineOutcome(
                            exit_code=1,
                            error=f"engine timed out after {self.options.timeout:g}s",
                            output=_decode(stdout) + _decode(stderr),
                        )
            except KeyboardInterrupt:
                self._stop(proc, future)
                raise

        return EngineOutcome(exit_code=proc.returncode, output=_decode(stdout) + _decode(stderr))

    @staticmethod
    def _stop(proc: subprocess.Popen, future):
        """Terminate the engine, escalating to kill, and reap it."""
        logger.warning(f"Stopping engine (PID {proc.pid})")
        proc.terminate()
        try:
            return future.result(timeout=TERMINATE_GRACE)
        except FutureTimeout:
            proc.kill()
            return future.result()

    def report_dir_for(self, target: ScanTarget, root: ResolvedRoot) -> str:
        """Per-target report directory below the configured output directory."""
        base = self.options.output_dir or "./reports"
        if root.origin == RootOrigin.LIVE_PROCESS:
            name = f"pid-{root.pid}"
        elif target.kind == TargetKind.IMAGE_PATH:
            name = os.path.basename(target.value)
            if name.endswith(".sif"):
                name = name[: -len(".sif")]
        else:
            name = os.path.basename(os.path.normpath(target.value)) or "rootfs"
        return os.path.join(base, name)

    def claim_report_dir(self, path: str) -> str:
        """
        Reserve path for one target, suffixing -2, -3, ... on collision.

        Images with the same file name in different directories would
        otherwise share a report directory within one batch.
        """
        with self._claim_lock:
            candidate, n = path, 1
            while candidate in self._claimed_dirs:
                n += 1
                candidate = f"{path}-{n}"
            self._claimed_dirs.add(candidate)
        return candidate

    def scan(self, target: ScanTarget, cancel: Optional[CancelToken] = None) -> ScanResult:
        """
        Scan a single target end to end.

        An extracted image root is removed before this returns, whatever
        the outcome.

        Raises:
            ResolutionError: The target could not be resolved
            RuntimeAdapterError: Image extraction failed
            ScanCancelledError: cancel was triggered
        """
        start_time = datetime.now()
        started = time.monotonic()

        with self.resolver.resolved(target) as root:
            # Cancellation may have arrived during extraction
            if cancel is not None and cancel.cancelled:
                raise ScanCancelledError("scan cancelled")

            output_dir = self.claim_report_dir(self.report_dir_for(target, root))
            try:
                os.makedirs(output_dir, exist_ok=True)
            except OSError as e:
                raise QscanError(f"failed to create output directory {output_dir}: {e}") from e

            exclude = LIVE_EXCLUDE_DIRS if root.origin == RootOrigin.LIVE_PROCESS else None
            args = self.build_engine_args(root.os_description, output_dir, str(root.path), exclude)

            self._report("Running vulnerability scan...")
            outcome = self.run_engine(args, cancel=cancel)

        end_time = datetime.now()
        result = ScanResult(
            target=target.value,
            type=target.result_type,
            start_time=start_time,
            end_time=end_time,
            duration_seconds=time.monotonic() - started,
            exit_code=outcome.exit_code,
            error=outcome.error,
            os_info=root.os_description,
            reports=collect_reports(output_dir, since=start_time.timestamp()),
            notes=list(root.notes),
            raw_output=outcome.output,
        )

        logger.info(
            f"Scan of {target.value} finished with exit code {result.exit_code} "
            f"in {result.duration_seconds:.1f}s"
        )
        return result

    def scan_batch(
        self,
        targets: Sequence[ScanTarget],
        cancel: Optional[CancelToken] = None,
    ) -> List[ScanResult]:
        """
        Scan targets one after another, in input order.

        A failure for one target is recorded in its result and the next
        target is still attempted. Cancellation stops the whole batch.
        """
        results: List[ScanResult] = []
        for target in targets:
            if cancel is not None and cancel.cancelled:
                raise ScanCancelledError("scan cancelled")

            self._report(f"Scanning: {target.value}")
            try:
                result = self.scan(target, cancel=cancel)
            except (ScanCancelledError, RuntimeNotFoundError):
                raise
            except QscanError as e:
                logger.error(f"Error scanning {target.value}: {e}")
                result = ScanResult.failed(target.value, target.result_type, str(e))
            results.append(result)
        return results

    def run_passthrough(
        self,
        subcommand: str,
        args: Sequence[str],
        cancel: Optional[CancelToken] = None,
    ) -> int:
        """Hand a subcommand straight to the engine with the terminal attached."""
        engine_args = self.global_args()
        if self.options.output_dir:
            engine_args += ["--output-dir", self.options.output_dir]
        engine_args += [subcommand, *args]

        outcome = self.run_engine(engine_args, cancel=cancel, capture=False)
        if outcome.error:
            logger.error(outcome.error)
        return outcome.exit_code


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode(errors="replace")
