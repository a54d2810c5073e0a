#!/usr/bin/env python3
"""
qscan CLI

Main command-line interface entry point.
"""

import logging
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import click
from dotenv import find_dotenv

from qscan import __version__
from qscan.cli.output import CliOutput, OutputLevel
from qscan.config import Config, load_config
from qscan.containers.discovery import ProcessDiscovery
from qscan.containers.runtime import detect_runtime
from qscan.core.models import ScanInvocationOptions, ScanResult, ScanTarget
from qscan.core.orchestrator import CancelToken, ScanOrchestrator, worst_exit_code
from qscan.core.resolver import TargetResolver
from qscan.engine.cache import resolve_engine
from qscan.exceptions import (
    ConfigurationError,
    DiscoveryError,
    EngineError,
    QscanError,
    RuntimeNotFoundError,
    ScanCancelledError,
)
from qscan.observability.logging import setup_logging

logger = logging.getLogger(__name__)

EXIT_CANCELLED = 130


@dataclass
class CliState:
    """Options shared by all subcommands."""
    config_file: Optional[str] = None
    overrides: Dict[str, Any] = field(default_factory=dict)
    json_output: bool = False
    quiet: bool = False
    output: CliOutput = field(default_factory=CliOutput)
    config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration once; a failed load is retried by the next caller."""
        if self.config is None:
            self.config = load_config(
                config_file=self.config_file,
                overrides=self.overrides,
                env_file=find_dotenv(usecwd=True) or None,
            )
        return self.config

    def progress(self, message: str):
        if not (self.quiet or self.json_output):
            self.output.info(message)


def _fail(state: CliState, message: str, exit_code: int = 1):
    state.output.error(message)
    sys.exit(exit_code)


def _prepare(state: CliState) -> ScanInvocationOptions:
    """Validate configuration and locate the engine before any target is touched."""
    try:
        config = state.load_config()
        config.validate()
        engine = resolve_engine(config.engine_path, config.engine_archive, config.cache_dir or None)
    except ConfigurationError as e:
        _fail(state, str(e))
    except EngineError as e:
        _fail(state, f"failed to prepare qscanner: {e}")
    logger.debug(f"Using engine {engine}")
    return config.to_options(engine, quiet=state.quiet or state.json_output)


@contextmanager
def _cancel_on_signals() -> Iterator[CancelToken]:
    """Turn SIGINT/SIGTERM into cancellation of the running scan."""
    token = CancelToken()

    def handler(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling scan")
        token.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not in the main thread; cancellation falls back to KeyboardInterrupt
            pass
    try:
        yield token
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def _render(state: CliState, results: List[ScanResult]):
    if state.json_output:
        state.output.results_json(results)
    else:
        state.output.results_table(results)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_file", type=click.Path(dir_okay=False),
              help="Config file (default: ~/.config/qscan/config.yaml)")
@click.option("--token", "-t", help="Qualys access token")
@click.option("--pod", "-p", help="Qualys POD (e.g., US1, US2, EU1)")
@click.option("--scan-types", help="Scan types: pkg,fileinsight,secret")
@click.option("--mode", help="Mode: get-report, scan-only, inventory-only, evaluate-policy")
@click.option("--format", "report_format", help="Report formats: json,spdx,cyclonedx,sarif")
@click.option("--output-dir", "-o", help="Output directory for reports")
@click.option("--engine", "engine_path", help="Path to the qscanner binary")
@click.option("--timeout", type=float, help="Abort the engine after this many seconds")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON (for automation)")
@click.option("--quiet", "-q", is_flag=True, help="Suppress progress output")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--log-format", type=click.Choice(["text", "json"]), help="Log format")
@click.pass_context
def cli(ctx, config_file, token, pod, scan_types, mode, report_format, output_dir,
        engine_path, timeout, json_output, quiet, verbose, log_format):
    """
    qscan: Qualys QScanner wrapper for Apptainer/Singularity containers

    Scans SIF files and running containers, with automatic filesystem
    extraction and OS detection.
    """
    verbosity = OutputLevel.QUIET if quiet else (OutputLevel.VERBOSE if verbose else OutputLevel.NORMAL)
    state = CliState(
        config_file=config_file,
        overrides={
            "token": token,
            "pod": pod,
            "scan_types": scan_types,
            "mode": mode,
            "format": report_format,
            "output_dir": output_dir,
            "engine_path": engine_path,
            "timeout": timeout,
        },
        json_output=json_output,
        quiet=quiet,
        output=CliOutput(verbose=verbosity.value),
    )
    ctx.obj = state

    # .env and config.yaml may carry LOG_LEVEL/LOG_FORMAT, so load them before logging starts
    try:
        config = state.load_config()
    except ConfigurationError:
        # Reported by the subcommand that needs the configuration
        config = Config()

    if verbose:
        log_level = "DEBUG"
    elif quiet:
        log_level = "ERROR"
    else:
        log_level = config.log_level
    setup_logging(log_level=log_level, log_format=log_format or config.log_format)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.pass_obj
def sif(state: CliState, paths):
    """
    Scan one or more SIF files.

    Images are processed one at a time; each extracted filesystem is removed
    before the next image starts.

    Examples:
        qscan sif myimage.sif
        qscan --json sif /path/to/images/*.sif
    """
    options = _prepare(state)

    try:
        runtime = detect_runtime()
    except RuntimeNotFoundError as e:
        _fail(state, f"failed to detect container runtime: {e}")

    resolver = TargetResolver(runtime=runtime, progress=state.progress)
    orchestrator = ScanOrchestrator(options, resolver, progress=state.progress)
    targets = [ScanTarget.image(path) for path in paths]

    try:
        with _cancel_on_signals() as token:
            results = orchestrator.scan_batch(targets, cancel=token)
    except ScanCancelledError:
        _fail(state, "Scan cancelled", EXIT_CANCELLED)

    for result in results:
        if result.error and not state.json_output:
            state.output.error(f"Error scanning {result.target}: {result.error}")

    _render(state, results)
    sys.exit(worst_exit_code(results))


@cli.command()
@click.argument("target", required=False)
@click.option("--list", "list_only", is_flag=True, help="List running containers")
@click.pass_obj
def running(state: CliState, target, list_only):
    """
    Scan a running container by PID or name.

    A name is matched case-insensitively against container command lines;
    when several containers match, the first one is scanned.

    Examples:
        qscan running --list
        qscan running 12345
        qscan running myapp.sif
    """
    discovery = ProcessDiscovery()

    if list_only:
        try:
            containers = discovery.list_containers()
        except DiscoveryError as e:
            _fail(state, str(e))
        if state.json_output:
            state.output.containers_json(containers)
        else:
            state.output.containers(containers)
        return

    if not target:
        _fail(state, "target (PID or name) required, or use --list")

    options = _prepare(state)
    scan_target = ScanTarget.parse_running(target)
    resolver = TargetResolver(discovery=discovery, progress=state.progress)
    orchestrator = ScanOrchestrator(options, resolver, progress=state.progress)

    try:
        with _cancel_on_signals() as token:
            result = orchestrator.scan(scan_target, cancel=token)
    except ScanCancelledError:
        _fail(state, "Scan cancelled", EXIT_CANCELLED)
    except QscanError as e:
        if not state.json_output:
            _fail(state, str(e))
        result = ScanResult.failed(scan_target.value, scan_target.result_type, str(e))

    _render(state, [result])
    sys.exit(result.exit_code)


@cli.command(name="dir")
@click.argument("path", type=click.Path())
@click.pass_obj
def scan_dir(state: CliState, path):
    """
    Scan a directory as a root filesystem.

    Example:
        qscan dir /scratch/unpacked-rootfs
    """
    options = _prepare(state)
    resolver = TargetResolver(progress=state.progress)
    orchestrator = ScanOrchestrator(options, resolver, progress=state.progress)
    scan_target = ScanTarget.directory(path)

    try:
        with _cancel_on_signals() as token:
            results = orchestrator.scan_batch([scan_target], cancel=token)
    except ScanCancelledError:
        _fail(state, "Scan cancelled", EXIT_CANCELLED)

    _render(state, results)
    sys.exit(worst_exit_code(results))


def _passthrough(state: CliState, subcommand: str, args):
    options = _prepare(state)
    orchestrator = ScanOrchestrator(options, TargetResolver())
    try:
        with _cancel_on_signals() as token:
            exit_code = orchestrator.run_passthrough(subcommand, list(args), cancel=token)
    except ScanCancelledError:
        _fail(state, "Scan cancelled", EXIT_CANCELLED)
    sys.exit(exit_code)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("args", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def image(state: CliState, args):
    """
    Scan a registry image (passthrough to qscanner).

    Example:
        qscan image nginx:latest
    """
    _passthrough(state, "image", args)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("args", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def repo(state: CliState, args):
    """
    Scan a source code repository (passthrough to qscanner).

    Example:
        qscan repo ./my-project
    """
    _passthrough(state, "repo", args)


@cli.command()
@click.pass_obj
def version(state: CliState):
    """Display version information."""
    click.echo(f"qscan version {__version__}")
    try:
        config = state.load_config()
        engine = resolve_engine(config.engine_path, config.engine_archive, config.cache_dir or None)
    except QscanError as e:
        click.echo(f"qscanner engine: unavailable - {e}")
        return
    click.echo(f"qscanner engine: {engine}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
