"""
Tests for scan orchestration against a fake engine.
"""

import os
import threading
import time

import pytest

from qscan.core.models import ScanResult, ScanTarget
from qscan.core.orchestrator import (
    LIVE_EXCLUDE_DIRS,
    CancelToken,
    ScanOrchestrator,
    worst_exit_code,
)
from qscan.core.resolver import TEMP_PREFIX, TargetResolver
from qscan.exceptions import RuntimeNotFoundError, ScanCancelledError
from tests.conftest import FakeRuntime, requires_sh, write_executable

pytestmark = requires_sh


@pytest.fixture
def scratch(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def image_resolver(scratch, fake_runtime):
    return TargetResolver(runtime=fake_runtime, temp_dir=str(scratch))


def no_leftovers(scratch):
    return not any(name.startswith(TEMP_PREFIX) for name in os.listdir(scratch))


class TestEngineArgs:
    """Test the engine command line."""

    def test_rootfs_args(self, make_options, image_resolver):
        options = make_options("/opt/qscanner", formats="json,sarif")
        orchestrator = ScanOrchestrator(options, image_resolver)

        args = orchestrator.build_engine_args("Linux Ubuntu 22.04", "/out/app", "/tmp/root", LIVE_EXCLUDE_DIRS)

        assert args == [
            "--pod", "US2",
            "--scan-types", "pkg,fileinsight",
            "--mode", "get-report",
            "--format", "json,sarif",
            "--shell-commands", "uname -a=Linux Ubuntu 22.04",
            "--output-dir", "/out/app",
            "--exclude-dirs", "/proc,/sys,/dev,/run",
            "rootfs", "/tmp/root",
        ]

    def test_empty_values_omitted(self, make_options, image_resolver):
        options = make_options("/opt/qscanner", pod="", scan_types="", formats="")
        orchestrator = ScanOrchestrator(options, image_resolver)

        args = orchestrator.build_engine_args("", "", "/root")

        assert args == ["--mode", "get-report", "rootfs", "/root"]

    def test_token_only_in_environment(self, make_options, image_resolver):
        orchestrator = ScanOrchestrator(make_options("/opt/qscanner"), image_resolver)

        assert "secret-token" not in orchestrator.build_engine_args("x", "/o", "/r")
        assert orchestrator.engine_environment()["QUALYS_ACCESS_TOKEN"] == "secret-token"


class TestScan:
    """Test single target scans."""

    def test_successful_image_scan(self, fake_engine, make_options, image_resolver, sif_file, scratch, tmp_path):
        engine = fake_engine(reports=["app-report.json", "app.sarif"])
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)

        result = orchestrator.scan(ScanTarget.image(str(sif_file)))

        assert result.exit_code == 0
        assert result.error == ""
        assert result.type == "sif"
        assert result.os_info == "Linux node01 5.15.0 x86_64"
        report_dir = tmp_path / "reports" / "app"
        assert result.reports == {
            "json": str(report_dir / "app-report.json"),
            "sarif": str(report_dir / "app.sarif"),
        }
        assert "engine stdout" in result.raw_output
        assert result.duration_seconds >= 0
        assert no_leftovers(scratch)

    def test_token_passed_via_environment(self, fake_engine, make_options, image_resolver, sif_file):
        engine = fake_engine()
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)

        orchestrator.scan(ScanTarget.image(str(sif_file)))

        assert engine.token() == "secret-token"
        assert "secret-token" not in engine.args()

    def test_engine_exit_code_passed_through(self, fake_engine, make_options, image_resolver, sif_file, scratch):
        engine = fake_engine(exit_code=3)
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)

        result = orchestrator.scan(ScanTarget.image(str(sif_file)))

        assert result.exit_code == 3
        assert result.error == ""
        assert result.reports == {}
        assert no_leftovers(scratch)

    def test_engine_cannot_launch(self, make_options, image_resolver, sif_file, tmp_path, scratch):
        options = make_options(str(tmp_path / "no-such-qscanner"))
        orchestrator = ScanOrchestrator(options, image_resolver)

        result = orchestrator.scan(ScanTarget.image(str(sif_file)))

        assert result.exit_code == 1
        assert result.error.startswith("failed to launch engine")
        assert no_leftovers(scratch)

    def test_live_process_scan(self, fake_engine, make_options, proc_tree, tmp_path):
        proc_tree.add(4242, os_release='PRETTY_NAME="Ubuntu 22.04.3 LTS"\n')
        engine = fake_engine()
        resolver = TargetResolver(proc_root=proc_tree.path)
        orchestrator = ScanOrchestrator(make_options(engine.path), resolver)

        result = orchestrator.scan(ScanTarget.pid(4242))

        args = engine.args()
        assert result.exit_code == 0
        assert result.type == "running"
        assert result.os_info == "Linux Ubuntu 22.04.3 LTS"
        assert args[args.index("--exclude-dirs") + 1] == "/proc,/sys,/dev,/run"
        assert args[args.index("--output-dir") + 1] == str(tmp_path / "reports" / "pid-4242")
        assert args[-2:] == ["rootfs", os.path.join(proc_tree.path, "4242", "root")]
        assert args[args.index("--shell-commands") + 1] == "uname -a=Linux Ubuntu 22.04.3 LTS"

    def test_direct_path_scan(self, fake_engine, make_options, tmp_path):
        rootfs = tmp_path / "unpacked"
        rootfs.mkdir()
        engine = fake_engine()
        orchestrator = ScanOrchestrator(make_options(engine.path), TargetResolver())

        result = orchestrator.scan(ScanTarget.directory(str(rootfs)))

        args = engine.args()
        assert result.type == "rootfs"
        assert "--exclude-dirs" not in args
        assert "--shell-commands" not in args
        assert args[-2:] == ["rootfs", str(rootfs)]

    def test_timeout(self, fake_engine, make_options, image_resolver, sif_file, scratch):
        engine = fake_engine(sleep=30)
        orchestrator = ScanOrchestrator(make_options(engine.path, timeout=0.5), image_resolver)

        started = time.monotonic()
        result = orchestrator.scan(ScanTarget.image(str(sif_file)))

        assert time.monotonic() - started < 15
        assert result.exit_code == 1
        assert "timed out" in result.error
        assert no_leftovers(scratch)

    def test_cancellation_stops_engine_and_cleans_up(self, fake_engine, make_options, image_resolver,
                                                      sif_file, scratch):
        engine = fake_engine(sleep=30)
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)
        token = CancelToken()
        timer = threading.Timer(0.5, token.cancel)
        timer.start()

        started = time.monotonic()
        try:
            with pytest.raises(ScanCancelledError):
                orchestrator.scan(ScanTarget.image(str(sif_file)), cancel=token)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 15
        assert no_leftovers(scratch)

    def test_cancel_during_extraction_skips_engine(self, fake_engine, make_options, sif_file, scratch):
        engine = fake_engine()
        token = CancelToken()

        class CancellingRuntime(FakeRuntime):
            def extract_filesystem(self, image, dest_dir):
                super().extract_filesystem(image, dest_dir)
                token.cancel()

        resolver = TargetResolver(runtime=CancellingRuntime(), temp_dir=str(scratch))
        orchestrator = ScanOrchestrator(make_options(engine.path), resolver)

        with pytest.raises(ScanCancelledError):
            orchestrator.scan(ScanTarget.image(str(sif_file)), cancel=token)

        assert not engine.ran()
        assert no_leftovers(scratch)

    def test_stale_reports_not_credited(self, fake_engine, make_options, image_resolver, sif_file, tmp_path):
        """Reports left behind by an earlier run do not count for this one."""
        report_dir = tmp_path / "reports" / "app"
        report_dir.mkdir(parents=True)
        stale = report_dir / "old-report.json"
        stale.write_text("{}")
        an_hour_ago = time.time() - 3600
        os.utime(stale, (an_hour_ago, an_hour_ago))
        engine = fake_engine(exit_code=3)
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)

        result = orchestrator.scan(ScanTarget.image(str(sif_file)))

        assert result.exit_code == 3
        assert result.reports == {}


class TestScanBatch:
    """Test sequential multi-target scans."""

    def test_failure_does_not_stop_batch(self, fake_engine, make_options, image_resolver, sif_file, tmp_path):
        engine = fake_engine()
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)
        targets = [
            ScanTarget.image(str(tmp_path / "missing.sif")),
            ScanTarget.image(str(sif_file)),
        ]

        results = orchestrator.scan_batch(targets)

        assert [r.target for r in results] == [t.value for t in targets]
        assert results[0].exit_code == 1
        assert "SIF file not found" in results[0].error
        assert results[1].exit_code == 0
        assert worst_exit_code(results) == 1

    def test_extraction_failure_recorded(self, fake_engine, make_options, sif_file, scratch):
        resolver = TargetResolver(runtime=FakeRuntime(fail_extract=True), temp_dir=str(scratch))
        engine = fake_engine()
        orchestrator = ScanOrchestrator(make_options(engine.path), resolver)

        results = orchestrator.scan_batch([ScanTarget.image(str(sif_file))])

        assert results[0].exit_code == 1
        assert "no files extracted" in results[0].error
        assert not engine.ran()
        assert no_leftovers(scratch)

    def test_missing_runtime_aborts_batch(self, fake_engine, make_options, sif_file):
        def factory():
            raise RuntimeNotFoundError("neither apptainer nor singularity found in PATH")

        orchestrator = ScanOrchestrator(make_options(fake_engine().path), TargetResolver(runtime_factory=factory))

        with pytest.raises(RuntimeNotFoundError):
            orchestrator.scan_batch([ScanTarget.image(str(sif_file))])

    def test_cancelled_before_start(self, fake_engine, make_options, image_resolver, sif_file):
        engine = fake_engine()
        orchestrator = ScanOrchestrator(make_options(engine.path), image_resolver)
        token = CancelToken()
        token.cancel()

        with pytest.raises(ScanCancelledError):
            orchestrator.scan_batch([ScanTarget.image(str(sif_file))], cancel=token)

        assert not engine.ran()

    def test_same_image_name_gets_own_report_dir(self, make_options, image_resolver, tmp_path):
        """Only the first run writes a report; the second must not inherit it."""
        marker = tmp_path / "engine-ran-once"
        engine = write_executable(tmp_path / "qscanner", f"""
out=""
prev=""
for a in "$@"; do
  if [ "$prev" = "--output-dir" ]; then out="$a"; fi
  prev="$a"
done
if [ -e "{marker}" ]; then exit 3; fi
touch "{marker}"
echo '{{}}' > "$out/report.json"
exit 0
""")
        images = []
        for parent in ("a", "b"):
            path = tmp_path / parent / "app.sif"
            path.parent.mkdir()
            path.write_bytes(b"SIF_MAGIC")
            images.append(ScanTarget.image(str(path)))
        orchestrator = ScanOrchestrator(make_options(str(engine)), image_resolver)

        first, second = orchestrator.scan_batch(images)

        assert first.exit_code == 0
        assert first.reports == {"json": str(tmp_path / "reports" / "app" / "report.json")}
        assert second.exit_code == 3
        assert second.reports == {}
        assert (tmp_path / "reports" / "app-2").is_dir()

    def test_claim_report_dir_suffixes_collisions(self, make_options, image_resolver):
        orchestrator = ScanOrchestrator(make_options("/opt/qscanner"), image_resolver)

        assert orchestrator.claim_report_dir("/out/app") == "/out/app"
        assert orchestrator.claim_report_dir("/out/app") == "/out/app-2"
        assert orchestrator.claim_report_dir("/out/app") == "/out/app-3"
        assert orchestrator.claim_report_dir("/out/other") == "/out/other"


class TestPassthrough:
    """Test image/repo passthrough."""

    def test_passthrough_args_and_exit_code(self, fake_engine, make_options, tmp_path):
        engine = fake_engine(exit_code=4)
        orchestrator = ScanOrchestrator(make_options(engine.path), TargetResolver())

        exit_code = orchestrator.run_passthrough("image", ["nginx:latest", "--skip-verify-tls"])

        assert exit_code == 4
        args = engine.args()
        assert args[-3:] == ["image", "nginx:latest", "--skip-verify-tls"]
        assert args[args.index("--output-dir") + 1] == str(tmp_path / "reports")
        assert engine.token() == "secret-token"


def test_worst_exit_code():
    ok = ScanResult(target="a", type="sif")
    assert worst_exit_code([]) == 0
    assert worst_exit_code([ok]) == 0
    assert worst_exit_code([ok, ScanResult(target="b", type="sif", exit_code=3),
                            ScanResult.failed("c", "sif", "x")]) == 3
