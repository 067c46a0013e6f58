"""Tests for c2vm.cli module."""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from c2vm import cli
from c2vm.exceptions import ConfigError, MaterializationError, PipelineCancelled
from c2vm.models import DiskImage, ExitInfo, VMState
from c2vm.pipeline import PipelineResult


@pytest.fixture
def wiring(settings):
    """Patch everything main() wires together; yields the mocks by name."""
    with (
        patch("c2vm.cli.load_settings", return_value=settings) as mock_settings,
        patch("c2vm.cli.preflight") as mock_preflight,
        patch("c2vm.cli.resolver_for") as mock_resolver_for,
        patch("c2vm.cli.GuestLauncher") as mock_launcher_cls,
        patch("c2vm.cli.Pipeline") as mock_pipeline_cls,
    ):
        disk = DiskImage(Path("container.img"), 1024, "ext4", finalized=True)
        mock_pipeline_cls.return_value.run.return_value = PipelineResult(disk=disk)
        yield {
            "settings": mock_settings,
            "preflight": mock_preflight,
            "resolver_for": mock_resolver_for,
            "launcher": mock_launcher_cls,
            "pipeline": mock_pipeline_cls,
            "run": mock_pipeline_cls.return_value.run,
        }


class TestMain:
    def test_no_boot(self, wiring, tmp_path):
        out = tmp_path / "alpine.img"
        assert cli.main(["alpine:3.19", "--out", str(out), "--no-boot"]) == 0
        wiring["preflight"].assert_called_once_with("ext4", boot=False)
        wiring["launcher"].assert_not_called()
        wiring["resolver_for"].assert_called_once()
        assert wiring["resolver_for"].call_args[0][0] == "alpine:3.19"
        assert wiring["settings"].call_args.kwargs["run_name"] == "alpine"
        kwargs = wiring["run"].call_args.kwargs
        assert kwargs["boot"] is False
        assert kwargs["kernel_path"] is None
        assert wiring["run"].call_args[0] == ("alpine:3.19", out)

    def test_boot(self, wiring, settings):
        code = cli.main(
            ["alpine", "--kernel", "/boot/vmlinux", "--firecracker-binary", "/usr/bin/firecracker", "--metrics-sink", "/tmp/m"]
        )
        assert code == 0
        wiring["launcher"].assert_called_once_with(Path("/usr/bin/firecracker"), settings.socket_path)
        kwargs = wiring["run"].call_args.kwargs
        assert kwargs["kernel_path"] == Path("/boot/vmlinux")
        assert kwargs["metrics_path"] == Path("/tmp/m")
        assert kwargs["boot"] is True
        assert wiring["run"].call_args[0][1] == Path("container.img")

    def test_kernel_required_to_boot(self, wiring):
        with patch("c2vm.cli.log") as mock_log:
            assert cli.main(["alpine", "--firecracker-binary", "/usr/bin/firecracker"]) == 1
        mock_log.assert_called_once_with("ERROR", "a linux kernel is required (--kernel)")
        wiring["run"].assert_not_called()

    def test_binary_required_to_boot(self, wiring):
        with patch("c2vm.cli.log") as mock_log:
            assert cli.main(["alpine", "--kernel", "/boot/vmlinux"]) == 1
        assert "--firecracker-binary" in mock_log.call_args[0][1]

    def test_config_error(self, wiring):
        wiring["settings"].side_effect = ConfigError("VCPUS must be an integer (got 'x')")
        with patch("c2vm.cli.log") as mock_log:
            assert cli.main(["alpine", "--no-boot", "--config", "/etc/c2vm.yaml"]) == 1
        mock_log.assert_called_once_with("ERROR", "config: VCPUS must be an integer (got 'x')")
        assert wiring["settings"].call_args[0][0] == Path("/etc/c2vm.yaml")

    def test_stage_failure_reports_stage(self, wiring, capsys):
        wiring["run"].side_effect = MaterializationError("Layer sha256:abc failed verification")
        assert cli.main(["alpine", "--no-boot"]) == 1
        out = capsys.readouterr().out
        assert "[ERROR]" in out
        assert "materialize: Layer sha256:abc failed verification" in out

    def test_cancelled_before_stage(self, wiring):
        wiring["run"].side_effect = PipelineCancelled("cancelled before finalize")
        assert cli.main(["alpine", "--no-boot"]) == cli.EXIT_CANCELLED

    def test_cancelled_guest(self, wiring):
        wiring["run"].return_value = PipelineResult(exit_info=ExitInfo(VMState.STOPPED, -15, cancelled=True))
        assert cli.main(["alpine", "--kernel", "k", "--firecracker-binary", "fc"]) == 130

    def test_signal_handlers_restored(self, wiring):
        before = signal.getsignal(signal.SIGTERM)
        cli.main(["alpine", "--no-boot"])
        assert signal.getsignal(signal.SIGTERM) is before

    def test_pipeline_receives_cancel_event(self, wiring):
        cli.main(["alpine", "--no-boot"])
        cancel = wiring["pipeline"].call_args.kwargs["cancel"]
        assert isinstance(cancel, threading.Event)
        assert not cancel.is_set()


class TestCancelHandlers:
    def test_signal_sets_event(self):
        cancel = threading.Event()
        previous = cli.install_cancel_handlers(cancel)
        try:
            handler = signal.getsignal(signal.SIGTERM)
            with patch("c2vm.cli.log") as mock_log:
                handler(signal.SIGTERM, None)
                handler(signal.SIGINT, None)
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)
        assert cancel.is_set()
        assert mock_log.call_args_list[0].args == ("INFO", "SIGTERM received, cancelling")
        assert mock_log.call_args_list[1].args[0] == "WARN"


def test_parser_defaults():
    args = cli.build_parser().parse_args(["alpine"])
    assert args.out == "container.img"
    assert args.no_boot is False
    assert args.config is None
