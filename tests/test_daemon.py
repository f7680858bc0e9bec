"""Tests for daemon core."""

import asyncio
import io
import os
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from conftest import make_proc_entry
from memchart.config import Config
from memchart.daemon import Daemon, DaemonState, dump_once, run_daemon
from memchart.sampler import CycleResult, EnumerationError

# === Test Fixtures ===


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Apply all Config path property patches to the given ExitStack.

    Args:
        stack: ExitStack to register patches with
        base_path: Directory to use for all Config paths
    """
    # fmt: off
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    stack.enter_context(patch.object(
        Config, "log_path",
        new_callable=lambda: property(lambda self: base_path / "state" / "daemon.log")
    ))
    stack.enter_context(patch.object(
        Config, "pid_path",
        new_callable=lambda: property(lambda self: base_path / "daemon.pid")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Fixture that patches all Config path properties to use tmp_path."""
    with ExitStack() as stack:
        _patch_config_paths(stack, tmp_path)
        yield tmp_path


@pytest.fixture
def config(proc_root: Path) -> Config:
    config = Config()
    config.sampling.proc_root = str(proc_root)
    config.sampling.interval = 0.01
    return config


def cycle_result(**kwargs) -> CycleResult:
    defaults = {"probed": 1, "updated": 1, "removed": 0, "skipped": 0, "elapsed_ms": 1.0}
    defaults.update(kwargs)
    return CycleResult(**defaults)


# === DaemonState ===


def test_daemon_state_update_cycle():
    state = DaemonState()
    state.update_cycle(tracked=12)

    assert state.cycle_count == 1
    assert state.tracked == 12
    assert state.last_cycle_time is not None


# === Sampling ===


@pytest.mark.asyncio
async def test_run_cycle_populates_table(config, proc_root):
    make_proc_entry(proc_root, 100, name="nginx")
    daemon = Daemon(config)

    result = await daemon.run_cycle()

    assert result.updated == 1
    assert "100" in daemon.table
    assert daemon.state.tracked == 1


@pytest.mark.asyncio
async def test_run_cycle_verbose_prints_csv(config, proc_root):
    make_proc_entry(proc_root, 100, name="nginx")
    config.sampling.verbose = True
    out = io.StringIO()
    daemon = Daemon(config, out=out)

    await daemon.run_cycle()

    assert out.getvalue() == "pid,name,rss,uss,pss\n100,nginx,4,4,2\n"


@pytest.mark.asyncio
async def test_run_cycle_quiet_by_default(config, proc_root):
    make_proc_entry(proc_root, 100)
    out = io.StringIO()
    daemon = Daemon(config, out=out)

    await daemon.run_cycle()

    assert out.getvalue() == ""


@pytest.mark.asyncio
async def test_run_cycle_restricted_to_pids(config, proc_root):
    make_proc_entry(proc_root, 100)
    make_proc_entry(proc_root, 200)
    daemon = Daemon(config, pids=["200"])

    await daemon.run_cycle()

    assert set(daemon.table.snapshot_view()) == {"200"}


# === Main loop ===


@pytest.mark.asyncio
async def test_main_loop_stops_on_shutdown(config, proc_root):
    make_proc_entry(proc_root, 100)
    daemon = Daemon(config)

    async def stop_soon():
        while daemon.state.cycle_count < 3:
            await asyncio.sleep(0.01)
        daemon._shutdown_event.set()

    await asyncio.wait_for(asyncio.gather(daemon._main_loop(), stop_soon()), timeout=5.0)

    assert daemon.state.cycle_count >= 3


@pytest.mark.asyncio
async def test_main_loop_enumeration_failure_is_fatal(tmp_path):
    config = Config()
    config.sampling.proc_root = str(tmp_path / "missing")
    daemon = Daemon(config)

    with pytest.raises(EnumerationError):
        await asyncio.wait_for(daemon._main_loop(), timeout=5.0)


@pytest.mark.asyncio
async def test_main_loop_survives_unexpected_errors(config):
    daemon = Daemon(config)
    calls = 0

    async def flaky_cycle():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        daemon._shutdown_event.set()
        return cycle_result()

    with (
        patch.object(daemon, "run_cycle", side_effect=flaky_cycle),
        patch("memchart.daemon.console.cycle_failed") as mock_failed,
    ):
        await asyncio.wait_for(daemon._main_loop(), timeout=5.0)

    assert calls == 2
    mock_failed.assert_called_once_with("boom")


@pytest.mark.asyncio
async def test_main_loop_logs_heartbeat(config, proc_root):
    make_proc_entry(proc_root, 100)
    config.system.heartbeat_cycles = 2
    daemon = Daemon(config)

    async def stop_soon():
        while daemon.state.cycle_count < 2:
            await asyncio.sleep(0.01)
        daemon._shutdown_event.set()

    with patch("memchart.daemon.console.heartbeat") as mock_heartbeat:
        await asyncio.wait_for(asyncio.gather(daemon._main_loop(), stop_soon()), timeout=5.0)

    mock_heartbeat.assert_called()
    cycles, tracked = mock_heartbeat.call_args.args[:2]
    assert cycles == 2
    assert tracked == 1


# === PID file ===


class TestCheckAlreadyRunning:
    """Tests for Daemon._check_already_running()."""

    def test_no_pid_file(self, patched_config_paths, config):
        assert Daemon(config)._check_already_running() is False

    def test_invalid_pid_file_removed(self, patched_config_paths, config):
        config.pid_path.write_text("garbage")

        assert Daemon(config)._check_already_running() is False
        assert not config.pid_path.exists()

    def test_own_pid_is_not_another_daemon(self, patched_config_paths, config):
        config.pid_path.write_text(str(os.getpid()))

        assert Daemon(config)._check_already_running() is False

    def test_stale_pid_removed(self, patched_config_paths, config):
        config.pid_path.write_text("999999")

        with patch("memchart.daemon.psutil.Process", side_effect=psutil.NoSuchProcess(999999)):
            assert Daemon(config)._check_already_running() is False
        assert not config.pid_path.exists()

    def test_running_daemon_detected(self, patched_config_paths, config):
        config.pid_path.write_text("4321")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/python3", "/usr/local/bin/memchart", "daemon"]

        with patch("memchart.daemon.psutil.Process", return_value=proc):
            assert Daemon(config)._check_already_running() is True
        assert config.pid_path.exists()

    def test_different_process_is_stale(self, patched_config_paths, config):
        config.pid_path.write_text("4321")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/sbin/sshd"]

        with patch("memchart.daemon.psutil.Process", return_value=proc):
            assert Daemon(config)._check_already_running() is False
        assert not config.pid_path.exists()

    def test_access_denied_assumes_running(self, patched_config_paths, config):
        config.pid_path.write_text("4321")

        with patch("memchart.daemon.psutil.Process", side_effect=psutil.AccessDenied(4321)):
            assert Daemon(config)._check_already_running() is True


# === Lifecycle ===


@pytest.mark.asyncio
async def test_start_and_stop(patched_config_paths, config):
    daemon = Daemon(config)
    server = MagicMock()
    server.start = AsyncMock()
    server.stop = AsyncMock()

    with (
        patch("memchart.daemon.ExportServer", return_value=server),
        patch("importlib.metadata.version", return_value="0.0.0"),
        patch.object(daemon, "_main_loop", new=AsyncMock()),
    ):
        await daemon.start()
        assert daemon.state.running
        assert config.pid_path.read_text() == str(os.getpid())
        server.start.assert_awaited_once()

        await daemon.stop()

    server.stop.assert_awaited_once()
    assert not daemon.state.running
    assert not config.pid_path.exists()


@pytest.mark.asyncio
async def test_stop_removes_signal_handlers(patched_config_paths, config):
    import signal

    daemon = Daemon(config)
    server = MagicMock()
    server.start = AsyncMock()
    server.stop = AsyncMock()

    with (
        patch("memchart.daemon.ExportServer", return_value=server),
        patch("importlib.metadata.version", return_value="0.0.0"),
        patch.object(daemon, "_main_loop", new=AsyncMock()),
    ):
        await daemon.start()
        assert daemon._signals == [signal.SIGTERM, signal.SIGINT]

        await daemon.stop()

    loop = asyncio.get_running_loop()
    # remove_signal_handler returns False when nothing is registered
    assert loop.remove_signal_handler(signal.SIGTERM) is False
    assert loop.remove_signal_handler(signal.SIGINT) is False
    assert daemon._signals == []


@pytest.mark.asyncio
async def test_start_refuses_when_already_running(patched_config_paths, config):
    daemon = Daemon(config)

    with (
        patch("importlib.metadata.version", return_value="0.0.0"),
        patch.object(daemon, "_check_already_running", return_value=True),
        patch("memchart.daemon.ExportServer") as mock_server,
    ):
        with pytest.raises(RuntimeError, match="already running"):
            await daemon.start()

    mock_server.assert_not_called()


@pytest.mark.asyncio
async def test_signal_sets_shutdown(config):
    import signal

    daemon = Daemon(config)
    daemon._handle_signal(signal.SIGTERM)
    assert daemon._shutdown_event.is_set()


@pytest.mark.asyncio
async def test_run_daemon_reraises_enumeration_error(patched_config_paths, tmp_path):
    config = Config()
    config.sampling.proc_root = str(tmp_path / "missing")
    server = MagicMock()
    server.start = AsyncMock()
    server.stop = AsyncMock()

    with (
        patch("memchart.daemon.ExportServer", return_value=server),
        patch("importlib.metadata.version", return_value="0.0.0"),
        patch("memchart.daemon.console.configure"),
    ):
        with pytest.raises(EnumerationError):
            await asyncio.wait_for(run_daemon(config), timeout=5.0)

    server.stop.assert_awaited_once()
    assert not config.pid_path.exists()


# === One-shot ===


def test_dump_once(config, proc_root):
    make_proc_entry(proc_root, 100)
    make_proc_entry(proc_root, 2, cmdline=b"")

    table = dump_once(config)

    assert set(table.snapshot_view()) == {"100"}


def test_dump_once_with_pids(config, proc_root):
    make_proc_entry(proc_root, 100)
    make_proc_entry(proc_root, 200)

    table = dump_once(config, ["100"])

    assert set(table.snapshot_view()) == {"100"}
