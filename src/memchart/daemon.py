"""Background daemon for memchart.

Runs the sampler on a fixed period and serves the snapshot table over HTTP
from the same event loop. Probing is blocking filesystem I/O, so each cycle
runs in a worker thread while request handlers keep reading the table.
"""

import asyncio
import os
import resource
import signal
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TextIO

import psutil
import structlog

from memchart import logging as console
from memchart.config import Config
from memchart.export import render_csv
from memchart.sampler import CycleResult, EnumerationError, Sampler
from memchart.server import ExportServer
from memchart.table import SnapshotTable

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    cycle_count: int = 0
    last_cycle_time: datetime | None = None
    tracked: int = 0

    def update_cycle(self, tracked: int) -> None:
        """Update state after a cycle."""
        self.cycle_count += 1
        self.tracked = tracked
        self.last_cycle_time = datetime.now()


class Daemon:
    """Main daemon class orchestrating sampling and export."""

    def __init__(
        self,
        config: Config,
        pids: Sequence[str] | None = None,
        out: TextIO | None = None,
    ):
        self.config = config
        self.pids = list(pids) if pids else None
        self.out = out or sys.stdout
        self.state = DaemonState()

        self.table = SnapshotTable()
        self.sampler = Sampler(self.table, config.proc_root)

        self._shutdown_event = asyncio.Event()
        self._server: ExportServer | None = None
        self._signals: list[signal.Signals] = []

    async def start(self) -> None:
        """Start the daemon and run until shutdown.

        Raises:
            RuntimeError: Another daemon is running or the server cannot bind.
            EnumerationError: /proc cannot be listed.
        """
        from importlib.metadata import version

        log.info("daemon_starting", version=version("memchart"))
        console.version_info("memchart", version("memchart"))
        console.config_summary(
            self.config.sampling.interval,
            str(self.config.proc_root),
            self.config.sampling.verbose,
        )
        log.info(
            "daemon_config",
            interval=self.config.sampling.interval,
            proc_root=str(self.config.proc_root),
            verbose=self.config.sampling.verbose,
            port=self.config.server.port,
            pids=self.pids,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
            self._signals.append(sig)

        if self._check_already_running():
            log.error("daemon_already_running")
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        self._server = ExportServer(
            self.table,
            host=self.config.server.host,
            port=self.config.server.port,
        )
        await self._server.start()
        console.server_listening(self.config.server.host, self.config.server.port)

        self.state.running = True
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self._server:
            await self._server.stop()
            self._server = None
            console.server_stopped()

        self._remove_pid_file()
        self._remove_signal_handlers()
        log.info("daemon_stopped")
        console.daemon_stopped()

    def _remove_signal_handlers(self) -> None:
        """Restore default handling for the signals start() took over."""
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file if it is ours."""
        path = self.config.pid_path
        if path.exists() and path.read_text().strip() == str(os.getpid()):
            path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if another memchart daemon owns the PID file.

        A PID file left behind by a crash may name a pid that now belongs to
        an unrelated process, so the command line is checked too.
        """
        path = self.config.pid_path
        if not path.exists():
            return False

        try:
            pid = int(path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            path.unlink()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = " ".join(proc.cmdline()).lower()
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            path.unlink()
            return False
        except psutil.AccessDenied:
            log.warning("pid_check_access_denied", pid=pid)
            return True

        if "memchart" in cmdline:
            log.info("daemon_already_running_verified", pid=pid)
            console.already_running(pid)
            return True

        log.warning("pid_file_stale", reason="different process", pid=pid)
        console.stale_pid_file(pid)
        path.unlink()
        return False

    async def run_cycle(self) -> CycleResult:
        """Run one sampling cycle off the event loop."""
        result = await asyncio.to_thread(self.sampler.run_cycle, self.pids)
        self.state.update_cycle(len(self.table))
        if self.config.sampling.verbose:
            self.out.write(render_csv(self.table.snapshot_view()))
            self.out.flush()
        return result

    async def _main_loop(self) -> None:
        """Sample every config.sampling.interval seconds until shutdown.

        Per-pid failures are handled inside the sampler. Enumeration failure
        propagates and ends the daemon; anything else is logged and the next
        cycle acts as the retry.
        """
        interval = self.config.sampling.interval
        heartbeat_cycles = self.config.system.heartbeat_cycles
        heartbeat_count = 0
        heartbeat_ms_sum = 0.0

        loop = asyncio.get_running_loop()
        while not self._shutdown_event.is_set():
            iteration_start = loop.time()
            try:
                result = await self.run_cycle()
            except EnumerationError:
                raise
            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break
            except Exception as e:
                log.error("cycle_failed", error=str(e))
                console.cycle_failed(str(e))
            else:
                heartbeat_count += 1
                heartbeat_ms_sum += result.elapsed_ms
                if heartbeat_count >= heartbeat_cycles:
                    self._heartbeat(heartbeat_count, heartbeat_ms_sum / heartbeat_count)
                    heartbeat_count = 0
                    heartbeat_ms_sum = 0.0

            # Sleep for the remainder of the interval to keep a fixed period
            sleep_time = interval - (loop.time() - iteration_start)
            if sleep_time > 0:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                    break
                except asyncio.TimeoutError:
                    pass

    def _heartbeat(self, cycles: int, avg_cycle_ms: float) -> None:
        # ru_maxrss is in kB on Linux
        rss_kb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        log.info(
            "daemon_heartbeat",
            cycles=cycles,
            tracked=len(self.table),
            avg_cycle_ms=round(avg_cycle_ms, 1),
            rss_kb=rss_kb,
        )
        console.heartbeat(cycles, len(self.table), avg_cycle_ms, rss_kb)


def dump_once(config: Config, pids: Sequence[str] | None = None) -> SnapshotTable:
    """One-shot mode: sample once and return the populated table.

    Raises:
        EnumerationError: /proc cannot be listed.
    """
    sampler = Sampler(SnapshotTable(), config.proc_root)
    return sampler.run_once(pids)


async def run_daemon(config: Config | None = None, pids: Sequence[str] | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        pids: Restrict sampling to these pids instead of every live process
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    daemon = Daemon(config, pids=pids)

    try:
        await daemon.start()
    except EnumerationError as e:
        log.error("enumeration_failed", error=str(e))
        console.enumeration_failed(str(e))
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
