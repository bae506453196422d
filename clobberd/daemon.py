"""
clobberd — Main Daemon
======================

Startup sequence:
  1. Load config (fatal if missing or malformed)
  2. Count GPUs via NVML and build the device table, every GPU watched
  3. Bind the control socket (fatal if it cannot be bound)
  4. Tick every 250ms:
       accept one control connection
       → kill rogue processes on watched, owned GPUs
       → reap finished jobs
       → admit and start at most one queued job
       → sleep

All scheduler state lives in memory and is owned by this loop alone; a restart
forgets every queued and active job.

Shutdown:
  SIGTERM/SIGINT → finish the current tick → close and unlink the socket → exit
  Kill command   → exit at once, mid-tick, without replying
"""

from __future__ import annotations
import argparse
import functools
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import CONFIG_PATH, ClobberConfig, load_config
from .devices import DeviceRegistry
from .enforcement import kill_rogue_gpu_processes
from .errors import ConfigError, MonitorError
from .gpu import GpuMonitor
from .jobs import JobStore
from .lifecycle import LifecycleManager
from .pings import send_ping
from .pod import Pod
from .server import ControlServer, bind

log = logging.getLogger("clobberd")


@dataclass
class SchedulerState:
    registry: DeviceRegistry
    store:    JobStore
    config:   ClobberConfig


class Daemon:
    def __init__(self, state: SchedulerState, server: ControlServer, monitor, lifecycle: LifecycleManager):
        self.state = state
        self.server = server
        self.monitor = monitor
        self.lifecycle = lifecycle
        self._running = True

    def _phase(self, name: str, fn, *args):
        # One bad phase must not take the loop down
        try:
            return fn(*args)
        except Exception as e:
            log.error(f"Error in {name} phase: {e}", exc_info=True)
            return None

    def tick(self):
        self._phase("accept", self.server.accept_one)
        self._phase("enforce", kill_rogue_gpu_processes, self.state.registry, self.state.store, self.monitor)
        self._phase("reap", self.lifecycle.reap_finished_jobs, self.state.store)
        self._phase("admit", self.lifecycle.try_start_job, self.state.store)

    def run(self):
        log.info(f"Started Server — {len(self.state.registry)} GPU(s), tick {self.state.config.tick_interval}s")
        while self._running:
            self.tick()
            time.sleep(self.state.config.tick_interval)
        log.info("Stopped.")

    def stop(self):
        self._running = False


# ─── Entry Point ──────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(description="clobberd GPU arbitration daemon")
    parser.add_argument("--config",   default=os.getenv("CLOBBERD_CONFIG", str(CONFIG_PATH)),
                        help="Path to the JSON config file")
    parser.add_argument("--socket",   default=os.getenv("CLOBBERD_SOCKET"),
                        help="Control socket path (overrides socketPath in the config)")
    parser.add_argument("--interval", type=float, default=None,
                        help="Tick interval in seconds (overrides tickInterval in the config)")
    parser.add_argument("--verbose",  "-v", action="store_true",
                        help="Log at DEBUG level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level  = logging.DEBUG if args.verbose else logging.INFO,
        format = "[%(asctime)s] %(levelname)s %(name)s — %(message)s",
        datefmt= "%Y-%m-%dT%H:%M:%S",
    )

    try:
        config = load_config(Path(args.config))
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)
    if args.socket:
        config.socket_path = Path(args.socket)
    if args.interval is not None:
        if args.interval <= 0:
            parser.error("--interval must be positive")
        config.tick_interval = args.interval

    try:
        monitor = GpuMonitor()
        device_count = monitor.device_count()
    except MonitorError as e:
        log.error(str(e))
        sys.exit(1)
    log.info(f"Found {device_count} devices.")

    try:
        sock = bind(config.socket_path)
    except OSError as e:
        log.error(f"Could not bind control socket {config.socket_path}: {e}")
        sys.exit(1)
    log.info(f"Started socket at {config.socket_path}")

    state = SchedulerState(
        registry = DeviceRegistry(device_count),
        store    = JobStore(),
        config   = config,
    )
    notify = functools.partial(_notify, config)
    daemon = Daemon(
        state     = state,
        server    = ControlServer(sock, state.registry, state.store),
        monitor   = monitor,
        lifecycle = LifecycleManager(notify=notify, pod_factory=Pod),
    )

    signal.signal(signal.SIGTERM, lambda s, f: daemon.stop())
    signal.signal(signal.SIGINT,  lambda s, f: daemon.stop())

    try:
        daemon.run()
    finally:
        daemon.server.close()
        try:
            config.socket_path.unlink()
        except FileNotFoundError:
            pass
        monitor.shutdown()


def _notify(config: ClobberConfig, user, ping):
    send_ping(config.notification_api_key, user, ping, url=config.notification_url)


if __name__ == "__main__":
    main()
