#!/usr/bin/env python3
"""
Status Probe

Periodically refreshes the observed sing-box state, independent of
lifecycle commands and reconciliation.

- Runs on its own daemon thread with a fixed interval (default 5s).
- Never waits on an in-flight lifecycle operation: the controller answers
  with the last stable state while one is running.
- A failed probe keeps the last known state; failures are counted and
  logged, never treated as a crash signal.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from log_config import get_logger
from manager_errors import ProbeError
from process_controller import ProcessController, ProcessStatus

logger = get_logger("status_probe")

DEFAULT_PROBE_INTERVAL = 5.0


@dataclass
class ProbeCounters:
    """Probe bookkeeping"""
    probe_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_check: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None


class StatusProbe:
    """Polls the process controller on a fixed schedule."""

    def __init__(self, controller: ProcessController, interval: float = DEFAULT_PROBE_INTERVAL):
        self.controller = controller
        self.interval = interval
        self.counters = ProbeCounters()
        self._lock = threading.Lock()
        self._last_status: ProcessStatus = controller.status()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def last_status(self) -> ProcessStatus:
        with self._lock:
            return self._last_status

    def probe_once(self) -> ProcessStatus:
        """Run a single probe and update counters.

        Returns:
            The freshly observed status, or the last known one when the probe failed
        """
        try:
            status = self.controller.probe()
        except ProbeError as e:
            with self._lock:
                self.counters.probe_count += 1
                self.counters.failure_count += 1
                self.counters.consecutive_failures += 1
                self.counters.last_check = datetime.now()
                self.counters.last_error = e.message
                failures = self.counters.consecutive_failures
                status = self._last_status
            logger.warning(f"Status probe failed ({failures} consecutive): {e.message}")
            return status

        with self._lock:
            previous = self._last_status.state
            self.counters.probe_count += 1
            self.counters.consecutive_failures = 0
            self.counters.last_check = datetime.now()
            self.counters.last_success = self.counters.last_check
            self._last_status = status
        if previous != status.state:
            logger.info(f"Observed sing-box state: {previous.value} -> {status.state.value}")
        return status

    def run(self) -> None:
        """Probe loop; exits when stop() is called."""
        logger.info(f"Status probe starting, interval={self.interval}s")
        while not self._shutdown_event.is_set():
            try:
                self.probe_once()
            except Exception as e:
                logger.error(f"Status probe iteration failed: {e}")

            # Wait for next interval or shutdown
            if self._shutdown_event.wait(timeout=self.interval):
                break
        logger.info("Status probe stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(target=self.run, name="status-probe", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Request shutdown and wait for the loop to exit."""
        self._shutdown_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            counters = self.counters
            data = self._last_status.to_dict()
            data.update({
                "probe_interval": self.interval,
                "probe_count": counters.probe_count,
                "failure_count": counters.failure_count,
                "consecutive_failures": counters.consecutive_failures,
                "last_check": counters.last_check.isoformat() if counters.last_check else None,
                "last_success": counters.last_success.isoformat() if counters.last_success else None,
                "probe_error": counters.last_error,
            })
        return data
