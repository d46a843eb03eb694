from __future__ import annotations

import logging
import threading

from license_authority.authority import LicenseAuthority, SweepResult

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 900


class ExpirySweeper:
    """Runs ``LicenseAuthority.sweep`` periodically on a background thread.

    Reads never depend on the sweep; it only persists expiry early and sends
    the expiry notifications. At most one sweep runs at a time.
    """

    def __init__(
        self,
        authority: LicenseAuthority,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.authority = authority
        self.interval_seconds = interval_seconds
        self._running = threading.Lock()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> SweepResult | None:
        if not self._running.acquire(blocking=False):
            logger.debug("Sweep already in progress, skipping")
            return None
        try:
            return self.authority.sweep()
        finally:
            self._running.release()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="license-expiry-sweep", daemon=True)
        self._thread.start()
        logger.info("Expiry sweep started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stopping.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed")
