"""Background release of reservations whose time ran out."""

import atexit
import logging
import signal
import threading

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically expire overdue reservations without blocking request threads.

    Each run is a full scan; ``DatabaseManager.expire_reservations`` is
    idempotent, so overlapping with the lazy read-path sweep is harmless.
    """

    def __init__(self, db, interval: float = 10):
        self.db = db
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None
        self._atexit_registered = False

    def sweep_once(self) -> int:
        try:
            released = self.db.expire_reservations()
            if released > 0:
                logger.info(f"Background sweep: {released} reservations released")
            return released
        except Exception as e:
            logger.error(f"Background sweep error: {e}")
            return 0

    def _run(self):
        while not self._stop.is_set():
            self.sweep_once()
            self._stop.wait(self.interval)
        logger.info("Expiry sweeper terminated gracefully.")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        # Dedicated daemon so the sweep never blocks HTTP traffic
        self._thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Expiry sweeper started (every {self.interval}s)")
        if not self._atexit_registered:
            atexit.register(self.stop)
            self._atexit_registered = True

    def install_signal_handlers(self):
        """Stop the sweeper on SIGTERM/SIGINT; only valid from the main thread."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame):
        self.stop()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(0)

    def stop(self, timeout: float = 5):
        if not self._stop.is_set():
            logger.info("Stopping expiry sweeper...")
            self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()
