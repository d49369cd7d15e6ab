# OzWallet Processors
# Logging setup and the background loops that drive billing, cancellations
# and orphan cleanup. The loops never talk to each other; all coordination
# happens through the database.

import logging
import os
import threading
from typing import Callable, Optional

LOG_FILE = os.environ.get(
    "OZWALLET_LOG_FILE", os.path.join(os.path.dirname(__file__), "ozwallet.log")
)

log = logging.getLogger("ozwallet")


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the ozwallet logger. Safe to call twice."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("ozwallet")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Periodic Tasks ────────────────────────────────────────────────────


class PeriodicTask:
    """Run `fn` every `interval` seconds in a daemon thread.

    The first run happens after `initial_delay`. A tick that raises is
    logged and the loop carries on with the next tick.
    """

    def __init__(self, name: str, fn: Callable, interval: float,
                 initial_delay: float = 0.0, callback: Optional[Callable] = None):
        self.name = name
        self.fn = fn
        self.interval = interval
        self.initial_delay = initial_delay
        self.callback = callback
        self.runs = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _loop(self):
        if self._stop.wait(self.initial_delay):
            return
        while not self._stop.is_set():
            try:
                result = self.fn()
                self.runs += 1
                if self.callback:
                    self.callback(result)
            except Exception:
                log.exception("%s tick failed", self.name)
            if self._stop.wait(self.interval):
                return

    def start(self) -> "PeriodicTask":
        if self._thread and self._thread.is_alive():
            log.info("%s already running", self.name)
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        log.info("Started %s (every %ss, first run in %ss)",
                 self.name, self.interval, self.initial_delay)
        return self

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


_tasks: list[PeriodicTask] = []
_tasks_lock = threading.Lock()


def start_processors() -> list[PeriodicTask]:
    """Start the billing, cancellation and orphan cleanup loops once per process."""
    from billing import start_billing_processor
    from cancellations import start_cancellation_processor
    from orphans import start_orphan_cleanup_processor

    with _tasks_lock:
        if _tasks:
            return list(_tasks)
        _tasks.extend([
            start_billing_processor(),
            start_cancellation_processor(),
            start_orphan_cleanup_processor(),
        ])
        return list(_tasks)


def stop_processors(timeout: Optional[float] = 5.0):
    with _tasks_lock:
        for task in _tasks:
            task.stop(timeout)
        _tasks.clear()


def processor_status() -> list[dict]:
    with _tasks_lock:
        return [
            {"name": t.name, "alive": t.alive, "runs": t.runs, "interval": t.interval}
            for t in _tasks
        ]
