# ace_playbook/refine/scheduler.py

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from ace_playbook.core.schema import RefineResult
from ace_playbook.utils import utc_now

logger = logging.getLogger(__name__)

PassFn = Callable[[Callable[[], bool]], RefineResult]


class BackgroundOptimizer:
    """
    Runs optimizer passes on a daemon thread.

    A pass runs every ``interval_secs`` and additionally after every
    ``trigger_every_n_calls`` recorded calls. The pass function receives a
    ``should_stop`` callable it polls between slices. Failures are logged and
    counted, never raised into the thread.
    """

    def __init__(
        self,
        run_pass: PassFn,
        interval_secs: float = 300.0,
        trigger_every_n_calls: int = 100,
        name: str = "ace-playbook-optimizer",
    ):
        self._run_pass = run_pass
        self.interval_secs = interval_secs
        self.trigger_every_n_calls = trigger_every_n_calls
        self.name = name

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None

        self.calls_since_pass = 0
        self.passes = 0
        self.failures = 0
        self.last_error: str | None = None
        self.last_result: RefineResult | None = None
        self.last_run: datetime | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(
            f"Background optimizer started (interval {self.interval_secs}s, "
            f"every {self.trigger_every_n_calls} calls)"
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        """Signal the thread to stop and wait for the current pass to wind down."""
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        self._wake.set()
        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"Background optimizer did not stop within {timeout}s")
        else:
            self._thread = None
            logger.info("Background optimizer stopped")

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def record_call(self) -> bool:
        """Count a caller-facing operation; wake the thread when the trigger is reached."""
        with self._state_lock:
            self.calls_since_pass += 1
            due = 0 < self.trigger_every_n_calls <= self.calls_since_pass
        if due and self.running:
            self._wake.set()
        return due

    def request_run(self) -> None:
        self._wake.set()

    def run_once(self) -> RefineResult | None:
        """Run a pass on the calling thread."""
        with self._state_lock:
            self.calls_since_pass = 0
        try:
            result = self._run_pass(self._stop.is_set)
        except Exception as e:
            self.failures += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.exception(f"Optimizer pass failed: {e}")
            return None
        finally:
            self.last_run = utc_now()

        if not result.skipped:
            self.passes += 1
        self.last_result = result
        self.last_error = None
        return result

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(timeout=self.interval_secs)
            self._wake.clear()
            if self._stop.is_set():
                break
            self.run_once()
