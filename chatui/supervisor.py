import enum
import logging
import threading
from typing import Callable, Optional

from .config import HEARTBEAT_INTERVAL_SEC, HEARTBEAT_MAX_MISSED

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    ALIVE = "alive"
    DEAD = "dead"


class WorkerSupervisor:
    """Owns the worker instance and decides when it is dead.

    ``worker_factory(post_message)`` must return a started worker exposing
    ``post_message(dict)`` and ``terminate()``. Messages from the current
    worker are forwarded to ``on_message``; a death is reported once through
    ``on_error(reason)``.
    """

    def __init__(
        self,
        worker_factory: Callable,
        on_message: Callable[[dict], None],
        on_error: Callable[[str], None],
        interval_sec: float = HEARTBEAT_INTERVAL_SEC,
        max_missed: int = HEARTBEAT_MAX_MISSED,
    ):
        self._worker_factory = worker_factory
        self._on_message = on_message
        self._on_error = on_error
        self.interval_sec = interval_sec
        self.max_missed = max(1, int(max_missed))

        self._lock = threading.RLock()
        self._worker = None
        self._token = None
        self.state = WorkerState.UNINITIALIZED
        self._awaiting_echo = False
        self._missed = 0

        self._probe_stop: Optional[threading.Event] = None
        self._probe_thread: Optional[threading.Thread] = None

    @property
    def worker(self):
        with self._lock:
            return self._worker

    @property
    def missed_probes(self) -> int:
        with self._lock:
            return self._missed

    def ensure_worker(self):
        """Return the live worker, creating one if there is none."""
        with self._lock:
            if self._worker is not None and self.state == WorkerState.ALIVE:
                return self._worker

            token = object()
            self._token = token
            self._worker = self._worker_factory(lambda message: self._handle_message(token, message))
            self.state = WorkerState.ALIVE
            self._awaiting_echo = False
            self._missed = 0
            logger.info("Worker %s started", getattr(self._worker, "worker_id", "?"))
            return self._worker

    def post(self, message: dict):
        worker = self.ensure_worker()
        try:
            worker.post_message(message)
        except Exception as exc:
            self.mark_dead(f"Worker is unreachable: {exc}")
            raise

    def restart(self):
        with self._lock:
            self._teardown_locked(self._detach_locked())
            self.state = WorkerState.UNINITIALIZED
            return self.ensure_worker()

    def probe(self) -> bool:
        """Run one liveness check.

        Returns ``False`` when no worker is alive after the check. The
        background loop keeps probing regardless, so a worker recreated
        after a death is watched as well.
        """
        with self._lock:
            if self.state == WorkerState.DEAD:
                return False
            if self._worker is None:
                if self.state == WorkerState.UNINITIALIZED:
                    return True
                reason = "Worker is not available"
            else:
                reason = None
                if self._awaiting_echo:
                    self._missed += 1
                    if self._missed >= self.max_missed:
                        reason = f"Worker died: no heartbeat reply after {self._missed} consecutive probes"
            worker = self._worker

        if reason is not None:
            self.mark_dead(reason)
            return False

        try:
            with self._lock:
                self._awaiting_echo = True
            worker.post_message({"type": "heartbeat"})
        except Exception as exc:
            self.mark_dead(f"Worker died: heartbeat could not be delivered ({exc})")
            return False
        return True

    def mark_dead(self, reason: str, token=None) -> bool:
        """Tear the worker down and report ``reason``. Only the first call counts."""
        with self._lock:
            if token is not None and token is not self._token:
                return False
            if self.state == WorkerState.DEAD:
                return False
            self.state = WorkerState.DEAD
            logger.error("Worker marked dead: %s", reason)
            # Teardown disposes the shared pipeline; no replacement may start until it finishes.
            self._teardown_locked(self._detach_locked())

        self._on_error(reason)
        return True

    def _teardown_locked(self, worker):
        if worker is None:
            return
        try:
            worker.terminate()
        except Exception as exc:
            logger.warning("Worker teardown failed: %s", exc)

    def _detach_locked(self):
        worker = self._worker
        self._worker = None
        self._token = None
        self._awaiting_echo = False
        self._missed = 0
        return worker

    def _handle_message(self, token, message: dict):
        with self._lock:
            if token is not self._token:
                # Messages from a torn-down instance are not trusted.
                return
            if message.get("type") == "heartbeat":
                self._awaiting_echo = False
                self._missed = 0
                return

        if message.get("status") == "error":
            self.mark_dead(message.get("message") or "Worker reported an unknown error", token=token)
            return
        self._on_message(message)

    def start(self):
        with self._lock:
            if self._probe_thread is not None and self._probe_thread.is_alive():
                return
            stop = threading.Event()
            self._probe_stop = stop
            self._probe_thread = threading.Thread(
                target=self._probe_loop, args=(stop,), name="chatui-heartbeat", daemon=True
            )
            self._probe_thread.start()

    def stop(self, terminate_worker: bool = True):
        with self._lock:
            stop = self._probe_stop
            self._probe_stop = None
            self._probe_thread = None
            if terminate_worker:
                self._teardown_locked(self._detach_locked())
                self.state = WorkerState.UNINITIALIZED
        if stop is not None:
            stop.set()

    def _probe_loop(self, stop: threading.Event):
        while not stop.wait(self.interval_sec):
            self.probe()
