"""
Detection session worker.

Single Responsibility: Own the capture-and-detect loop on one background
thread. The engine state is touched only by that thread; other threads see
immutable snapshots and a one-way queue of DetectionFired events.
"""
import queue
import threading
import time
from typing import Callable, List, Optional

from logger import get_logger
from .audio import AudioBlock, AudioSource
from .detector import DetectionFired, DetectionSnapshot, MatchEngine

log = get_logger(__name__)

Listener = Callable[[DetectionFired], None]


class DetectionSession:
    """
    Runs read -> process -> pace on a worker thread until stopped.

    Capture read failures are treated as silent blocks. After
    max_read_failures consecutive failures the session is marked unhealthy
    and on_health_change(False) is called; the next good read restores it.
    """

    def __init__(
        self,
        source: AudioSource,
        engine: MatchEngine,
        block_size: int = 4096,
        loop_interval: float = 0.1,
        stop_timeout: float = 0.5,
        max_read_failures: int = 10,
        listeners: Optional[List[Listener]] = None,
        on_health_change: Optional[Callable[[bool], None]] = None
    ):
        self.source = source
        self.engine = engine
        self.block_size = block_size
        self.loop_interval = loop_interval
        self.stop_timeout = stop_timeout
        self.max_read_failures = max_read_failures
        self.listeners: List[Listener] = list(listeners or [])
        self.on_health_change = on_health_change
        self.events: "queue.Queue[DetectionFired]" = queue.Queue()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._read_failures = 0
        self._healthy = True
        self._snapshot = engine.snapshot()

    @classmethod
    def from_config(
        cls,
        config: dict,
        source: AudioSource,
        engine: MatchEngine,
        **kwargs
    ) -> "DetectionSession":
        d = config["detection"]
        return cls(
            source,
            engine,
            block_size=int(config["audio"]["block_size"]),
            loop_interval=float(d["loop_interval_sec"]),
            stop_timeout=float(d["stop_timeout_sec"]),
            max_read_failures=int(d["max_read_failures"]),
            **kwargs
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Acquire the capture source and start the worker thread.

        Raises:
            RuntimeError: If the session is already running
        """
        if self.is_running():
            if self.stopping:
                raise RuntimeError("Previous detection worker has not exited yet")
            raise RuntimeError("Detection session already running")
        self._stop_event.clear()
        self.source.start()
        self._thread = threading.Thread(target=self._run, name="chime-detector", daemon=True)
        self._thread.start()
        log.info("Detection session started")

    def stop(self) -> None:
        """Signal the worker, wait up to stop_timeout, then release the source."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(self.stop_timeout)
            if thread.is_alive():
                # Keep the reference so start() can't put a second worker on the engine
                log.warning("Detection worker did not exit within %.1fs", self.stop_timeout)
            else:
                self._thread = None
        self.source.stop()
        log.info("Detection session stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.step()
            self._stop_event.wait(self.loop_interval)

    def step(self) -> Optional[DetectionFired]:
        """
        One loop iteration: read a block and run it through the engine.

        Returns:
            The event published for this block, if any
        """
        event = None
        try:
            samples, count = self.source.read_block(self.block_size)
        except Exception as e:
            self._record_read_failure(e)
        else:
            self._record_read_success()
            if count <= 0:
                self.engine.process_silence()
            else:
                block = AudioBlock(samples[:count], self.source.sample_rate)
                event = self.engine.process_block(block)

        if event is not None:
            if self._stop_event.is_set():
                log.info("Session stopping, detection not published")
                event = None
            else:
                self._publish(event)

        self._snapshot = self.engine.snapshot(self._healthy)
        return event

    def _record_read_failure(self, error: Exception) -> None:
        self._read_failures += 1
        self.engine.process_silence()
        log.debug("Audio read failed (%d in a row): %s", self._read_failures, error)
        if self._healthy and self._read_failures >= self.max_read_failures:
            self._healthy = False
            log.error(
                "Audio capture unhealthy: %d consecutive read failures (last: %s)",
                self._read_failures, error
            )
            self._notify_health(False)

    def _record_read_success(self) -> None:
        self._read_failures = 0
        if not self._healthy:
            self._healthy = True
            log.info("Audio capture recovered")
            self._notify_health(True)

    def _notify_health(self, healthy: bool) -> None:
        if self.on_health_change is None:
            return
        try:
            self.on_health_change(healthy)
        except Exception as e:
            log.warning("Health callback failed: %s", e)

    def _publish(self, event: DetectionFired) -> None:
        if self._stop_event.is_set():
            return
        self.events.put(event)
        for listener in self.listeners:
            if self._stop_event.is_set():
                log.info("Session stopping, remaining listeners skipped")
                return
            try:
                listener(event)
            except Exception as e:
                log.error("Detection listener failed: %s", e)

    # ------------------------------------------------------------------
    # Observer access
    # ------------------------------------------------------------------

    @property
    def healthy(self) -> bool:
        return self._healthy

    def snapshot(self) -> DetectionSnapshot:
        return self._snapshot

    def wait_for_event(self, timeout: Optional[float] = None) -> Optional[DetectionFired]:
        """Block until the next detection (or timeout)."""
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def run_until_stopped(self, poll_interval: float = 1.0) -> None:
        """Block the calling thread while the worker runs."""
        while self.is_running():
            time.sleep(poll_interval)
