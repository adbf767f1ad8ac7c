"""ShutdownController: drains producers and hands the archive to the writer."""

import enum
import logging
import os
import signal
import threading

from dmerg.aggregator import MergeAggregator
from dmerg.writer import OutputWriter

logger = logging.getLogger(__name__)

WAIT_INTERVAL = 0.5


class State(enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class ShutdownController:
    """Running -> Draining -> Terminated.

    A stop is requested either by the stdin reader reaching EOF or by SIGINT /
    SIGTERM. A signal that arrives after an interrupt was already handled, or
    while draining, forces an immediate exit without writing the output file.
    """

    def __init__(self, aggregator: MergeAggregator, writer: OutputWriter,
                 drain_timeout: float = 2.0, exit_func=None):
        self._aggregator = aggregator
        self._writer = writer
        self._drain_timeout = drain_timeout
        self._exit_func = exit_func or os._exit
        self._producers = []
        self._stop_event = threading.Event()
        self._lock = threading.RLock()  # re-entered by signal handlers on the main thread
        self._state = State.RUNNING
        self._reason: str | None = None
        self._interrupted = False
        self._previous_handlers: dict = {}

    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _set_state(self, state: State):
        with self._lock:
            self._state = state
        logger.debug("Shutdown state: %s", state.value)

    def add_producer(self, producer):
        """Register a thread exposing stop() and join(timeout)."""
        self._producers.append(producer)

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)):
        for sig in signals:
            self._previous_handlers[sig] = signal.signal(sig, self.handle_signal)

    def restore_signal_handlers(self):
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def handle_signal(self, signum, _frame=None):
        with self._lock:
            force = self._interrupted or self._state is not State.RUNNING
            self._interrupted = True
        if force:
            logger.warning("Second signal %d received, exiting without writing output", signum)
            self._exit_func(128 + signum)
            return
        logger.info("Shutdown signal received (signal %d), draining...", signum)
        self.request_stop(f"signal {signum}")

    def request_stop(self, reason: str):
        with self._lock:
            if self._reason is None:
                self._reason = reason
        logger.info("Stop requested: %s", reason)
        self._stop_event.set()

    def wait(self):
        """Block until a stop is requested. Wakes up regularly so signals are handled promptly."""
        while not self._stop_event.wait(WAIT_INTERVAL):
            pass

    def drain(self) -> list:
        """Stop all producers, wait briefly for in-flight entries, close the archive."""
        self._set_state(State.DRAINING)
        for producer in self._producers:
            producer.stop()
        for producer in self._producers:
            producer.join(timeout=self._drain_timeout)
            if producer.is_alive():
                # e.g. the stdin reader blocked on a silent pipe
                logger.info("Abandoning %s, still blocked after %.1fs",
                            producer.name, self._drain_timeout)
        return self._aggregator.close()

    def run(self) -> str:
        """Wait for a stop, drain, and write the sorted archive. Returns the output path."""
        self.wait()
        entries = self.drain()
        try:
            return self._writer.write(entries)
        finally:
            self._set_state(State.TERMINATED)
