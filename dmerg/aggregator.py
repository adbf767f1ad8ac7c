"""MergeAggregator: the single point where both producer streams converge."""

import logging
import sys
import threading

from dmerg.models import TimestampedEntry

logger = logging.getLogger(__name__)


class MergeAggregator:
    """Archives every submitted entry and echoes it to the console in arrival order.

    One lock guards both the archive and the console handle, so concurrent
    submissions never interleave their effects and the console order is
    exactly the order in which ``submit`` acquired the lock.
    """

    def __init__(self, console=None, console_enabled: bool = True):
        self._console = console if console is not None else sys.stdout
        self._console_enabled = console_enabled
        self._archive: list[TimestampedEntry] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._archive)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def submit(self, entry: TimestampedEntry) -> bool:
        """Archive an entry, then print it if console output is enabled.

        Returns False if the aggregator was already closed.
        """
        with self._lock:
            if self._closed:
                logger.debug("Dropping entry submitted after close: %r", entry.text)
                return False

            self._archive.append(entry)

            if self._console_enabled:
                try:
                    self._console.write(entry.format() + "\n")
                    self._console.flush()
                except (OSError, ValueError) as e:
                    # BrokenPipeError, or ValueError once the stream is closed
                    logger.warning("Console output failed (%s), continuing without echo", e)
                    self._console_enabled = False
            return True

    def close(self) -> list[TimestampedEntry]:
        """Stop accepting entries and return the archive in arrival order."""
        with self._lock:
            self._closed = True
            entries = list(self._archive)
        logger.info("Aggregator closed with %d entries", len(entries))
        return entries
