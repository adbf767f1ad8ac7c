"""StdinReader: producer thread that stamps each stdin line with its arrival time."""

import logging
import threading

from dmerg.models import TimestampedEntry, now

logger = logging.getLogger(__name__)

READ_SIZE = 65536


class StdinReader(threading.Thread):
    """Reads a binary stream until EOF and submits one entry per line.

    The stream is read in chunks as data becomes available (an unbuffered
    ``io.FileIO`` on fd 0 returns whatever the pipe holds), so lines are
    stamped as soon as their newline arrives. Only the trailing incomplete
    line is held back.
    """

    def __init__(self, stream, submit, on_eof=None, clock=None):
        super().__init__(name="stdin-reader", daemon=True)
        self._stream = stream
        self._submit = submit
        self._on_eof = on_eof
        self._clock = clock or now
        self._stopped = threading.Event()
        self._lines_read = 0

    @property
    def lines_read(self) -> int:
        return self._lines_read

    def _emit(self, raw: bytes):
        if self._stopped.is_set():
            return
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        self._lines_read += 1
        self._submit(TimestampedEntry(self._clock(), line))

    def run(self):
        partial = b""
        while True:
            try:
                chunk = self._stream.read(READ_SIZE)
            except (OSError, ValueError) as e:
                # ValueError: stream closed underneath an abandoned reader
                logger.error("Reading stdin failed: %s", e)
                break
            if not chunk:
                break

            data = partial + chunk
            lines = data.split(b"\n")
            # Last element is the incomplete line (empty if data ended with \n)
            partial = lines.pop()
            for raw in lines:
                self._emit(raw)

        if partial:
            self._emit(partial)

        logger.info("stdin closed after %d lines", self._lines_read)
        if self._on_eof and not self._stopped.is_set():
            self._on_eof("stdin closed")

    def stop(self):
        """Discard anything read from now on. A blocked read is abandoned, not interrupted."""
        self._stopped.set()
