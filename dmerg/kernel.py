"""Kernel log sources: live journal feed and polled dmesg ring-buffer snapshots.

Both sources normalize kernel timestamps to wall-clock time before an entry
leaves this module, and both expose the same interface:

    source.entries()  -> iterator of TimestampedEntry, runs until close()
    source.close()

Construction fails fast with SourceUnavailable when the backing tool cannot
be run or the caller lacks permission to read the kernel log.
"""

import logging
import re
import subprocess
import threading
from datetime import datetime, timedelta
from typing import Iterator

from dmerg.config import Config
from dmerg.models import TimestampedEntry, now, parse_timestamp

logger = logging.getLogger(__name__)

JOURNAL_CHECK_CMD = ["journalctl", "-k", "-n", "1", "-q"]
JOURNAL_FOLLOW_CMD = ["journalctl", "-k", "-f", "-o", "short-iso-precise"]
DMESG_CMD = ["dmesg"]

# [   12.345678] usb 1-1: new high-speed USB device
_DMESG_RE = re.compile(r"^\[\s*(\d+\.\d+)\]\s?(.*)$")


class SourceUnavailable(Exception):
    """Raised when the kernel log cannot be accessed."""


def parse_journal_line(line: str) -> TimestampedEntry | None:
    """Parse a ``short-iso-precise`` journal line.

    Expected format:
        2021-09-17T07:24:29.446013+0000 myhost kernel: usb 1-1: new device
    Returns None for header lines and anything without a leading timestamp.
    """
    parts = line.split(None, 1)
    if not parts:
        return None
    try:
        timestamp = parse_timestamp(parts[0])
    except ValueError:
        return None
    return TimestampedEntry(timestamp, parts[1] if len(parts) > 1 else "")


def parse_dmesg_line(line: str) -> tuple[float, str] | None:
    """Parse a raw dmesg line into (seconds since boot, text)."""
    match = _DMESG_RE.match(line)
    if not match:
        return None
    return float(match.group(1)), match.group(2)


def read_uptime(path: str = "/proc/uptime") -> float:
    with open(path, "r", encoding="ascii") as f:
        return float(f.read().split()[0])


class JournalSource:
    """Follows the kernel journal through a ``journalctl -f`` child process."""

    def __init__(self, cutoff: datetime, full_output: bool = False,
                 runner=None, popen=None):
        self._cutoff = cutoff
        self._full_output = full_output
        self._runner = runner or subprocess.run
        self._popen = popen or subprocess.Popen
        self._closed = False

        self._check_access()
        cmd = self.command()
        try:
            self._proc = self._popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise SourceUnavailable(f"Cannot start journalctl: {e}") from e
        logger.info("Following kernel journal: %s", " ".join(cmd))

    def _check_access(self):
        """Run journalctl once so a permission problem surfaces before merging starts."""
        try:
            result = self._runner(JOURNAL_CHECK_CMD, capture_output=True, text=True)
        except OSError as e:
            raise SourceUnavailable(f"Cannot run journalctl: {e}") from e
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise SourceUnavailable(f"Cannot read the kernel journal: {detail}")

    def command(self) -> list[str]:
        if self._full_output:
            return JOURNAL_FOLLOW_CMD + ["--no-tail"]
        return JOURNAL_FOLLOW_CMD + ["--since", f"@{int(self._cutoff.timestamp())}"]

    def entries(self) -> Iterator[TimestampedEntry]:
        try:
            for line in self._proc.stdout:
                if self._closed:
                    break
                entry = parse_journal_line(line.rstrip("\n"))
                if entry is None:
                    logger.debug("Skipping journal line: %r", line)
                    continue
                # --since only has second resolution
                if self._full_output or entry.timestamp >= self._cutoff:
                    yield entry
        finally:
            self._terminate()

    def _terminate(self):
        if self._proc.poll() is None:
            self._proc.terminate()
        self._proc.wait()

    def close(self):
        self._closed = True
        if self._proc.poll() is None:
            self._proc.terminate()


class SnapshotSource:
    """Polls the whole kernel ring buffer with ``dmesg`` and emits only new records.

    dmesg reports seconds since boot. They are converted to wall-clock time with
    a boot time computed once at startup. The ring-buffer clock may drift from
    the system clock, so records that land before the cutoff are dropped and the
    first kernel messages of a run can show up late.
    """

    def __init__(self, cutoff: datetime, full_output: bool = False,
                 poll_interval: float = 1.0, runner=None, uptime_func=None, clock=None):
        self._cutoff = cutoff
        self._full_output = full_output
        self._poll_interval = poll_interval
        self._runner = runner or subprocess.run
        clock = clock or now
        uptime_func = uptime_func or read_uptime

        try:
            self._boot_time = clock() - timedelta(seconds=uptime_func())
        except (OSError, ValueError, IndexError) as e:
            raise SourceUnavailable(f"Cannot determine boot time: {e}") from e

        # Watermark: newest kernel time emitted and how many records carried it
        self._mark: float | None = None
        self._mark_count = 0
        self._stop = threading.Event()
        self._pending = self._read_buffer()
        logger.info("Polling kernel ring buffer every %.1fs (boot time %s)",
                    poll_interval, self._boot_time.isoformat())

    @property
    def boot_time(self) -> datetime:
        return self._boot_time

    def _read_buffer(self) -> str:
        try:
            result = self._runner(DMESG_CMD, capture_output=True, text=True,
                                  encoding="utf-8", errors="replace")
        except OSError as e:
            raise SourceUnavailable(f"Cannot run dmesg: {e}") from e
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise SourceUnavailable(f"Cannot read the kernel ring buffer: {detail}")
        return result.stdout

    def _new_records(self, records: list[tuple[float, str]]) -> list[tuple[float, str]]:
        """Drop records at or below the watermark that an earlier poll already emitted."""
        fresh = []
        at_mark = 0
        for seconds, text in records:
            if self._mark is not None:
                if seconds < self._mark:
                    continue
                if seconds == self._mark:
                    at_mark += 1
                    if at_mark <= self._mark_count:
                        continue
            fresh.append((seconds, text))

        if fresh:
            # Records from different CPUs can sit slightly out of order
            newest = max(seconds for seconds, _ in fresh)
            self._mark = newest
            self._mark_count = sum(1 for seconds, _ in records if seconds == newest)
        return fresh

    def poll(self, output: str | None = None) -> list[TimestampedEntry]:
        """Read one snapshot and return the entries not seen in earlier polls."""
        if output is None:
            output = self._read_buffer()

        records = []
        for line in output.splitlines():
            parsed = parse_dmesg_line(line)
            if parsed is None:
                logger.debug("Skipping dmesg line: %r", line)
                continue
            records.append(parsed)

        entries = []
        for seconds, text in self._new_records(records):
            timestamp = self._boot_time + timedelta(seconds=seconds)
            if self._full_output or timestamp >= self._cutoff:
                entries.append(TimestampedEntry(timestamp, text))
        return entries

    def entries(self) -> Iterator[TimestampedEntry]:
        while not self._stop.is_set():
            output, self._pending = self._pending, None
            try:
                batch = self.poll(output)
            except SourceUnavailable as e:
                logger.warning("dmesg poll failed, retrying: %s", e)
                batch = []
            for entry in batch:
                if self._stop.is_set():
                    return
                yield entry
            self._stop.wait(self._poll_interval)

    def close(self):
        self._stop.set()


def open_kernel_source(config: Config, cutoff: datetime):
    """Open the kernel log strategy selected by the configuration."""
    if config.use_polled_snapshot:
        return SnapshotSource(cutoff, config.full_kernel_output, config.poll_interval)
    return JournalSource(cutoff, config.full_kernel_output)


class KernelReader(threading.Thread):
    """Producer thread that drains a kernel source into the aggregator."""

    def __init__(self, source, submit):
        super().__init__(name="kernel-reader", daemon=True)
        self._source = source
        self._submit = submit
        self._stopped = threading.Event()
        self._entries_read = 0

    @property
    def entries_read(self) -> int:
        return self._entries_read

    def run(self):
        for entry in self._source.entries():
            if self._stopped.is_set():
                break
            self._entries_read += 1
            self._submit(entry)
        logger.info("Kernel log reader finished after %d entries", self._entries_read)

    def stop(self):
        self._stopped.set()
        self._source.close()
