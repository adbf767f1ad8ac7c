"""Output writer: stable timestamp sort and atomic write of the merged log."""

import os
import random
import string
import logging
import tempfile

from dmerg.models import TimestampedEntry

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "dmerged"
SUFFIX_LENGTH = 16


class OutputWriteError(Exception):
    """Raised when the merged log cannot be written to its destination."""


def generate_output_name(prefix: str = DEFAULT_PREFIX, length: int = SUFFIX_LENGTH) -> str:
    """Return e.g. ``dmerged.4fQz9XkT0bLw2RyA``."""
    alphabet = string.ascii_letters + string.digits
    suffix = "".join(random.SystemRandom().choice(alphabet) for _ in range(length))
    return f"{prefix}.{suffix}"


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def sort_entries(entries: list[TimestampedEntry]) -> list[TimestampedEntry]:
    """Ascending by timestamp. sorted() is stable, so ties keep arrival order."""
    return sorted(entries, key=lambda e: e.timestamp)


class OutputWriter:
    def __init__(self, output_path: str | None = None, prefix: str = DEFAULT_PREFIX,
                 directory: str | None = None):
        self._output_path = output_path
        self._prefix = prefix
        self._directory = directory
        self._destination: str | None = None

    @property
    def generated(self) -> bool:
        return self._output_path is None

    @property
    def destination(self) -> str:
        """Resolve the destination once: explicit path, or a fresh random name in cwd."""
        if self._destination is None:
            if self._output_path:
                self._destination = self._output_path
            else:
                directory = self._directory or os.getcwd()
                while True:
                    candidate = os.path.join(directory, generate_output_name(self._prefix))
                    if not os.path.exists(candidate):
                        break
                self._destination = candidate
        return self._destination

    def write(self, entries: list[TimestampedEntry]) -> str:
        """Sort and write all entries. Returns the destination path.

        Writes to a temporary file next to the destination and renames it into
        place, so a failure never leaves a partial file behind.
        """
        ordered = sort_entries(entries)
        path = self.destination
        directory = os.path.dirname(os.path.abspath(path))

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                # mkstemp creates 0600
                os.fchmod(f.fileno(), 0o666 & ~_current_umask())
                for entry in ordered:
                    f.write(entry.format() + "\n")
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise OutputWriteError(f"Cannot write {path}: {e}") from e

        logger.info("Wrote %d entries to %s", len(ordered), path)
        return path
