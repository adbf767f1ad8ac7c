"""Timestamped entry model shared by both log sources."""

from dataclasses import dataclass
from datetime import datetime

# e.g. 2021-09-17T18:41:02.668895+0000
TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"


def now() -> datetime:
    """Current wall-clock time with the local fixed UTC offset."""
    return datetime.now().astimezone()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp as rendered by journald or dmesg.

    journald: 2021-09-17T07:24:29.446013+0000
    dmesg:    2021-09-17T07:24:23,364133+00:00

    Raises ValueError if the value is not a timestamp.
    """
    return datetime.strptime(value.replace(",", "."), TIME_FORMAT)


@dataclass(frozen=True)
class TimestampedEntry:
    timestamp: datetime  # aware, microsecond precision
    text: str            # raw line, no trailing newline

    def format(self) -> str:
        return f"{self.timestamp.strftime(TIME_FORMAT)} {self.text}"
