"""Shared fixtures for wifisniff tests.

Provides:
- a fixed clock (NOW) so window arithmetic is deterministic
- query_line(): builds dnsmasq-style query lines
- a temporary log file writer
"""

from datetime import datetime, timedelta

import pytest

from wifisniff import MONTHS

NOW = datetime(2026, 10, 19, 12, 0, 0)


def stamp(ts: datetime) -> str:
    """Syslog stamp as dnsmasq writes it: day padded to two columns."""
    return f"{MONTHS[ts.month - 1]} {ts.day:>2} {ts:%H:%M:%S}"


def query_line(ts: datetime, domain: str, client: str, qtype: str = "A") -> str:
    return f"{stamp(ts)} dnsmasq[811]: query[{qtype}] {domain} from {client}"


def ago(**kwargs) -> datetime:
    return NOW - timedelta(**kwargs)


@pytest.fixture
def log_file(tmp_path):
    """Empty dnsmasq log in a temp dir."""
    path = tmp_path / "dnsmasq.log"
    path.write_text("")
    return path


def append(path, *lines: str) -> None:
    with open(path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
