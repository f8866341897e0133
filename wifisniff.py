#!/usr/bin/env python3
"""Wifi Sniffer: Textual TUI for watching per-client DNS queries from a dnsmasq log."""

import argparse
import asyncio
import ipaddress
import json
import logging
import os
import re
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, TextIO

from rich.console import Console, Group
from rich.table import Table
from rich.text import Text

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.screen import Screen
from textual.timer import Timer
from textual.widgets import Footer, Static
from textual.worker import Worker, WorkerState

log = logging.getLogger("wifisniff")
log.addHandler(logging.NullHandler())

# ─── Defaults ─────────────────────────────────────────────────────────────────
DEFAULT_LOG_FILE = Path("/var/log/dnsmasq.log")
DEFAULT_MINUTES = 60           # recency window
DEFAULT_MAX_DOMAINS = 20       # rows in the per-client domain table
DEFAULT_REFRESH = 1.0          # UI tick (seconds)
DEFAULT_MAX_LINES = 25000      # buffer cap enforced by the trimmer
DEFAULT_TRIM_INTERVAL = 3.0
DEFAULT_POLL_INTERVAL = 0.25   # tailer poll
DEFAULT_STALE_AFTER = 10.0     # seconds without a successful read before warning
CONFIG_FILENAME = "wifisniff.json"

NOTICE_SECONDS = 1.5
# ASCII only: str.isdigit() also accepts keys such as "²"
DIGITS = frozenset("0123456789")
BANNER = "Wifi Sniffer - Client Traffic Monitor"

# ─── Log format ───────────────────────────────────────────────────────────────
# Oct 19 09:57:01 dnsmasq[811]: query[A] example.com from 10.0.0.5
QUERY_RE = re.compile(
    r"^(?P<ts>[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s"
    r".*?query\[(?P<qtype>[^\]]*)\]\s+(?P<domain>\S+)\s+from\s+(?P<client>[0-9A-Fa-f:.]+)\s*$"
)
# Loose filter used while ingesting; the aggregator applies QUERY_RE.
QUERY_HINT_RE = re.compile(r"query\[[^\]]*\]\s+\S+\s+from\s+\S+")
STAMP_RE = re.compile(r"^([A-Z][a-z]{2})\s+(\d{1,2})\s+(\d{2}):(\d{2}):(\d{2})$")

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
MONTH_NUMBERS = {name: idx for idx, name in enumerate(MONTHS, start=1)}

# A December line read in January lands almost a year in the future with the
# current year; anything further ahead than this belongs to the previous year.
FUTURE_TOLERANCE = timedelta(days=1)

# ─── Styles ───────────────────────────────────────────────────────────────────
DEFAULT_STYLES = {
    "banner": "bold #5fd7d7",
    "index": "#5fafff",
    "client": "bold #87d787",
    "domain": "#87d787",
    "count": "#5fd7d7",
    "time": "dim",
    "header": "bold",
    "prompt": "#d7af5f",
    "hint": "#d787d7",
    "error": "bold #ff5f5f",
    "ok": "#87d787",
    "warn": "bold #d7af5f",
}


# ─── Errors ───────────────────────────────────────────────────────────────────

class StartupError(Exception):
    """A precondition failed before the dashboard could start."""


class ConfigError(StartupError):
    """The config file is missing, unreadable or malformed."""


# ─── Data layer ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueryRecord:
    """One parsed query line."""
    timestamp: datetime
    domain: str
    client: str
    qtype: str = ""


@dataclass(frozen=True)
class AggregationRecord:
    count: int
    last_seen: datetime


@dataclass(frozen=True)
class ClientSummary:
    client: str
    last_seen: datetime
    domains: int = 0
    queries: int = 0


@dataclass(frozen=True)
class Aggregation:
    """Result of one aggregation pass. Rebuilt on every tick, never updated."""
    records: dict[tuple[str, str], AggregationRecord]
    clients: dict[str, ClientSummary]
    skipped: int = 0

    def domains_for(self, client: str) -> list[tuple[str, AggregationRecord]]:
        return [(domain, rec) for (ip, domain), rec in self.records.items() if ip == client]


def is_query_line(line: str) -> bool:
    return QUERY_HINT_RE.search(line) is not None


def resolve_timestamp(stamp: str, now: datetime) -> datetime | None:
    """Turn a syslog stamp (``Oct 19 09:57:01``) into a datetime.

    The log carries no year. The current year is assumed unless that puts the
    line more than FUTURE_TOLERANCE ahead of ``now``, in which case the
    previous year is used.
    """
    m = STAMP_RE.match(stamp.strip())
    if not m:
        return None
    month = MONTH_NUMBERS.get(m.group(1))
    if month is None:
        return None
    day, hour, minute, second = (int(g) for g in m.groups()[1:])
    for year in (now.year, now.year - 1):
        try:
            ts = datetime(year, month, day, hour, minute, second)
        except ValueError:
            # Feb 29 outside a leap year, or a bogus day/time
            continue
        if ts - now <= FUTURE_TOLERANCE:
            return ts
    return None


def parse_query_line(line: str, now: datetime) -> QueryRecord | None:
    """Parse a dnsmasq query line; None when the shape or timestamp is off."""
    m = QUERY_RE.match(line)
    if not m:
        return None
    ts = resolve_timestamp(m.group("ts"), now)
    if ts is None:
        return None
    return QueryRecord(
        timestamp=ts,
        domain=m.group("domain"),
        client=m.group("client"),
        qtype=m.group("qtype"),
    )


def aggregate(lines: Iterable[str], now: datetime, timeframe_minutes: int) -> Aggregation:
    """Count queries per (client, domain) inside the recency window.

    A line is in the window when ``now - timestamp <= timeframe_minutes * 60``
    seconds, so a query exactly ``timeframe_minutes`` old is still counted.
    Pure function of its arguments: the same lines and ``now`` give an equal
    result.
    """
    horizon = timeframe_minutes * 60
    counts: dict[tuple[str, str], int] = {}
    last_seen: dict[tuple[str, str], datetime] = {}
    client_last: dict[str, datetime] = {}
    client_queries: dict[str, int] = {}
    skipped = 0

    for line in lines:
        record = parse_query_line(line, now)
        if record is None:
            skipped += 1
            log.debug("skipped unparseable line: %r", line[:200])
            continue
        if (now - record.timestamp).total_seconds() > horizon:
            continue
        key = (record.client, record.domain)
        counts[key] = counts.get(key, 0) + 1
        if key not in last_seen or last_seen[key] < record.timestamp:
            last_seen[key] = record.timestamp
        if record.client not in client_last or client_last[record.client] < record.timestamp:
            client_last[record.client] = record.timestamp
        client_queries[record.client] = client_queries.get(record.client, 0) + 1

    records = {key: AggregationRecord(count=counts[key], last_seen=last_seen[key]) for key in counts}
    domain_counts: dict[str, int] = {}
    for ip, _domain in records:
        domain_counts[ip] = domain_counts.get(ip, 0) + 1
    clients = {
        ip: ClientSummary(
            client=ip,
            last_seen=ts,
            domains=domain_counts.get(ip, 0),
            queries=client_queries.get(ip, 0),
        )
        for ip, ts in client_last.items()
    }
    return Aggregation(records=records, clients=clients, skipped=skipped)


# ─── Log tailer ───────────────────────────────────────────────────────────────

class LogTailer:
    """Incremental reader for an append-only log, tracks offset and inode.

    Behaves like ``tail -F``: a truncated file is re-read from the start, a
    rotated file (new inode at the same path) is reopened, and a line without
    its trailing newline is held back until the rest arrives.

    Truncation is noticed either by the file shrinking below the read offset
    or by its first ``head_bytes`` changing. The second case catches a
    ``copytruncate`` rotation that has already grown past the old offset.
    """

    block_size = 64 * 1024
    head_bytes = 128

    def __init__(self, path: Path, accept: Callable[[str], bool] = is_query_line):
        self.path = path
        self.accept = accept
        self.offset = 0
        self.inode: int | None = None
        self.partial = ""
        self.head = b""

    def seed(self, max_lines: int) -> list[str]:
        """Return the last ``max_lines`` matching lines of the existing file.

        Reads backwards from the end in ``block_size`` chunks and stops as
        soon as enough lines are found, so a huge log is not scanned whole.
        """
        found: list[str] = []
        with open(self.path, "rb") as f:
            st = os.fstat(f.fileno())
            self.inode = st.st_ino
            pos = st.st_size
            carry = b""
            partial: bytes | None = None
            while pos > 0 and len(found) < max_lines:
                step = min(self.block_size, pos)
                pos -= step
                f.seek(pos)
                pieces = (f.read(step) + carry).split(b"\n")
                # the first piece may continue in the previous block
                carry = pieces.pop(0) if pos > 0 else b""
                if partial is None:
                    if not pieces:
                        continue
                    partial = pieces.pop()
                for raw in reversed(pieces):
                    line = raw.decode("utf-8", errors="replace").rstrip("\r")
                    if self.accept(line):
                        found.append(line)
                        if len(found) == max_lines:
                            break
            self.partial = (partial or b"").decode("utf-8", errors="replace")
            self.offset = st.st_size
            f.seek(0)
            self.head = f.read(self.head_bytes)
        found.reverse()
        return found

    def _rewind(self) -> None:
        self.offset = 0
        self.partial = ""
        self.head = b""

    def poll(self) -> list[str]:
        """Return new complete matching lines since the last poll.

        Raises OSError (e.g. FileNotFoundError) when the log cannot be read;
        the caller decides whether to retry.
        """
        with open(self.path, "rb") as f:
            st = os.fstat(f.fileno())
            if self.inode is not None and st.st_ino != self.inode:
                log.info("log rotated, reopening %s", self.path)
                self._rewind()
            elif st.st_size < self.offset or f.read(len(self.head)) != self.head:
                log.info("log truncated, rereading %s", self.path)
                self._rewind()
            self.inode = st.st_ino
            if st.st_size == self.offset:
                return []

            f.seek(self.offset)
            data = f.read()
            self.offset = f.tell()
            if len(self.head) < self.head_bytes:
                f.seek(0)
                self.head = f.read(self.head_bytes)

        lines = (self.partial + data.decode("utf-8", errors="replace")).split("\n")
        self.partial = lines.pop()
        return [line.rstrip("\r") for line in lines if self.accept(line)]


# ─── Buffer & ingestion ───────────────────────────────────────────────────────

class LineBuffer:
    """Bounded window of recent log lines held as an immutable tuple.

    Every change builds a new tuple and swaps the reference, so ``snapshot()``
    always hands out a complete sequence that later writes cannot touch.
    """

    def __init__(self, max_lines: int):
        self.max_lines = max_lines
        self._lines: tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self._lines)

    def snapshot(self) -> tuple[str, ...]:
        return self._lines

    def extend(self, lines: Iterable[str]) -> None:
        new = tuple(lines)
        if new:
            self._lines = self._lines + new

    def trim(self) -> int:
        """Keep only the last ``max_lines`` lines. Returns how many were dropped."""
        lines = self._lines
        dropped = len(lines) - self.max_lines
        if dropped <= 0:
            return 0
        self._lines = lines[-self.max_lines:]
        return dropped

    def clear(self) -> None:
        self._lines = ()


@dataclass
class IngestHealth:
    """What the UI knows about the background tailer."""
    last_ok: datetime | None = None
    error: str | None = None
    stopped: bool = False

    def is_stale(self, now: datetime, stale_after: float) -> bool:
        if self.stopped or self.last_ok is None:
            return True
        return (now - self.last_ok).total_seconds() > stale_after


class Ingestor:
    """Owns the tailer, the shared buffer and the two background loops.

    Use as a context manager: entering seeds the buffer from the tail of the
    existing log, leaving clears it on every exit path. ``tail_forever`` and
    ``trim_forever`` must run on the same event loop; they are the only
    writers and never interleave.
    """

    def __init__(
        self,
        tailer: LogTailer,
        max_lines: int = DEFAULT_MAX_LINES,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        trim_interval: float = DEFAULT_TRIM_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.tailer = tailer
        self.buffer = LineBuffer(max_lines)
        self.poll_interval = poll_interval
        self.trim_interval = trim_interval
        self.clock = clock
        self.health = IngestHealth()

    def __enter__(self) -> "Ingestor":
        try:
            seeded = self.tailer.seed(self.buffer.max_lines)
        except OSError as exc:
            raise StartupError(f"Cannot read log file {self.tailer.path}: {exc}") from exc
        self.buffer.extend(seeded)
        self.health.last_ok = self.clock()
        log.info("seeded %d lines from %s", len(seeded), self.tailer.path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.buffer.clear()
        self.health.stopped = True
        log.info("ingestion closed, buffer released")

    async def poll_once(self) -> int:
        """Read whatever the tailer has and append it. Returns the line count."""
        try:
            lines = await asyncio.to_thread(self.tailer.poll)
        except OSError as exc:
            if self.health.error != str(exc):
                log.warning("cannot read %s: %s", self.tailer.path, exc)
            self.health.error = str(exc)
            return 0
        self.buffer.extend(lines)
        self.health.last_ok = self.clock()
        if self.health.error is not None:
            log.info("reading %s again", self.tailer.path)
            self.health.error = None
        return len(lines)

    async def tail_forever(self) -> None:
        self.health.stopped = False
        try:
            while True:
                await self.poll_once()
                await asyncio.sleep(self.poll_interval)
        finally:
            self.health.stopped = True

    async def trim_forever(self) -> None:
        while True:
            await asyncio.sleep(self.trim_interval)
            dropped = self.buffer.trim()
            if dropped:
                log.debug("trimmed %d lines, %d kept", dropped, len(self.buffer))


# ─── Layout & rendering ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Columns:
    domain: int
    count: int
    time: int


@dataclass
class Layout:
    """Column geometry and palette. ``width`` pins the terminal width (tests)."""
    width: int | None = None
    min_width: int = 60
    fallback_width: int = 80
    reserved: int = 30
    min_domain: int = 20
    count_width: int = 8
    time_width: int = 10
    styles: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STYLES))

    def terminal_width(self, probed: int | None = None) -> int:
        width = self.width if self.width is not None else probed
        if not width or width < self.min_width:
            return self.fallback_width
        return width

    def columns(self, probed: int | None = None) -> Columns:
        width = self.terminal_width(probed)
        return Columns(
            domain=max(width - self.reserved, self.min_domain),
            count=self.count_width,
            time=self.time_width,
        )

    def style(self, name: str) -> str:
        return self.styles.get(name, "")


@dataclass(frozen=True)
class DomainRow:
    """One formatted row of the domain table."""
    domain: str
    count: int
    last_seen: str


def truncate_domain(domain: str, width: int) -> str:
    """google-analytics.example.com → google-analy... (exactly ``width`` chars)"""
    if len(domain) > width - 3:
        return domain[:max(width - 3, 0)] + "..."
    return domain


def _address_key(client: str) -> tuple[int, int, str]:
    try:
        addr = ipaddress.ip_address(client)
    except ValueError:
        return (99, 0, client)
    return (addr.version, int(addr), client)


def sort_clients(clients: Iterable[ClientSummary]) -> list[ClientSummary]:
    """Most recent first; equal timestamps in ascending address order."""
    ordered = sorted(clients, key=lambda c: _address_key(c.client))
    ordered.sort(key=lambda c: c.last_seen, reverse=True)
    return ordered


def sort_domains(
    pairs: Iterable[tuple[str, AggregationRecord]], limit: int | None = None
) -> list[tuple[str, AggregationRecord]]:
    """Highest count first, then most recent, then domain name."""
    ordered = sorted(pairs, key=lambda p: p[0])
    ordered.sort(key=lambda p: p[1].last_seen, reverse=True)
    ordered.sort(key=lambda p: p[1].count, reverse=True)
    return ordered if limit is None else ordered[:limit]


def format_domain_rows(pairs: list[tuple[str, AggregationRecord]], columns: Columns) -> list[DomainRow]:
    return [
        DomainRow(
            domain=truncate_domain(domain, columns.domain),
            count=rec.count,
            last_seen=rec.last_seen.strftime("%H:%M:%S"),
        )
        for domain, rec in pairs
    ]


def format_age(seconds: float) -> str:
    """Short relative age: 42s, 7m, 1h05m."""
    seconds = max(int(seconds), 0)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h{minutes % 60:02d}m"


def render_header(
    minutes: int,
    health: IngestHealth,
    buffered: int,
    now: datetime,
    stale_after: float,
    layout: Layout,
) -> Text:
    text = Text()
    text.append(f" 📡 {BANNER}", style=layout.style("banner"))
    text.append(f"  │  last {minutes} min  │  {buffered} lines buffered  │  {now:%H:%M:%S}", style="dim")
    text.append("\n ")
    if health.is_stale(now, stale_after):
        if health.last_ok is None:
            age = "never"
        else:
            age = f"{format_age((now - health.last_ok).total_seconds())} ago"
        state = "stopped" if health.stopped else "stalled"
        text.append(f"⚠ log ingestion {state}, last read {age}", style=layout.style("warn"))
        if health.error:
            text.append(f": {health.error}", style=layout.style("error"))
    else:
        text.append("● live", style=layout.style("ok"))
    return text


def render_client_table(clients: list[ClientSummary], now: datetime, minutes: int, layout: Layout):
    if not clients:
        return Text(f"No active clients in the last {minutes} minutes.", style=layout.style("error"))

    table = Table(show_header=True, show_edge=False, box=None, padding=(0, 1))
    table.add_column("#", justify="right", width=3, style=layout.style("index"))
    table.add_column("Client", min_width=15, style=layout.style("client"), no_wrap=True)
    table.add_column("Last Seen", width=layout.time_width, style=layout.style("time"))
    table.add_column("Age", justify="right", width=6, style=layout.style("time"))
    table.add_column("Domains", justify="right", width=7, style=layout.style("count"))
    table.add_column("Queries", justify="right", width=7, style=layout.style("count"))

    for idx, summary in enumerate(clients, start=1):
        table.add_row(
            f"{idx})",
            summary.client,
            summary.last_seen.strftime("%H:%M:%S"),
            format_age((now - summary.last_seen).total_seconds()),
            str(summary.domains),
            str(summary.queries),
        )
    return table


def render_domain_table(client: str, rows: list[DomainRow], minutes: int, columns: Columns, layout: Layout) -> Group:
    title = Text()
    title.append("DNS queries for client: ", style=layout.style("header"))
    title.append(client, style=layout.style("client"))
    title.append(f" (last {minutes} min)\n", style=layout.style("header"))

    if not rows:
        return Group(
            title,
            Text(f"No DNS queries from this client in the last {minutes} minutes.", style=layout.style("error")),
        )

    table = Table(show_header=True, show_edge=False, box=None, padding=(0, 1), header_style=layout.style("header"))
    table.add_column("Domain", width=columns.domain, no_wrap=True, overflow="crop", style=layout.style("domain"))
    table.add_column("Count", width=columns.count, no_wrap=True, style=layout.style("count"))
    table.add_column("Last Seen", width=columns.time, no_wrap=True, style=layout.style("time"))
    for row in rows:
        table.add_row(row.domain, str(row.count), row.last_seen)
    return Group(title, table)


# ─── Screens ──────────────────────────────────────────────────────────────────

class DashboardScreen(Screen):
    """Common frame: header, body, notice line, footer. Re-rendered on every tick."""

    def compose(self) -> ComposeResult:
        yield Static("", id="header-bar")
        yield Static("", id="body")
        yield Static("", id="notice")
        yield Footer()

    def on_mount(self) -> None:
        self.refresh_view()

    def on_screen_resume(self) -> None:
        if self.is_mounted:
            self.refresh_view()

    def _body_width(self) -> int:
        # two columns of horizontal padding on #body
        return self.size.width - 2

    def refresh_view(self) -> None:
        raise NotImplementedError


class ClientListScreen(DashboardScreen):
    """Clients active in the window, newest first. Digits pick one."""

    BINDINGS = [
        Binding("q", "app.quit", "Quit", show=True),
        Binding("enter", "commit_selection", "Select", show=True),
        Binding("escape", "clear_selection", "Clear", show=False),
        Binding("backspace", "clear_selection", "Clear", show=False),
    ]

    def __init__(self):
        super().__init__()
        self.displayed: list[str] = []
        self.pending = ""
        self.notice = ""
        self._notice_timer: Timer | None = None

    def refresh_view(self) -> None:
        app = self.app
        result, now = app.current_aggregation()
        clients = sort_clients(result.clients.values())
        self.displayed = [c.client for c in clients]

        self.query_one("#header-bar", Static).update(app.header_text(now))
        self.query_one("#body", Static).update(
            render_client_table(clients, now, app.settings.minutes, app.layout)
        )
        self._update_notice()

    def _update_notice(self) -> None:
        layout = self.app.layout
        text = Text()
        if self.notice:
            text.append(self.notice, style=layout.style("error"))
        elif self.displayed:
            text.append("Select client number: ", style=layout.style("prompt"))
            text.append(self.pending)
        self.query_one("#notice", Static).update(text)

    def show_notice(self, message: str) -> None:
        self.notice = message
        if self._notice_timer is not None:
            self._notice_timer.stop()
        self._notice_timer = self.set_timer(NOTICE_SECONDS, self._clear_notice)
        self._update_notice()

    def _clear_notice(self) -> None:
        self.notice = ""
        self._notice_timer = None
        self._update_notice()

    def on_key(self, event: events.Key) -> None:
        if event.character in DIGITS:
            event.stop()
            self._push_digit(event.character)
        elif event.is_printable and event.key != "q":
            event.stop()
            self._reject()

    def _push_digit(self, digit: str) -> None:
        self.pending += digit
        index = int(self.pending)
        if index == 0:
            self._reject()
        elif index * 10 > len(self.displayed):
            # no longer index starts with these digits
            self.action_commit_selection()
        else:
            self._update_notice()

    def _reject(self) -> None:
        self.pending = ""
        self.show_notice("Invalid selection.")

    def action_commit_selection(self) -> None:
        choice, self.pending = self.pending, ""
        if not choice:
            self._update_notice()
            return
        index = int(choice)
        if not 1 <= index <= len(self.displayed):
            log.debug("rejected selection %s of %d clients", choice, len(self.displayed))
            self._reject()
            return
        client = self.displayed[index - 1]
        log.debug("selected client %s", client)
        self.app.push_screen(DomainTableScreen(client))

    def action_clear_selection(self) -> None:
        self.pending = ""
        self._update_notice()


class DomainTableScreen(DashboardScreen):
    """Top domains of one client. Any key goes back to the client list."""

    def __init__(self, client: str):
        super().__init__()
        self.client = client
        self.rows: list[DomainRow] = []

    def refresh_view(self) -> None:
        app = self.app
        result, now = app.current_aggregation()
        columns = app.layout.columns(self._body_width())
        pairs = sort_domains(result.domains_for(self.client), app.settings.max_domains)
        self.rows = format_domain_rows(pairs, columns)

        self.query_one("#header-bar", Static).update(app.header_text(now))
        self.query_one("#body", Static).update(
            render_domain_table(self.client, self.rows, app.settings.minutes, columns, app.layout)
        )
        self.query_one("#notice", Static).update(
            Text("[Any key: back to client selection │ Ctrl+C to exit]", style=app.layout.style("hint"))
        )

    def on_key(self, event: events.Key) -> None:
        event.stop()
        self.app.pop_screen()


# ─── Settings ─────────────────────────────────────────────────────────────────

@dataclass
class Settings:
    log_path: Path = DEFAULT_LOG_FILE
    minutes: int = DEFAULT_MINUTES
    max_domains: int = DEFAULT_MAX_DOMAINS
    refresh: float = DEFAULT_REFRESH
    max_lines: int = DEFAULT_MAX_LINES
    trim_interval: float = DEFAULT_TRIM_INTERVAL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    stale_after: float = DEFAULT_STALE_AFTER
    debug_log: Path | None = None
    verbose: bool = False


# Config key → (Settings attribute, accepted types)
CONFIG_KEYS = {
    "log": ("log_path", (str,)),
    "minutes": ("minutes", (int,)),
    "max_domains": ("max_domains", (int,)),
    "refresh": ("refresh", (int, float)),
    "max_lines": ("max_lines", (int,)),
    "trim_interval": ("trim_interval", (int, float)),
    "debug_log": ("debug_log", (str,)),
}


def load_config(path: Path | None) -> tuple[dict, Path | None]:
    """Load settings from a JSON config file.

    If *path* is None, ``wifisniff.json`` in the working directory is used
    when present. Returns ``(config, resolved_path)``; resolved_path is None
    when no file was loaded.
    """
    explicit = path is not None
    if path is None:
        candidate = Path.cwd() / CONFIG_FILENAME
        if not candidate.is_file():
            return {}, None
        path = candidate
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return {}, None
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config {path}: JSON parse error: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path}: expected a JSON object")
    for key, value in data.items():
        if key not in CONFIG_KEYS:
            log.warning("config %s: unknown key %r ignored", path, key)
            continue
        _attr, types = CONFIG_KEYS[key]
        if isinstance(value, bool) or not isinstance(value, types):
            raise ConfigError(f"Config {path}: {key!r} has the wrong type ({type(value).__name__})")
    return {k: v for k, v in data.items() if k in CONFIG_KEYS}, path


def resolve_settings(args: argparse.Namespace) -> Settings:
    """Merge settings. Priority: CLI flag > config file > default."""
    config, _ = load_config(args.config)
    settings = Settings()
    for key, (attr, _types) in CONFIG_KEYS.items():
        if key in config:
            setattr(settings, attr, config[key])
    for attr in ("log_path", "minutes", "max_domains", "refresh", "max_lines", "trim_interval", "debug_log"):
        value = getattr(args, attr, None)
        if value is not None:
            setattr(settings, attr, value)
    settings.verbose = bool(getattr(args, "verbose", False))

    settings.log_path = Path(settings.log_path).expanduser()
    if settings.debug_log is not None:
        settings.debug_log = Path(settings.debug_log).expanduser()

    if settings.minutes < 1:
        raise StartupError("--minutes must be at least 1")
    if settings.max_domains < 1:
        raise StartupError("--max-domains must be at least 1")
    if settings.max_lines < 1:
        raise StartupError("--max-lines must be at least 1")
    if settings.refresh <= 0:
        raise StartupError("--refresh must be positive")
    if settings.trim_interval <= 0:
        raise StartupError("--trim-interval must be positive")
    return settings


def check_preconditions(settings: Settings, stream: TextIO | None = None) -> None:
    """Fail fast, before any background task starts."""
    path = settings.log_path
    if not path.exists():
        raise StartupError(f"Log file {path} does not exist!")
    if not path.is_file():
        raise StartupError(f"Log file {path} is not a regular file.")
    if not os.access(path, os.R_OK):
        raise StartupError(f"Log file {path} is not readable (check permissions).")
    stream = stream if stream is not None else sys.stdout
    if not stream.isatty():
        raise StartupError("wifisniff needs an interactive terminal.")


def setup_logging(path: Path | None, verbose: bool = False) -> None:
    """Attach a file handler when asked to; the terminal belongs to the TUI."""
    if path is None:
        return
    try:
        handler = logging.FileHandler(path)
    except OSError as exc:
        raise StartupError(f"Cannot open debug log {path}: {exc}") from exc
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG if verbose else logging.INFO)


# ─── Textual App ──────────────────────────────────────────────────────────────

class WifiSniffApp(App):
    """Live client/domain dashboard over the shared line buffer."""

    DEFAULT_CSS = """
    Screen {
        background: transparent;
    }

    #header-bar {
        height: 3;
        padding: 0 1;
        color: $text;
    }

    #body {
        height: 1fr;
        padding: 0 1;
    }

    #notice {
        height: 2;
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("ctrl+c", "quit", "Quit", show=False, priority=True),
    ]

    def __init__(
        self,
        settings: Settings,
        ingestor: Ingestor,
        layout: Layout | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__()
        self.settings = settings
        self.ingestor = ingestor
        self.layout = layout or Layout()
        self.clock = clock
        self._signal_installed = False

    def get_default_screen(self) -> Screen:
        return ClientListScreen()

    def on_mount(self) -> None:
        self.run_worker(self.ingestor.tail_forever(), name="tailer", group="ingest", exit_on_error=False)
        self.run_worker(self.ingestor.trim_forever(), name="trimmer", group="ingest", exit_on_error=False)
        # The tick: each expiry re-aggregates and redraws whatever screen is active
        self.set_interval(self.settings.refresh, self._tick)
        self._install_signal_handler()

    def on_unmount(self) -> None:
        if self._signal_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM)
            self._signal_installed = False

    def _install_signal_handler(self) -> None:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, self.exit)
        except (NotImplementedError, RuntimeError):
            # Windows loops, or not running in the main thread
            log.debug("SIGTERM handler not installed")
            return
        self._signal_installed = True

    def _tick(self) -> None:
        screen = self.screen
        if isinstance(screen, DashboardScreen):
            screen.refresh_view()

    def current_aggregation(self) -> tuple[Aggregation, datetime]:
        now = self.clock()
        result = aggregate(self.ingestor.buffer.snapshot(), now, self.settings.minutes)
        return result, now

    def header_text(self, now: datetime) -> Text:
        return render_header(
            self.settings.minutes,
            self.ingestor.health,
            len(self.ingestor.buffer),
            now,
            self.settings.stale_after,
            self.layout,
        )

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        worker = event.worker
        if worker.group != "ingest":
            return
        if event.state == WorkerState.ERROR:
            log.error("%s worker failed: %s", worker.name, worker.error)
            self.ingestor.health.error = f"{worker.name} failed: {worker.error}"
            if worker.name == "tailer":
                self.ingestor.health.stopped = True


# ─── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wifisniff",
        description="Live per-client view of DNS queries from a dnsmasq log.",
    )
    parser.add_argument("--log", dest="log_path", type=Path, default=None,
                        help=f"dnsmasq query log (default: {DEFAULT_LOG_FILE})")
    parser.add_argument("--minutes", type=int, default=None,
                        help=f"recency window in minutes (default: {DEFAULT_MINUTES})")
    parser.add_argument("--max-domains", type=int, default=None,
                        help=f"domains shown per client (default: {DEFAULT_MAX_DOMAINS})")
    parser.add_argument("--refresh", type=float, default=None,
                        help=f"refresh interval in seconds (default: {DEFAULT_REFRESH})")
    parser.add_argument("--max-lines", type=int, default=None,
                        help=f"lines kept in memory (default: {DEFAULT_MAX_LINES})")
    parser.add_argument("--trim-interval", type=float, default=None,
                        help=f"seconds between buffer trims (default: {DEFAULT_TRIM_INTERVAL})")
    parser.add_argument("--config", type=Path, default=None,
                        help=f"JSON config file (default: ./{CONFIG_FILENAME} if present)")
    parser.add_argument("--debug-log", type=Path, default=None,
                        help="write diagnostics to this file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="debug-level diagnostics (with --debug-log)")
    return parser


def report_error(message: str) -> None:
    Console(stderr=True, soft_wrap=True).print(Text.assemble(("[ERROR]", "bold red"), " ", message))


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = resolve_settings(args)
        setup_logging(settings.debug_log, settings.verbose)
        check_preconditions(settings)
        ingestor = Ingestor(
            LogTailer(settings.log_path),
            max_lines=settings.max_lines,
            poll_interval=settings.poll_interval,
            trim_interval=settings.trim_interval,
        )
        with ingestor:
            app = WifiSniffApp(settings, ingestor)
            app.run()
    except StartupError as exc:
        report_error(str(exc))
        return 1
    return app.return_code or 0


if __name__ == "__main__":
    sys.exit(main())
