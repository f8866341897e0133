"""Tests for the log tailer, the line buffer and the ingestor loops."""

import asyncio
import os

import pytest

from conftest import NOW, append, ago, query_line

from wifisniff import Ingestor, IngestHealth, LineBuffer, LogTailer, StartupError


def q(minutes: int, domain: str = "example.com", client: str = "10.0.0.5") -> str:
    return query_line(ago(minutes=minutes), domain, client)


NOISE = "Oct 19 11:00:00 dnsmasq[811]: forwarded example.com to 1.1.1.1"


class TestLineBuffer:

    def test_extend_keeps_arrival_order(self):
        buf = LineBuffer(max_lines=10)
        buf.extend(["a", "b"])
        buf.extend(["c"])
        assert buf.snapshot() == ("a", "b", "c")

    def test_trim_keeps_suffix(self):
        buf = LineBuffer(max_lines=3)
        buf.extend(str(i) for i in range(10))
        assert buf.trim() == 7
        assert buf.snapshot() == ("7", "8", "9")
        assert buf.trim() == 0

    def test_trim_bound_holds_after_every_cycle(self):
        buf = LineBuffer(max_lines=5)
        for batch in range(20):
            buf.extend(f"{batch}-{i}" for i in range(batch))
            buf.trim()
            assert len(buf) <= 5

    def test_snapshot_is_not_affected_by_later_writes(self):
        buf = LineBuffer(max_lines=2)
        buf.extend(["a", "b", "c"])
        snap = buf.snapshot()
        buf.trim()
        buf.extend(["d"])
        assert snap == ("a", "b", "c")
        assert buf.snapshot() == ("b", "c", "d")

    def test_clear(self):
        buf = LineBuffer(max_lines=2)
        buf.extend(["a"])
        buf.clear()
        assert buf.snapshot() == ()


class TestLogTailer:

    def test_seed_returns_last_matching_lines(self, log_file):
        append(log_file, q(5, "a.test"), NOISE, q(4, "b.test"), q(3, "c.test"))
        tailer = LogTailer(log_file)
        assert tailer.seed(max_lines=2) == [q(4, "b.test"), q(3, "c.test")]
        assert tailer.offset == log_file.stat().st_size

    def test_poll_returns_only_new_lines(self, log_file):
        append(log_file, q(5))
        tailer = LogTailer(log_file)
        tailer.seed(10)
        assert tailer.poll() == []
        append(log_file, q(1, "new.test"), NOISE)
        assert tailer.poll() == [q(1, "new.test")]
        assert tailer.poll() == []

    def test_partial_line_is_held_back(self, log_file):
        tailer = LogTailer(log_file)
        tailer.seed(10)
        line = q(1, "split.test")
        with open(log_file, "a") as f:
            f.write(line[:20])
        assert tailer.poll() == []
        with open(log_file, "a") as f:
            f.write(line[20:] + "\n")
        assert tailer.poll() == [line]

    def test_partial_line_at_seed_completes_later(self, log_file):
        line = q(1, "late.test")
        log_file.write_text(line[:15])
        tailer = LogTailer(log_file)
        assert tailer.seed(10) == []
        with open(log_file, "a") as f:
            f.write(line[15:] + "\n")
        assert tailer.poll() == [line]

    def test_truncation_rereads_from_start(self, log_file):
        append(log_file, q(5, "a.test"), q(4, "b.test"))
        tailer = LogTailer(log_file)
        tailer.seed(10)
        log_file.write_text(q(1, "after.test") + "\n")
        assert tailer.poll() == [q(1, "after.test")]

    def test_truncate_then_regrow_rereads_from_start(self, log_file):
        append(log_file, q(5, "a.test"))
        tailer = LogTailer(log_file)
        tailer.seed(10)
        # copytruncate: same inode, and already past the old offset by the next poll
        log_file.write_text(q(2, "new-one.test", "10.0.0.1") + "\n" + q(1, "new-two.test", "10.0.0.2") + "\n")
        assert log_file.stat().st_size > tailer.offset
        assert tailer.poll() == [q(2, "new-one.test", "10.0.0.1"), q(1, "new-two.test", "10.0.0.2")]
        assert tailer.poll() == []

    def test_seed_reads_backwards_across_blocks(self, log_file):
        lines = [q(30 - i, f"d{i}.test") for i in range(20)]
        append(log_file, *lines[:10], NOISE, *lines[10:])
        with open(log_file, "a") as f:
            f.write(lines[0][:12])
        tailer = LogTailer(log_file)
        tailer.block_size = 7
        assert tailer.seed(max_lines=5) == lines[-5:]
        assert tailer.partial == lines[0][:12]
        assert tailer.offset == log_file.stat().st_size

    def test_seed_short_file_returns_everything(self, log_file):
        append(log_file, q(3, "a.test"), NOISE, q(2, "b.test"))
        tailer = LogTailer(log_file)
        tailer.block_size = 16
        assert tailer.seed(max_lines=100) == [q(3, "a.test"), q(2, "b.test")]
        assert tailer.partial == ""

    def test_rotation_reopens_new_file(self, log_file):
        append(log_file, q(5, "a.test"))
        tailer = LogTailer(log_file)
        tailer.seed(10)
        os.rename(log_file, log_file.with_suffix(".log.1"))
        # longer than the old file so only the inode reveals the rotation
        append(log_file, q(2, "rotated-one.test"), q(1, "rotated-two.test"))
        assert tailer.poll() == [q(2, "rotated-one.test"), q(1, "rotated-two.test")]

    def test_missing_file_raises(self, log_file):
        tailer = LogTailer(log_file)
        tailer.seed(10)
        log_file.unlink()
        with pytest.raises(FileNotFoundError):
            tailer.poll()

    def test_invalid_utf8_is_replaced(self, log_file):
        tailer = LogTailer(log_file)
        tailer.seed(10)
        with open(log_file, "ab") as f:
            f.write(q(1, "caf\xe9.test").encode("latin-1") + b"\n")
        [line] = tailer.poll()
        assert "�" in line


class TestIngestHealth:

    def test_fresh_read_is_live(self):
        health = IngestHealth(last_ok=ago(seconds=2))
        assert not health.is_stale(NOW, 10)

    def test_old_read_is_stale(self):
        health = IngestHealth(last_ok=ago(seconds=30))
        assert health.is_stale(NOW, 10)

    def test_stopped_tailer_is_stale(self):
        health = IngestHealth(last_ok=NOW, stopped=True)
        assert health.is_stale(NOW, 10)


class TestIngestor:

    def make(self, log_file, **kwargs) -> Ingestor:
        return Ingestor(LogTailer(log_file), clock=lambda: NOW, **kwargs)

    def test_context_seeds_and_clears(self, log_file):
        append(log_file, q(3), q(2), q(1))
        with self.make(log_file, max_lines=2) as ingestor:
            assert ingestor.buffer.snapshot() == (q(2), q(1))
            assert ingestor.health.last_ok == NOW
        assert ingestor.buffer.snapshot() == ()

    def test_context_clears_on_error(self, log_file):
        append(log_file, q(1))
        ingestor = self.make(log_file)
        with pytest.raises(RuntimeError):
            with ingestor:
                assert len(ingestor.buffer) == 1
                raise RuntimeError("boom")
        assert len(ingestor.buffer) == 0

    def test_unreadable_log_is_startup_error(self, tmp_path):
        with pytest.raises(StartupError):
            with self.make(tmp_path / "nope.log"):
                pass

    @pytest.mark.asyncio
    async def test_poll_once_appends(self, log_file):
        with self.make(log_file) as ingestor:
            append(log_file, q(1, "x.test"), NOISE)
            assert await ingestor.poll_once() == 1
            assert ingestor.buffer.snapshot() == (q(1, "x.test"),)

    @pytest.mark.asyncio
    async def test_poll_once_records_error_and_recovers(self, log_file):
        with self.make(log_file) as ingestor:
            log_file.unlink()
            assert await ingestor.poll_once() == 0
            assert ingestor.health.error is not None
            append(log_file, q(1, "back.test"))
            assert await ingestor.poll_once() == 1
            assert ingestor.health.error is None

    @pytest.mark.asyncio
    async def test_loops_tail_and_trim(self, log_file):
        with self.make(log_file, max_lines=3, poll_interval=0.01, trim_interval=0.02) as ingestor:
            tasks = [
                asyncio.create_task(ingestor.tail_forever()),
                asyncio.create_task(ingestor.trim_forever()),
            ]
            try:
                append(log_file, *(q(1, f"d{i}.test") for i in range(10)))
                await asyncio.sleep(0.2)
                assert not ingestor.health.stopped
                assert ingestor.buffer.snapshot() == tuple(q(1, f"d{i}.test") for i in range(7, 10))
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            assert ingestor.health.stopped
