"""Tests for marker-delimited output readers and command submission."""

from __future__ import annotations

import io
import queue
import threading
import time
import unittest
from types import SimpleNamespace
from unittest import mock

from sshpipe.errors import WriteError
from sshpipe.multiplexer import LineChannel, read_lines, start_command

MARKER = b"$$__42_00ff00ff00ff00ff__$$"


class _FailingStream:
    def __init__(self, segments):
        self._segments = list(segments)

    def readline(self, size=-1):
        item = self._segments.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _read_all(data: bytes, segment_size: int = 1024):
    channel = LineChannel()
    read_lines(io.BytesIO(data), MARKER, channel, segment_size)
    return list(channel), channel


class TestReadLines(unittest.TestCase):
    def test_forwards_lines_until_marker(self):
        lines, channel = _read_all(b"first\n\nthird\n" + MARKER + b"\nnext command\n")
        self.assertEqual(lines, [b"first", b"", b"third"])
        self.assertTrue(channel.closed)

    def test_marker_must_match_whole_line(self):
        data = b"x" + MARKER + b"\n" + MARKER + b" \n" + MARKER[:-1] + b"\n" + MARKER + b"\n"
        lines, _ = _read_all(data)
        self.assertEqual(lines, [b"x" + MARKER, MARKER + b" ", MARKER[:-1]])

    def test_long_line_is_assembled_from_segments(self):
        long_line = b"a" * 3000
        lines, _ = _read_all(long_line + b"\nshort\n" + MARKER + b"\n", segment_size=1024)
        self.assertEqual(lines, [long_line, b"short"])

    def test_crlf_is_stripped(self):
        lines, _ = _read_all(b"dos line\r\n" + MARKER + b"\r\n")
        self.assertEqual(lines, [b"dos line"])

    def test_end_of_stream_closes_without_marker(self):
        lines, channel = _read_all(b"one\ntwo\n")
        self.assertEqual(lines, [b"one", b"two"])
        self.assertTrue(channel.closed)

    def test_unterminated_last_line_is_kept(self):
        lines, _ = _read_all(b"one\nno newline")
        self.assertEqual(lines, [b"one", b"no newline"])

    def test_read_error_flushes_partial_line_and_reports(self):
        channel = LineChannel()
        stream = _FailingStream([b"ok\n", b"part", OSError("Socket is closed")])
        read_lines(stream, MARKER, channel)
        self.assertEqual(list(channel), [b"ok", b"part", b"error reading pipe: Socket is closed"])

    def test_full_channel_blocks_reader_without_losing_lines(self):
        data = b"".join(f"line {n}\n".encode() for n in range(40)) + MARKER + b"\n"
        channel = LineChannel(capacity=16)
        reader = threading.Thread(target=read_lines, args=(io.BytesIO(data), MARKER, channel), daemon=True)
        reader.start()

        deadline = time.monotonic() + 5
        while len(channel) < 16 and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.05)
        self.assertEqual(len(channel), 16)
        self.assertTrue(reader.is_alive())

        lines = list(channel)
        reader.join(5)
        self.assertFalse(reader.is_alive())
        self.assertEqual(lines, [f"line {n}".encode() for n in range(40)])


class TestLineChannel(unittest.TestCase):
    def test_get_returns_none_after_close_every_time(self):
        channel = LineChannel()
        channel.put(b"a")
        channel.close()
        channel.close()
        self.assertEqual(channel.get(), b"a")
        self.assertIsNone(channel.get())
        self.assertIsNone(channel.get())

    def test_get_timeout_raises_empty(self):
        with self.assertRaises(queue.Empty):
            LineChannel().get(timeout=0.01)

    def test_close_does_not_block_on_full_channel(self):
        channel = LineChannel(capacity=2)
        channel.put(b"a")
        channel.put(b"b")
        closer = threading.Thread(target=channel.close, daemon=True)
        closer.start()
        closer.join(5)
        self.assertFalse(closer.is_alive())
        self.assertEqual(list(channel), [b"a", b"b"])

    def test_reader_finishes_when_marker_follows_a_full_channel(self):
        data = b"".join(f"{n}\n".encode() for n in range(16)) + MARKER + b"\n"
        channel = LineChannel(capacity=16)
        reader = threading.Thread(target=read_lines, args=(io.BytesIO(data), MARKER, channel), daemon=True)
        reader.start()
        reader.join(5)
        self.assertFalse(reader.is_alive())
        self.assertEqual(len(channel), 16)
        self.assertTrue(channel.closed)

    def test_discard_releases_blocked_producer(self):
        data = b"".join(f"{n}\n".encode() for n in range(40)) + MARKER + b"\nnext\n"
        stream = io.BytesIO(data)
        channel = LineChannel(capacity=4)
        reader = threading.Thread(target=read_lines, args=(stream, MARKER, channel), daemon=True)
        reader.start()
        self.assertEqual(channel.get(timeout=5), b"0")

        channel.discard()
        reader.join(5)
        self.assertFalse(reader.is_alive())
        self.assertIsNone(channel.get(timeout=5))
        self.assertEqual(stream.read(), b"next\n")


def _fake_shell_handle(stdout: bytes, stderr: bytes, stdin=None):
    return SimpleNamespace(
        stdin=stdin if stdin is not None else io.BytesIO(),
        stdout=io.BytesIO(stdout),
        stderr=io.BytesIO(stderr),
        command="/bin/bash",
        close=mock.Mock(),
    )


class TestStartCommand(unittest.TestCase):
    def setUp(self) -> None:
        patcher = mock.patch("sshpipe.multiplexer.make_marker", return_value=MARKER.decode())
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_writes_command_and_both_marker_echoes(self):
        handle = _fake_shell_handle(b"hello\n" + MARKER + b"\n", MARKER + b"\n")
        cmd = start_command(handle, "echo hello")
        marker = MARKER.decode()
        self.assertEqual(
            handle.stdin.getvalue().decode(),
            f"echo hello\necho '{marker}'\necho '{marker}' >&2\n",
        )
        self.assertEqual(list(cmd.stdout), [b"hello"])
        self.assertEqual(list(cmd.stderr), [])
        self.assertTrue(cmd.wait(5))

    def test_write_failure_raises_write_error(self):
        stdin = mock.Mock()
        stdin.write.side_effect = OSError("Socket is closed")
        handle = _fake_shell_handle(b"", b"", stdin=stdin)
        with self.assertRaises(WriteError):
            start_command(handle, "true")

    def test_combined_out_merges_both_streams(self):
        handle = _fake_shell_handle(b"o1\no2\n" + MARKER + b"\n", b"e1\n" + MARKER + b"\n")
        cmd = start_command(handle, "mixed")
        merged = list(cmd.combined_out())
        self.assertEqual(sorted(merged), [b"e1", b"o1", b"o2"])
        self.assertLess(merged.index(b"o1"), merged.index(b"o2"))

    def test_tail_log_writes_decoded_lines(self):
        handle = _fake_shell_handle(b"caf\xc3\xa9\n" + MARKER + b"\n", MARKER + b"\n")
        sink = io.StringIO()
        start_command(handle, "echo café").tail_log(sink)
        self.assertEqual(sink.getvalue(), "café\n")

    def test_abort_closes_shell_handle(self):
        handle = _fake_shell_handle(MARKER + b"\n", MARKER + b"\n")
        cmd = start_command(handle, "")
        cmd.abort()
        handle.close.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
