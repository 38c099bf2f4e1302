import queue
import sys
import threading
import time
from collections import deque
from typing import Any, Deque, Iterator, List, Optional, TextIO

import paramiko

from sshpipe.config import CHANNEL_CAPACITY, READ_SEGMENT_SIZE
from sshpipe.errors import WriteError
from sshpipe.handle import RemoteProcessHandle
from sshpipe.utils import make_marker

READ_ERRORS = (OSError, EOFError, ValueError, paramiko.SSHException)


class LineChannel:
    """Bounded, closable queue of output lines.

    ``put`` blocks once ``capacity`` lines are unread. ``close`` never blocks;
    after it the consumer drains what is left and then gets ``None``.
    """

    def __init__(self, capacity: int = CHANNEL_CAPACITY):
        self.capacity = capacity
        self._lines: Deque[bytes] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._discarding = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, line: bytes) -> None:
        with self._cond:
            while len(self._lines) >= self.capacity and not self._discarding:
                self._cond.wait()
            if self._discarding:
                return
            self._lines.append(line)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def discard(self) -> None:
        """Drop queued lines and every later ``put``, releasing a blocked producer."""
        with self._cond:
            self._discarding = True
            self._lines.clear()
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[bytes]:
        with self._cond:
            if not self._cond.wait_for(lambda: self._lines or self._closed, timeout):
                raise queue.Empty
            if not self._lines:
                return None
            line = self._lines.popleft()
            self._cond.notify_all()
            return line

    def __iter__(self) -> Iterator[bytes]:
        while True:
            line = self.get()
            if line is None:
                return
            yield line

    def __len__(self) -> int:
        with self._cond:
            return len(self._lines)


def read_lines(stream: Any, marker: bytes, out: LineChannel, segment_size: int = READ_SEGMENT_SIZE) -> None:
    """Forward complete lines from ``stream`` to ``out`` until the marker line.

    Closes ``out`` on the marker, on end-of-stream and after a read error.
    Read errors are reported in-band as one ``error reading pipe: ...`` line.
    """
    pending = bytearray()
    try:
        while True:
            try:
                segment = stream.readline(segment_size)
            except READ_ERRORS as exc:
                if pending:
                    out.put(bytes(pending))
                out.put(f"error reading pipe: {exc}".encode("utf-8"))
                return

            if not segment:
                if pending:
                    out.put(bytes(pending))
                return

            if not segment.endswith(b"\n"):
                # line longer than one segment, keep assembling
                pending += segment
                continue

            pending += segment[:-1]
            if pending.endswith(b"\r"):
                del pending[-1:]
            line = bytes(pending)
            pending = bytearray()

            if len(line) == len(marker) and line == marker:
                return
            out.put(line)
    finally:
        out.close()


class Command:
    """Output of one command submitted to a persistent shell."""

    def __init__(
        self,
        handle: RemoteProcessHandle,
        command: str,
        marker: str,
        stdout: LineChannel,
        stderr: LineChannel,
        readers: List[threading.Thread],
    ):
        self.handle = handle
        self.command = command
        self.marker = marker
        self._stdout = stdout
        self._stderr = stderr
        self._readers = readers
        self._merged: List[LineChannel] = []

    @property
    def stdout(self) -> LineChannel:
        return self._stdout

    @property
    def stderr(self) -> LineChannel:
        return self._stderr

    def combined_out(self) -> LineChannel:
        """Merge stdout and stderr into one channel, closed after both end.

        Consumes both source channels; do not read them directly as well.
        """
        merged = LineChannel()
        self._merged.append(merged)
        sources = [self._stdout, self._stderr]
        remaining = [len(sources)]
        lock = threading.Lock()

        def forward(source: LineChannel) -> None:
            for line in source:
                merged.put(line)
            with lock:
                remaining[0] -= 1
                last = remaining[0] == 0
            if last:
                merged.close()

        for source in sources:
            threading.Thread(target=forward, args=(source,), daemon=True).start()
        return merged

    def tail_log(self, sink: Optional[TextIO] = None) -> None:
        sink = sink or sys.stdout
        for line in self.combined_out():
            sink.write(line.decode("utf-8", errors="replace") + "\n")
            sink.flush()

    def wait(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for reader in self._readers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            reader.join(remaining)
        return not any(reader.is_alive() for reader in self._readers)

    def discard(self) -> None:
        """Throw away unread output. The readers keep consuming up to the marker."""
        for channel in [self._stdout, self._stderr] + self._merged:
            channel.discard()

    def abort(self) -> None:
        """Close the shell under this command; pending reads end right away."""
        self.handle.close()

    def __repr__(self) -> str:
        return f"Command({self.command!r})"


def start_command(
    handle: RemoteProcessHandle,
    command: str,
    capacity: int = CHANNEL_CAPACITY,
    segment_size: int = READ_SEGMENT_SIZE,
) -> Command:
    marker = make_marker()
    for line in (command, f"echo '{marker}'", f"echo '{marker}' >&2"):
        try:
            handle.stdin.write((line + "\n").encode("utf-8"))
            handle.stdin.flush()
        except (OSError, ValueError, paramiko.SSHException) as exc:
            raise WriteError(f"failed to write to '{handle.command}': {exc}") from exc

    marker_bytes = marker.encode("utf-8")
    stdout = LineChannel(capacity)
    stderr = LineChannel(capacity)
    readers = [
        threading.Thread(
            target=read_lines,
            args=(handle.stdout, marker_bytes, stdout, segment_size),
            name="sshpipe-stdout",
            daemon=True,
        ),
        threading.Thread(
            target=read_lines,
            args=(handle.stderr, marker_bytes, stderr, segment_size),
            name="sshpipe-stderr",
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()
    return Command(handle, command, marker, stdout, stderr, readers)
