"""Upload local trees through a remote ``scp -t`` (sink) process.

The local side plays the scp *source*. Every control line is answered by one
ack byte from the sink:

    ``\\0``  ok
    ``\\1``  warning, a message line follows; the transfer goes on
    ``\\2``  fatal, a message line follows; the sink gives up

Control lines sent here:

    ``D0755 0 <name>``          enter (and create) a directory
    ``E``                       leave the current directory
    ``C<mode> <size> <name>``   a file; ``size`` raw bytes and a ``\\0`` follow

Each directory level gets its own sink process rooted at that level's remote
directory. Nothing is rolled back when a fatal ack aborts a copy.
"""

import errno
import os
import posixpath
import shlex
import stat
from dataclasses import dataclass, field
from typing import List

import paramiko

from sshpipe.config import DEFAULT_DIR_MODE, SCP_BLOCK_SIZE
from sshpipe.errors import ProtocolError, WriteError
from sshpipe.handle import HandleGuard, RemoteProcessHandle, open_handle
from sshpipe.utils import log_error

ACK_OK = b"\x00"
ACK_WARNING = b"\x01"
ACK_FATAL = b"\x02"


@dataclass
class TreeLevel:
    source: str
    target: str
    files: List[str] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)


def scan_level(source: str, target: str) -> TreeLevel:
    level = TreeLevel(source=source, target=target)
    with os.scandir(source) as entries:
        for entry in sorted(entries, key=lambda item: item.name):
            if entry.is_dir(follow_symlinks=False):
                level.dirs.append(entry.name)
            elif entry.is_file():
                level.files.append(entry.name)
            else:
                log_error(f"scp: skipping {entry.path}: not a regular file or directory")
    return level


def sink_command(target: str) -> str:
    return f"scp -tr {shlex.quote(target)}"


class ScpSink:
    """Source side of the conversation with one remote sink process."""

    def __init__(self, handle: RemoteProcessHandle, block_size: int = SCP_BLOCK_SIZE):
        self.handle = handle
        self.block_size = block_size
        self._reader = handle.stdout
        self._writer = handle.stdin

    def _write(self, data: bytes, flush: bool = False) -> None:
        try:
            self._writer.write(data)
            if flush:
                self._writer.flush()
        except (OSError, ValueError, paramiko.SSHException) as exc:
            raise WriteError(f"scp write failed: {exc}") from exc

    def _readline(self) -> str:
        return self._reader.readline().decode("utf-8", errors="replace")

    def await_response(self) -> None:
        code = self._reader.read(1)
        if not code:
            raise ProtocolError("connection lost while waiting for scp response")
        if code == ACK_OK:
            return

        message = self._readline()
        if code == ACK_WARNING:
            log_error(f"scp warning: {message.strip()}")
            return
        if code == ACK_FATAL:
            trailer = self._readline()
            raise ProtocolError(message.strip() + trailer.rstrip("\n"))
        # anything else is the start of an unframed error message
        raise ProtocolError((code.decode("utf-8", errors="replace") + message).strip())

    def send_command(self, line: str) -> None:
        if "\n" in line:
            raise ValueError(f"scp control line must not contain a newline: {line!r}")
        self._write((line + "\n").encode("utf-8"), flush=True)
        self.await_response()

    def push_dir(self, name: str) -> None:
        self.send_command(f"D{DEFAULT_DIR_MODE} 0 {name}")

    def end_dir(self) -> None:
        self.send_command("E")

    def push_file(self, path: str) -> None:
        info = os.stat(path)
        name = os.path.basename(path)
        self.send_command(f"C{stat.S_IMODE(info.st_mode):04o} {info.st_size} {name}")

        with open(path, "rb") as source:
            while True:
                block = source.read(self.block_size)
                if not block:
                    break
                self._write(block)
        self._write(b"\0", flush=True)
        self.await_response()


def make_remote_dirs(client: paramiko.SSHClient, base: str, segments: List[str]) -> None:
    """Create the directory chain ``segments`` under ``base`` on the remote host."""
    with open_handle(client, sink_command(base)) as handle:
        sink = ScpSink(handle)
        sink.await_response()
        for segment in segments:
            sink.push_dir(segment)
        for _ in segments:
            sink.end_dir()


def copy_path_to(client: paramiko.SSHClient, src: str, target: str) -> None:
    """Copy ``src`` into the existing remote directory ``target``.

    A directory is copied one level per sink process: child files first, then
    an empty node for each child directory, then one recursive call per child.
    """
    guard = HandleGuard(open_handle(client, sink_command(target)))
    with guard as handle:
        sink = ScpSink(handle)
        sink.await_response()

        if not os.path.isdir(src):
            sink.push_file(src)
            guard.release()
            return

        level = scan_level(src, target)
        for name in level.files:
            sink.push_file(os.path.join(level.source, name))
        for name in level.dirs:
            sink.push_dir(name)
            sink.end_dir()
        guard.release()

    for name in level.dirs:
        copy_path_to(client, os.path.join(level.source, name), posixpath.join(level.target, name))


def copy_to(client: paramiko.SSHClient, src: str, target: str) -> None:
    if not os.path.exists(src):
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), src)

    target = target.strip() or "."
    base = "/" if posixpath.isabs(target) else "."
    segments = [part for part in target.split("/") if part.strip() and part != "."]
    if ".." in segments:
        raise ValueError(f"remote target must not contain '..': {target}")

    if segments:
        make_remote_dirs(client, base, segments)
    copy_path_to(client, src, target)
