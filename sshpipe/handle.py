from typing import Any, Optional

import paramiko

from sshpipe.errors import ChannelOpenError, StartError, StreamError
from sshpipe.utils import log_error


class RemoteProcessHandle:
    """One remote process and its three byte streams.

    Knows nothing about commands or protocols above raw bytes. Close it when
    done; an unclosed handle leaks a remote process.
    """

    def __init__(self, channel: paramiko.Channel, stdin: Any, stdout: Any, stderr: Any, command: str):
        self.channel = channel
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or bool(getattr(self.channel, "closed", False))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # stdin first: the remote side sees EOF before the channel goes away.
        try:
            self.stdin.close()
        except (OSError, paramiko.SSHException) as exc:
            log_error(f"closing stdin of '{self.command}' failed: {exc}")
        self.channel.close()

    def __enter__(self) -> "RemoteProcessHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"RemoteProcessHandle({self.command!r}, {state})"


def open_handle(client: paramiko.SSHClient, command: str, timeout: Optional[float] = None) -> RemoteProcessHandle:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise ChannelOpenError("connection is not active")

    try:
        channel = transport.open_session(timeout=timeout)
    except (paramiko.SSHException, OSError) as exc:
        raise ChannelOpenError(f"failed to open channel: {exc}") from exc

    try:
        stdin = channel.makefile_stdin("wb")
        stdout = channel.makefile("rb")
        stderr = channel.makefile_stderr("rb")
    except (paramiko.SSHException, OSError) as exc:
        channel.close()
        raise StreamError(f"failed to obtain streams: {exc}") from exc

    handle = RemoteProcessHandle(channel, stdin, stdout, stderr, command)
    try:
        channel.exec_command(command)
    except (paramiko.SSHException, OSError) as exc:
        handle.close()
        raise StartError(f"failed to start '{command}': {exc}") from exc

    return handle


class HandleGuard:
    """Closes a handle on exit unless the success path committed it."""

    def __init__(self, handle: RemoteProcessHandle):
        self.handle = handle
        self.committed = False

    def commit(self) -> None:
        self.committed = True

    def release(self) -> None:
        self.commit()
        self.handle.close()

    def __enter__(self) -> RemoteProcessHandle:
        return self.handle

    def __exit__(self, *exc) -> None:
        if not self.committed:
            self.handle.close()
