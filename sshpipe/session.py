import os
import time
from datetime import datetime
from typing import Any, Dict, Optional

import paramiko

from sshpipe import scp
from sshpipe.config import (
    DEFAULT_KEY_PATH, DEFAULT_SHELL, FOREVER, KEEPALIVE_INTERVAL,
    RETRY_ATTEMPT_TIMEOUT, RETRY_INTERVAL, SessionConfig
)
from sshpipe.errors import AuthenticationError, ConnectError, SSHPipeError, WriteError
from sshpipe.handle import RemoteProcessHandle, open_handle
from sshpipe.multiplexer import Command, start_command
from sshpipe.utils import iso_now, json_line, log_error, split_hostport


class Session:
    """One SSH connection with a persistent shell for ``run`` and on-demand
    scp sinks for ``copy_to``.

    ``run`` calls share one shell process, so ``cd`` and variables carry over
    between them. Calls must not overlap: the shell's stdin is not locked.
    Output the caller left unread is discarded when the next ``run`` starts,
    after the previous command has reached its marker.
    """

    def __init__(self, client: paramiko.SSHClient, hostport: str = "", log_path: Optional[str] = None):
        self.client = client
        self.hostport = hostport
        self.log_path = log_path
        self.shell: Optional[RemoteProcessHandle] = None
        self._last_run: Optional[Command] = None

        self.created_at = datetime.now()
        self.last_command = ""
        self.last_command_time: Optional[datetime] = None

        self._log_session("SYS", {"event": "connected", "host": hostport})

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "host": self.hostport}
        data.update(payload)
        json_line(self.log_path, data)

    def _ensure_shell(self) -> RemoteProcessHandle:
        if self.shell is None or self.shell.closed:
            self.shell = open_handle(self.client, DEFAULT_SHELL)
            self._log_session("SYS", {"event": "shell_started", "shell": DEFAULT_SHELL})
        return self.shell

    def run(self, command: str) -> Command:
        self._settle_last_run()
        shell = self._ensure_shell()
        self.last_command = command
        self.last_command_time = datetime.now()
        self._log_session("IN", {"event": "run_start", "command": command})
        try:
            self._last_run = start_command(shell, command)
        except WriteError as exc:
            # half-written input leaves the shell in an unknown state
            self._log_session("SYS", {"event": "run_failed", "error": str(exc)})
            shell.close()
            raise
        return self._last_run

    def _settle_last_run(self) -> None:
        previous, self._last_run = self._last_run, None
        if previous is None:
            return
        # the shared streams must be past the old marker before new readers start
        previous.discard()
        previous.wait()

    def copy_to(self, src: str, target: str) -> None:
        self._log_session("IN", {"event": "copy_start", "src": src, "target": target})
        try:
            scp.copy_to(self.client, src, target)
        except (SSHPipeError, OSError, ValueError) as exc:
            self._log_session("SYS", {"event": "copy_failed", "src": src, "target": target, "error": str(exc)})
            raise
        self._log_session("SYS", {"event": "copy_done", "src": src, "target": target})

    def close(self) -> None:
        if self.shell is not None:
            self.shell.close()
            self.shell = None
        self.client.close()
        self._log_session("SYS", {"event": "closed"})

    def info(self) -> Dict[str, Any]:
        return {
            "host": self.hostport,
            "shell_open": self.shell is not None and not self.shell.closed,
            "last_command": self.last_command,
            "last_command_time": self.last_command_time.isoformat() if self.last_command_time else None,
            "created_at": self.created_at.isoformat(),
            "log_path": self.log_path,
        }

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_session(
    hostport: str,
    user: str,
    password: str = "",
    key_path: str = "",
    timeout: float = 0.0,
    passphrase: Optional[str] = None,
    log_path: Optional[str] = None,
) -> Session:
    """Dial ``hostport`` and authenticate with a password or a key file.

    The host key is accepted without verification. A zero ``timeout`` means
    no practical limit.
    """
    host, port = split_hostport(hostport)
    connect_kwargs: Dict[str, Any] = {
        "hostname": host,
        "port": port,
        "username": user,
        "timeout": timeout or FOREVER,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if password:
        connect_kwargs["password"] = password
    else:
        key_path = os.path.expanduser(key_path or DEFAULT_KEY_PATH)
        if not os.path.isfile(key_path):
            raise ConnectError(f"private key not found: {key_path}")
        connect_kwargs["key_filename"] = key_path
        if passphrase:
            connect_kwargs["passphrase"] = passphrase

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(**connect_kwargs)
    except paramiko.AuthenticationException as exc:
        client.close()
        raise AuthenticationError(f"unable to authenticate {user}@{host}:{port}: {exc}") from exc
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise ConnectError(f"failed to connect to {host}:{port}: {exc}") from exc

    transport = client.get_transport()
    if transport:
        transport.set_keepalive(KEEPALIVE_INTERVAL)

    return Session(client, f"{host}:{port}", log_path=log_path)


def open_session_with_retry(
    hostport: str,
    user: str,
    password: str = "",
    key_path: str = "",
    timeout: float = 0.0,
    passphrase: Optional[str] = None,
    log_path: Optional[str] = None,
) -> Session:
    """Like ``open_session`` but keeps dialing every ``RETRY_INTERVAL`` seconds
    until ``timeout`` runs out. Authentication failures are not retried.
    """
    deadline = time.monotonic() + (timeout or FOREVER)
    while True:
        try:
            return open_session(
                hostport, user, password=password, key_path=key_path,
                timeout=RETRY_ATTEMPT_TIMEOUT, passphrase=passphrase, log_path=log_path,
            )
        except AuthenticationError:
            raise
        except ConnectError as exc:
            if time.monotonic() + RETRY_INTERVAL > deadline:
                raise ConnectError(f"connection timed out: {exc}") from exc
            log_error(f"connect to {hostport} failed, retrying: {exc}")
        time.sleep(RETRY_INTERVAL)


def open_session_from_config(cfg: SessionConfig) -> Session:
    if not cfg.SSH_HOST:
        raise ValueError("SSH host is required (SSH_HOST)")
    if not cfg.SSH_USER:
        raise ValueError("SSH user is required (SSH_USER)")

    opener = open_session_with_retry if cfg.SSH_RETRY else open_session
    return opener(
        cfg.hostport(),
        cfg.SSH_USER,
        password=cfg.SSH_PASSWORD or "",
        key_path=cfg.SSH_KEY_PATH or "",
        timeout=cfg.SSH_CONNECT_TIMEOUT,
        passphrase=cfg.SSH_KEY_PASSPHRASE,
        log_path=cfg.SSH_LOG_PATH,
    )
