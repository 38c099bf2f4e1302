import json
import secrets
import sys
import time
from datetime import datetime
from typing import Any, Dict, Tuple

from sshpipe.config import DEFAULT_PORT, LOG_PREFIX

def log_error(message: str) -> None:
    print(f"{LOG_PREFIX} {message}", file=sys.stderr, flush=True)

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")

def make_marker() -> str:
    """End-of-output sentinel: a monotonic timestamp plus a random token.

    Only ``$``, ``_``, digits and hex letters are used, so the marker is
    literal inside single shell quotes.
    """
    return f"$$__{time.monotonic_ns()}_{secrets.token_hex(8)}__$$"

def split_hostport(hostport: str) -> Tuple[str, int]:
    hostport = (hostport or "").strip()
    if hostport.startswith("["):
        # [::1]:22
        host, _, rest = hostport[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
        return host, int(port) if port else DEFAULT_PORT
    if hostport.count(":") == 1:
        host, _, port = hostport.partition(":")
        return host, int(port) if port else DEFAULT_PORT
    return hostport, DEFAULT_PORT
