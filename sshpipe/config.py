import os
from typing import Optional

# ========= Static config =========
KEEPALIVE_INTERVAL = 30
FOREVER = 365 * 24 * 60 * 60.0  # "no timeout" for dial

RETRY_INTERVAL = 1.0
RETRY_ATTEMPT_TIMEOUT = 1.0

CHANNEL_CAPACITY = 16
READ_SEGMENT_SIZE = 1024
SCP_BLOCK_SIZE = 16384

DEFAULT_PORT = 22
DEFAULT_SHELL = "/bin/bash"
DEFAULT_KEY_PATH = os.path.join("~", ".ssh", "id_rsa")
DEFAULT_DIR_MODE = "0755"

LOG_PREFIX = "[sshpipe]"

# ========= Runtime Configuration =========
class SessionConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_PORT: int = DEFAULT_PORT
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_CONNECT_TIMEOUT: float = 0.0  # 0 means FOREVER
        self.SSH_RETRY: bool = False
        self.SSH_LOG_PATH: Optional[str] = None

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_CONNECT_TIMEOUT = float(os.environ.get("SSH_CONNECT_TIMEOUT", self.SSH_CONNECT_TIMEOUT))
        self.SSH_LOG_PATH = os.environ.get("SSH_LOG_PATH", self.SSH_LOG_PATH)

        retry_env = os.environ.get("SSH_RETRY")
        if retry_env is not None:
            self.SSH_RETRY = retry_env.lower() in ("true", "1", "yes")
        return self

    def hostport(self) -> str:
        return f"{self.SSH_HOST}:{self.SSH_PORT}"
