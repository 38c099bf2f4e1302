class SSHPipeError(Exception):
    """Base exception for sshpipe operations."""


class ConnectError(SSHPipeError):
    """Dial failed; no session was created."""


class AuthenticationError(ConnectError):
    """The server rejected the credentials. Retrying will not help."""


class ChannelError(SSHPipeError):
    """Setting up a remote process failed. The connection stays usable."""


class ChannelOpenError(ChannelError):
    pass


class StreamError(ChannelError):
    pass


class StartError(ChannelError):
    pass


class WriteError(SSHPipeError):
    """Sending a command, marker or protocol bytes failed."""


class ProtocolError(SSHPipeError):
    """The remote scp sink answered with a fatal ack."""
