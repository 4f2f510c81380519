import asyncio
import logging
import os
from enum import Enum

import asyncssh
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ExecErrorKind(str, Enum):
    """Structured classification of a failed remote command."""

    KEY = "key"  # Private key missing or unreadable
    AUTH = "auth"  # Authentication or host key rejected
    CONNECT = "connect"  # Could not establish the connection
    DISCONNECTED = "disconnected"  # Connection dropped or reset after it was established
    TIMEOUT = "timeout"
    COMMAND = "command"  # Command ran and exited non-zero
    OTHER = "other"


class ExecResult(BaseModel):
    """Outcome of a remote command."""

    exit_status: int | None = None
    stdout: str = ""
    stderr: str = ""
    error_kind: ExecErrorKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


def classify_exception(exc: BaseException) -> ExecErrorKind:
    """Map an exception raised by asyncssh or the socket layer to an error kind."""
    if isinstance(exc, (asyncssh.PermissionDenied, asyncssh.HostKeyNotVerifiable)):
        return ExecErrorKind.AUTH
    if isinstance(exc, (asyncssh.ConnectionLost, asyncssh.DisconnectError)):
        return ExecErrorKind.DISCONNECTED
    if isinstance(exc, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return ExecErrorKind.DISCONNECTED
    if isinstance(exc, TimeoutError):
        return ExecErrorKind.TIMEOUT
    if isinstance(exc, (asyncssh.KeyImportError, asyncssh.KeyEncryptionError)):
        return ExecErrorKind.KEY
    if isinstance(exc, OSError):
        return ExecErrorKind.CONNECT
    return ExecErrorKind.OTHER


class RemoteExecutor:
    """Runs commands on the target host over SSH, one connection per command.

    Host key checking is disabled: the control channel is assumed to be
    pre-trusted. Failures never raise; they come back as an ``ExecResult``
    with ``error_kind`` set so callers decide what a failure means.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "sparkuser",
        client_key_path: str | None = None,
        connect_timeout: float = 10,
        command_timeout: float = 30,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.client_key_path = client_key_path
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._client_keys: list[asyncssh.SSHKey] | None = None

    def _load_client_keys(self) -> list[asyncssh.SSHKey] | None:
        if self._client_keys is not None:
            return self._client_keys
        if self.client_key_path:
            self._client_keys = [asyncssh.read_private_key(self.client_key_path)]
        elif private_key_str := os.environ.get("SSH_PRIVATE_KEY"):
            self._client_keys = [asyncssh.import_private_key(private_key_str)]
        # None lets asyncssh fall back to the default identities of the current user
        return self._client_keys

    async def execute(self, command: str, timeout: float | None = None) -> ExecResult:
        """Execute a command on the target and return its structured result."""
        timeout = timeout or self.command_timeout
        logger.debug("Running remote command on %s: %s", self.host, command)

        try:
            client_keys = self._load_client_keys()
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, OSError, ValueError) as e:
            logger.exception("Failed to load SSH private key")
            return ExecResult(error_kind=ExecErrorKind.KEY, error=f"Failed to load private key: {e}")

        options = asyncssh.SSHClientConnectionOptions(
            known_hosts=None,  # Disables host key checking
            connect_timeout=self.connect_timeout,
            username=self.username,
            client_keys=client_keys if client_keys is not None else (),
        )

        conn = None
        try:
            conn = await asyncssh.connect(self.host, port=self.port, options=options)
            result = await asyncio.wait_for(conn.run(command, check=False), timeout=timeout)
        except Exception as e:
            kind = classify_exception(e)
            logger.debug("Remote command on %s failed (%s): %s", self.host, kind.value, e)
            return ExecResult(error_kind=kind, error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__)
        finally:
            if conn:
                conn.close()
                try:
                    await conn.wait_closed()
                except (OSError, asyncssh.Error):
                    logger.debug("Error while closing connection to %s", self.host)

        stdout = result.stdout if isinstance(result.stdout, str) else ""
        stderr = result.stderr if isinstance(result.stderr, str) else ""
        if result.exit_status is None:
            # Channel closed without reporting an exit status
            return ExecResult(
                stdout=stdout,
                stderr=stderr,
                error_kind=ExecErrorKind.DISCONNECTED,
                error="Channel closed before the command exited",
            )
        if result.exit_status != 0:
            return ExecResult(
                exit_status=result.exit_status,
                stdout=stdout,
                stderr=stderr,
                error_kind=ExecErrorKind.COMMAND,
                error=f"Command exited with status {result.exit_status}: {stderr.strip() or 'N/A'}",
            )
        return ExecResult(exit_status=0, stdout=stdout, stderr=stderr)
