"""SSH communicator for the guest container."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Optional

import paramiko

from pvelxcbuild.errors import BuildCancelled, CommunicatorError
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)


class CommandResult:
    """Result of a remote command execution."""

    def __init__(self, exit_status: int, stdout: str = "", stderr: str = ""):
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.exit_status == 0


class SSHCommunicator:
    """Runs commands and uploads files inside the guest over SSH.

    Connection attempts are retried with exponential backoff (capped at
    30s) until the handshake budget or the overall timeout is exhausted.
    The guest is a freshly booted container, so its host key is unknown by
    construction and is accepted on first use.
    """

    poll_interval = 0.2
    read_size = 32768

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        private_key_file: Optional[Path] = None,
        password: Optional[str] = None,
        agent_auth: bool = False,
        timeout: float = 300,
        handshake_attempts: int = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.private_key_file = private_key_file
        self._password = password
        self.agent_auth = agent_auth
        self.timeout = timeout
        self.handshake_attempts = handshake_attempts
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise CommunicatorError("Not connected to guest. Call connect() first.")
        return self._client

    def _attempt(self) -> paramiko.SSHClient:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                key_filename=str(self.private_key_file) if self.private_key_file else None,
                password=self._password,
                allow_agent=self.agent_auth,
                look_for_keys=False,
                timeout=min(30, self.timeout),
                banner_timeout=30,
            )
        except BaseException:
            ssh.close()
            raise
        return ssh

    def connect(self, cancel: Optional[threading.Event] = None) -> "SSHCommunicator":
        """Connect, retrying until success, timeout or cancellation.

        Raises:
            CommunicatorError: If the guest never became reachable
            BuildCancelled: If `cancel` fires while waiting
        """
        start = time.time()
        last_error: Optional[Exception] = None
        handshake_failures = 0
        attempt = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise BuildCancelled()
            attempt += 1
            try:
                logger.debug(f"Connecting to {self.username}@{self.host}:{self.port} (attempt {attempt})")
                self._client = self._attempt()
                logger.info(f"Connected to guest {self.host}:{self.port}")
                return self
            except paramiko.AuthenticationException as e:
                # sshd is up but rejected us; this does not heal with time
                raise CommunicatorError(f"SSH authentication to {self.host} failed: {e}") from e
            except paramiko.SSHException as e:
                handshake_failures += 1
                last_error = e
                if handshake_failures >= self.handshake_attempts:
                    raise CommunicatorError(
                        f"SSH handshake with {self.host} failed {handshake_failures} times: {e}"
                    ) from e
            except OSError as e:
                last_error = e

            elapsed = time.time() - start
            if elapsed >= self.timeout:
                raise CommunicatorError(
                    f"Timeout waiting for SSH on {self.host}:{self.port} after {elapsed:.0f}s: {last_error}"
                )
            delay = min(2 ** min(attempt, 5), 30, max(self.timeout - elapsed, 0.1))
            logger.debug(f"SSH not ready ({last_error}), retrying in {delay:.0f}s")
            if cancel is not None:
                if cancel.wait(delay):
                    raise BuildCancelled()
            else:
                time.sleep(delay)

    def run(
        self,
        command: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        """Execute a shell command in the guest and wait for it to exit.

        Output is drained while the command runs so a chatty script cannot
        stall on a full channel window. Setting `cancel` closes the channel,
        which ends the remote session.

        Raises:
            CommunicatorError: If the channel fails
            BuildCancelled: If `cancel` fires before the command exits
        """
        out, err = bytearray(), bytearray()
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            while not channel.exit_status_ready():
                if cancel is not None and cancel.is_set():
                    channel.close()
                    logger.info(f"Remote command on {self.host} cancelled")
                    raise BuildCancelled()
                while channel.recv_ready():
                    out += channel.recv(self.read_size)
                while channel.recv_stderr_ready():
                    err += channel.recv_stderr(self.read_size)
                if cancel is not None:
                    cancel.wait(self.poll_interval)
                else:
                    time.sleep(self.poll_interval)
            out += stdout.read()
            err += stderr.read()
            exit_status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CommunicatorError(f"Remote command failed to run: {e}") from e
        return CommandResult(
            exit_status,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    def upload(self, local_path: Path, remote_path: str) -> None:
        try:
            sftp = self.client.open_sftp()
            try:
                sftp.put(str(local_path), remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise CommunicatorError(f"Upload of {local_path} to {remote_path} failed: {e}") from e

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
                logger.debug(f"Disconnected from guest {self.host}")
            finally:
                self._client = None
