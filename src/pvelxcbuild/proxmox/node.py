"""Retrieve vzdump archives from a Proxmox node over SSH/SFTP.

The REST API only reports where a backup was written; the archive itself
has to be copied off the node's filesystem.
"""

from __future__ import annotations

import os
import posixpath
import re
import tempfile
import threading
from pathlib import Path
from typing import Optional

import paramiko

from pvelxcbuild.errors import ArtifactTransportError, BuildCancelled
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)


def backup_pattern(vmid: int) -> re.Pattern:
    return re.compile(rf"vzdump-lxc-{vmid}-.*?\.tar\.gz")


def select_backup(names: list[str], vmid: int) -> Optional[str]:
    """Pick the archive for `vmid`; the last match in listing order wins."""
    pattern = backup_pattern(vmid)
    selected = None
    for name in names:
        if pattern.search(name):
            selected = name
    return selected


def dump_dir_for_storage(storage: dict) -> str:
    """Node-local dump directory of a file-based storage definition."""
    path = storage.get("path")
    if not path:
        raise ArtifactTransportError(
            f"storage {storage.get('storage', '?')!r} (type {storage.get('type', '?')}) "
            f"has no filesystem path; set backup_dump_dir or use a directory-backed storage"
        )
    return posixpath.join(path, "dump")


class NodeSFTP:
    """SSH session to a Proxmox node used only to fetch one backup file."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 22,
        host_key: str = "",
        insecure_skip_host_key: bool = False,
        connect_timeout: float = 30,
    ):
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.host_key = host_key
        self.insecure_skip_host_key = insecure_skip_host_key
        self.connect_timeout = connect_timeout
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def _load_host_keys(self, ssh: paramiko.SSHClient) -> None:
        if self.insecure_skip_host_key:
            logger.warning(f"Host key verification for {self.host} is disabled")
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            return

        if self.host_key:
            host_id = self.host if self.port == 22 else f"[{self.host}]:{self.port}"
            try:
                entry = paramiko.hostkeys.HostKeyEntry.from_line(f"{host_id} {self.host_key}")
            except (paramiko.SSHException, paramiko.hostkeys.InvalidHostKey, ValueError) as e:
                raise ArtifactTransportError(f"node_ssh_host_key is not a valid OpenSSH public key: {e}") from e
            if entry is None or entry.key is None:
                raise ArtifactTransportError("node_ssh_host_key is not a valid OpenSSH public key")
            ssh.get_host_keys().add(host_id, entry.key.get_name(), entry.key)
        else:
            ssh.load_system_host_keys()
        ssh.set_missing_host_key_policy(paramiko.RejectPolicy())

    def connect(self) -> "NodeSFTP":
        ssh = paramiko.SSHClient()
        self._load_host_keys(ssh)
        logger.info(f"Establishing SSH connection with [{self.username}] at [{self.host}:{self.port}]")
        try:
            ssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self._password,
                timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise ArtifactTransportError(f"SSH connection to {self.host}:{self.port} failed: {e}") from e

        try:
            self._sftp = ssh.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise ArtifactTransportError(f"could not open SFTP session on {self.host}: {e}") from e
        self._ssh = ssh
        return self

    @property
    def sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise ConnectionError("Not connected to node. Call connect() first.")
        return self._sftp

    def list_dir(self, path: str) -> list[str]:
        try:
            return self.sftp.listdir(path)
        except (paramiko.SSHException, OSError) as e:
            raise ArtifactTransportError(f"could not list {path}: {e}") from e

    def download(self, remote_path: str, local_path: Path, cancel: Optional[threading.Event] = None) -> int:
        """Copy a remote file to `local_path`, atomically replacing it.

        The bytes land in a temporary file next to the destination and are
        renamed into place only after the full size has been received.
        """
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            expected = self.sftp.stat(remote_path).st_size
        except (paramiko.SSHException, OSError) as e:
            raise ArtifactTransportError(f"could not stat {remote_path}: {e}") from e

        def _progress(transferred: int, total: int) -> None:
            if cancel is not None and cancel.is_set():
                raise BuildCancelled()

        fd, tmp_name = tempfile.mkstemp(prefix=f".{local_path.name}.", dir=local_path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                try:
                    received = self.sftp.getfo(remote_path, f, callback=_progress)
                except (paramiko.SSHException, OSError) as e:
                    raise ArtifactTransportError(f"transfer of {remote_path} failed: {e}") from e
            size = os.path.getsize(tmp_name)
            if expected is not None and size != expected:
                raise ArtifactTransportError(
                    f"transfer of {remote_path} truncated: got {size} of {expected} bytes"
                )
            os.replace(tmp_name, local_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(f"Downloaded {posixpath.basename(remote_path)}: {received / (1024**2):.1f} MiB")
        return size

    def close(self) -> None:
        if self._sftp is not None:
            try:
                self._sftp.close()
            except Exception as e:
                logger.warning(f"Error closing SFTP session: {e}")
            finally:
                self._sftp = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, *args):
        self.close()
