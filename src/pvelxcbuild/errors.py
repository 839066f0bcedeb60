"""Exception types raised across the build pipeline."""

from __future__ import annotations

from typing import Optional


class ConfigError(ValueError):
    """One or more configuration problems, collected by prepare()."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        lines = "\n".join(f"* {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred:\n{lines}")


class ProxmoxError(RuntimeError):
    """Base class for failures talking to the Proxmox REST API."""


class ProxmoxAPIError(ProxmoxError):
    """Proxmox answered with a non-retryable HTTP error."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code} {message}")

    @property
    def not_found(self) -> bool:
        if self.status_code == 404:
            return True
        # PVE reports missing guests as 500 with a config-file message
        return "does not exist" in self.message


class ProxmoxTransientError(ProxmoxError):
    """Network, TLS or 5xx failure that outlived the retry budget."""


class TaskFailedError(ProxmoxError):
    """A Proxmox task finished with an exit status other than OK."""

    def __init__(self, upid: str, exitstatus: str, log_tail: Optional[list[str]] = None):
        self.upid = upid
        self.exitstatus = exitstatus
        self.log_tail = log_tail or []
        msg = f"task {upid} failed: {exitstatus}"
        if self.log_tail:
            msg += "\n" + "\n".join(self.log_tail)
        super().__init__(msg)


class ArtifactTransportError(RuntimeError):
    """The backup archive could not be located or copied from the node."""


class CommunicatorError(RuntimeError):
    """The guest could not be reached or a remote command failed."""


class BuildCancelled(Exception):
    """Raised from blocking calls once the build's cancel event is set."""

    def __init__(self, message: str = "build was cancelled"):
        super().__init__(message)
