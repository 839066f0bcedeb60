"""Per-build state threaded through every pipeline step."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from pvelxcbuild.communicator import SSHCommunicator
    from pvelxcbuild.config import BuildConfig
    from pvelxcbuild.provision import Hook
    from pvelxcbuild.proxmox.client import ProxmoxClient, VmRef
    from pvelxcbuild.ui import Ui


@dataclass
class BuildState:
    """Typed replacement for a string-keyed state bag.

    The first group is fixed when the build starts; the rest is written by
    steps as they complete and read by the steps after them.
    """
    config: "BuildConfig"
    client: "ProxmoxClient"
    ui: "Ui"
    hook: Optional["Hook"] = None
    cancel: threading.Event = field(default_factory=threading.Event)

    # Written by steps
    vm_ref: Optional["VmRef"] = None
    container_deleted: bool = False
    http_ip: Optional[str] = None
    http_port: Optional[int] = None
    communicator: Optional["SSHCommunicator"] = None
    generated_data: dict[str, Any] = field(default_factory=dict)

    # Terminal outcome
    error: Optional[BaseException] = None
    cancelled: bool = False
    aborted: bool = False  # a step raised instead of returning an action
    reached: list[str] = field(default_factory=list)

    def put_error(self, err: BaseException) -> None:
        """Record the first fatal error; later ones are ignored."""
        if self.error is None:
            self.error = err

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def halted(self) -> bool:
        """True when the build ended in failure, cancellation or a crash."""
        return self.error is not None or self.cancelled or self.aborted
