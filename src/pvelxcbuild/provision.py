"""Provisioning hook: runs the build's provisioners inside the guest."""

from __future__ import annotations

import os
import shlex
import tempfile
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence, Union

from pvelxcbuild.config import FileProvisioner, ShellProvisioner
from pvelxcbuild.errors import BuildCancelled, CommunicatorError
from pvelxcbuild.utils.logging import get_logger

if TYPE_CHECKING:
    from pvelxcbuild.communicator import SSHCommunicator
    from pvelxcbuild.ui import Ui

logger = get_logger(__name__)

HOOK_PROVISION = "provision"

Provisioner = Union[ShellProvisioner, FileProvisioner]


class Hook(Protocol):
    """Callback the Provision step hands the connected communicator to.

    Returns extra generated data to publish on the artifact, or None.
    """

    def run(
        self,
        name: str,
        ui: "Ui",
        communicator: Optional["SSHCommunicator"],
        data: dict[str, Any],
        cancel: Optional[threading.Event] = None,
    ) -> Optional[dict[str, Any]]:
        ...


class ProvisionerHook:
    """Runs shell and file provisioners in order."""

    remote_dir = "/tmp"

    def __init__(self, provisioners: Sequence[Provisioner] = ()):
        self.provisioners = list(provisioners)

    def run(self, name, ui, communicator, data, cancel=None):
        if name != HOOK_PROVISION or not self.provisioners:
            return None
        if communicator is None:
            raise CommunicatorError("provisioners are configured but the communicator is 'none'")

        for i, prov in enumerate(self.provisioners, 1):
            if cancel is not None and cancel.is_set():
                raise BuildCancelled()
            ui.say(f"Provisioning with {prov.type} ({i}/{len(self.provisioners)})")
            if isinstance(prov, FileProvisioner):
                self._run_file(prov, ui, communicator)
            else:
                self._run_shell(prov, ui, communicator, data, cancel)
        return {"ProvisionersRun": len(self.provisioners)}

    def _run_file(self, prov: FileProvisioner, ui, communicator) -> None:
        ui.message(f"Uploading {prov.source} => {prov.destination}")
        communicator.upload(prov.source, prov.destination)

    def _run_shell(
        self,
        prov: ShellProvisioner,
        ui,
        communicator,
        data: dict[str, Any],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        env = {
            "PVELXC_BUILD_NAME": "proxmox-lxc",
            "PVELXC_VMID": str(data.get("ID", "")),
        }
        if data.get("HTTPIP") and data.get("HTTPPort"):
            env["PVELXC_HTTP_ADDR"] = f"{data['HTTPIP']}:{data['HTTPPort']}"
        for item in prov.environment_vars:
            key, value = item.split("=", 1)
            env[key] = value

        if prov.script is not None:
            script_body = Path(prov.script).read_text()
        else:
            script_body = "#!/bin/sh -e\n" + "\n".join(prov.inline) + "\n"

        remote_path = f"{self.remote_dir}/script_{uuid.uuid4().hex[:8]}.sh"
        fd, local_tmp = tempfile.mkstemp(suffix=".sh")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(script_body)
            communicator.upload(Path(local_tmp), remote_path)
        finally:
            os.unlink(local_tmp)

        env_prefix = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
        command = f"chmod +x {remote_path}; {env_prefix} {remote_path}; rc=$?; rm -f {remote_path}; exit $rc"
        result = communicator.run(command, cancel=cancel)
        for line in result.stdout.splitlines():
            ui.message(line)
        for line in result.stderr.splitlines():
            ui.message(line)
        if not result.success:
            raise CommunicatorError(f"Script exited with non-zero exit status: {result.exit_status}")
