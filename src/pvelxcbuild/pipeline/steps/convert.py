"""Turn the provisioned container into a downloadable template archive.

Sequence: graceful shutdown, vzdump to the template storage pool, wait for
the backup task, fetch the archive from the node over SFTP, then delete the
source container.

A backup made with remove=1 lets Proxmox prune old archives for the same
guest according to the storage's retention settings. With a retention of
one that can race the SFTP fetch; the "not found" error says so.
"""

from __future__ import annotations

import posixpath

from pvelxcbuild.errors import (
    ArtifactTransportError,
    BuildCancelled,
    ProxmoxError,
)
from pvelxcbuild.pipeline.sequencer import Step, StepAction
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.proxmox.node import NodeSFTP, dump_dir_for_storage, select_backup
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)

ERROR_PREFIX = "Error converting VM to template"


def vzdump_params(storage: str, vmid: int, remove: bool = True) -> dict[str, str]:
    return {
        "mode": "stop",
        "compress": "gzip",
        "remove": "1" if remove else "0",
        "storage": storage,
        "vmid": str(vmid),
    }


class ConvertToTemplate(Step):
    """Stop, back up, download and delete the build container."""

    name = "convert_to_template"

    def __init__(self, node_factory=NodeSFTP):
        self.node_factory = node_factory

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        client = state.client
        ui = state.ui
        vm_ref = state.vm_ref
        vmid = vm_ref.vmid

        ui.say("Stopping LXC Container")
        try:
            client.shutdown_lxc(vm_ref, cancel=state.cancel)
        except (ProxmoxError, TimeoutError, BuildCancelled) as e:
            return self.halt(state, f"{ERROR_PREFIX}, could not stop: {e}", e)

        ui.say("Converting LXC Container to template")
        if config.vzdump_remove:
            ui.warn("vzdump runs with remove=1; storage retention may prune this backup "
                    "before it is downloaded")
        try:
            upid = client.vzdump(config.node, vzdump_params(config.template_storage_pool, vmid, config.vzdump_remove))
        except ProxmoxError as e:
            return self.halt(state, f"{ERROR_PREFIX}, failed to create backup: {e}", e)

        try:
            client.wait_for_task(upid, cancel=state.cancel)
        except (ProxmoxError, TimeoutError, BuildCancelled) as e:
            return self.halt(state, f"{ERROR_PREFIX}, failed to wait process completion: {e}", e)

        try:
            self._download(state, vmid)
        except (ArtifactTransportError, ProxmoxError, OSError, BuildCancelled) as e:
            return self.halt(state, f"{ERROR_PREFIX}, failed to download backup: {e}", e)

        ui.say("Deleting LXC Container")
        try:
            client.delete_lxc(vm_ref)
        except (ProxmoxError, TimeoutError) as e:
            ui.error(f"Error deleting VM. Please delete it manually: {e}")
        else:
            state.container_deleted = True

        return StepAction.CONTINUE

    def _dump_dir(self, state: BuildState) -> str:
        config = state.config
        if config.backup_dump_dir:
            return config.backup_dump_dir
        return dump_dir_for_storage(state.client.get_storage(config.template_storage_pool))

    def _download(self, state: BuildState, vmid: int) -> None:
        config = state.config
        ui = state.ui
        dump_dir = self._dump_dir(state)

        ui.say(f"Establishing SSH connection with [{config.node_ssh_username}] at "
               f"[{config.parsed_url.hostname}:{config.node_ssh_port}] for template file...")
        node = self.node_factory(
            host=config.parsed_url.hostname,
            port=config.node_ssh_port,
            username=config.node_ssh_username,
            password=config.node_password_value,
            host_key=config.node_ssh_host_key,
            insecure_skip_host_key=config.node_ssh_insecure_skip_host_key,
        )
        with node:
            ui.say("Listing vzdump backup directory for template backup...")
            name = select_backup(node.list_dir(dump_dir), vmid)
            if name is None:
                msg = f"could not find backup file for LXC container {vmid}"
                if config.vzdump_remove:
                    msg += " (vzdump ran with remove=1; retention may have pruned it)"
                raise ArtifactTransportError(msg)

            src = posixpath.join(dump_dir, name)
            ui.say(f"Transferring vzdump template backup {src} to {config.output_path}...")
            size = node.download(src, config.output_path, cancel=state.cancel)
            logger.info(f"Template written to {config.output_path} ({size} bytes)")
