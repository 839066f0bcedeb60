"""Create and start the throwaway LXC container."""

from __future__ import annotations

from typing import Any

from pvelxcbuild.config import BuildConfig
from pvelxcbuild.errors import BuildCancelled, ProxmoxAPIError, ProxmoxError
from pvelxcbuild.pipeline.sequencer import Step, StepAction
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)


def build_create_params(config: BuildConfig, vmid: int, public_key: str) -> dict[str, Any]:
    """Form fields for POST /nodes/{node}/lxc."""
    net0 = f"name=eth0,bridge={config.provision_bridge},hwaddr={config.provision_mac},ip={config.provision_cidr}"
    if config.provision_gateway and not config.uses_dhcp:
        net0 += f",gw={config.provision_gateway}"

    params: dict[str, Any] = {
        "vmid": vmid,
        "ostemplate": config.template_file,
        "storage": config.filesystem_storage,
        "rootfs": f"{config.filesystem_storage}:{config.filesystem_size}",
        "memory": config.memory,
        "cores": config.cores,
        "unprivileged": int(config.unprivileged),
        "net0": net0,
        "ssh-public-keys": public_key,
        "password": config.provision_password.get_secret_value(),
    }
    if config.pool:
        params["pool"] = config.pool
    if config.hostname:
        params["hostname"] = config.hostname
    return params


class CreateContainer(Step):
    """Allocate a VMID, create the container from the base template, start it."""

    name = "create_container"

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        client = state.client
        ui = state.ui

        try:
            public_key = config.provision_public_key_file.read_text().strip()
        except OSError as e:
            return self.halt(state, f"Error creating container, could not read public key: {e}", e)

        try:
            vmid = config.vmid
            if vmid == 0:
                vmid = client.get_next_vmid()
                logger.info(f"Allocated VMID {vmid}")

            ui.say(f"Creating LXC Container {vmid} on node {config.node}")
            params = build_create_params(config, vmid, public_key)
            vm_ref, upid = client.create_lxc(config.node, params)
            # Published before the task finishes so a half-created container is removed
            state.vm_ref = vm_ref
            state.generated_data["ID"] = vm_ref.vmid
            client.wait_for_task(upid, cancel=state.cancel)

            ui.say(f"Starting LXC Container {vmid}")
            client.start_lxc(vm_ref, cancel=state.cancel)
        except BuildCancelled:
            return StepAction.HALT
        except (ProxmoxError, TimeoutError) as e:
            return self.halt(state, f"Error creating container: {e}", e)

        if config.boot_wait > 0:
            ui.say(f"Waiting {config.boot_wait:.0f}s for boot")
            if state.cancel.wait(config.boot_wait):
                return StepAction.HALT

        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        vm_ref = state.vm_ref
        if vm_ref is None or state.container_deleted or not state.halted:
            return

        ui = state.ui
        client = state.client
        ui.say(f"Stopping LXC Container {vm_ref.vmid}")
        try:
            client.stop_lxc(vm_ref)
        except (ProxmoxError, TimeoutError) as e:
            # Most often the container is already stopped or never started
            logger.warning(f"Stop of container {vm_ref.vmid} failed: {e}")

        ui.say(f"Deleting LXC Container {vm_ref.vmid}")
        try:
            client.delete_lxc(vm_ref)
        except ProxmoxAPIError as e:
            if e.not_found:
                logger.info(f"Container {vm_ref.vmid} already removed")
            else:
                ui.error(f"Error deleting container {vm_ref.vmid}. Please delete it manually: {e}")
                return
        except (ProxmoxError, TimeoutError) as e:
            ui.error(f"Error deleting container {vm_ref.vmid}. Please delete it manually: {e}")
            return
        state.container_deleted = True
        logger.info(f"Container {vm_ref.vmid} removed")
