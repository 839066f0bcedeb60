"""Open the guest communicator."""

from __future__ import annotations

import ipaddress
from typing import Callable

from pvelxcbuild.communicator import SSHCommunicator
from pvelxcbuild.errors import BuildCancelled, CommunicatorError, ProxmoxError
from pvelxcbuild.pipeline.sequencer import Step, StepAction
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)

HostResolver = Callable[[BuildState], str]


def container_ip(state: BuildState) -> str:
    """First non-loopback IPv4 address the running container reports."""
    interfaces = state.client.get_lxc_interfaces(state.vm_ref)
    for iface in interfaces:
        for key in ("inet", "ip-address"):
            value = iface.get(key)
            if not value:
                continue
            addr = ipaddress.ip_interface(value).ip
            if addr.is_loopback:
                continue
            return str(addr)
    raise CommunicatorError("Found no IP addresses on container")


def comm_host(host: str) -> HostResolver:
    """Return the configured host verbatim, or look it up from the container."""
    if host:
        return lambda state: host
    return container_ip


class Connect(Step):
    """Connect to the guest over SSH, retrying until it answers."""

    name = "connect"

    def __init__(self, host: HostResolver, communicator_factory=SSHCommunicator):
        self.host = host
        self.communicator_factory = communicator_factory

    def run(self, state: BuildState) -> StepAction:
        comm = state.config.communicator
        if comm.type == "none":
            logger.info("Communicator type is 'none', not connecting")
            return StepAction.CONTINUE

        try:
            host = self.host(state)
        except (ProxmoxError, CommunicatorError, ValueError) as e:
            return self.halt(state, f"Error finding container address: {e}", e)

        state.ui.say(f"Waiting for SSH to become available on {host}:{comm.ssh_port}...")
        communicator = self.communicator_factory(
            host=host,
            port=comm.ssh_port,
            username=comm.ssh_username,
            private_key_file=comm.ssh_private_key_file,
            password=comm.ssh_password.get_secret_value() if comm.ssh_password else None,
            agent_auth=comm.ssh_agent_auth,
            timeout=comm.ssh_timeout,
            handshake_attempts=comm.ssh_handshake_attempts,
        )
        try:
            communicator.connect(cancel=state.cancel)
        except BuildCancelled:
            return StepAction.HALT
        except CommunicatorError as e:
            return self.halt(state, f"Error waiting for SSH: {e}", e)

        state.ui.say("Connected to SSH!")
        state.communicator = communicator
        state.generated_data.update({
            "Host": host,
            "Port": comm.ssh_port,
            "User": comm.ssh_username,
        })
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if state.communicator is not None:
            state.communicator.close()
            state.communicator = None
