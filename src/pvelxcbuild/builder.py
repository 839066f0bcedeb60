"""Top-level builder: prepare a configuration, run the step pipeline."""

from __future__ import annotations

import threading
from typing import Any, Optional

from pvelxcbuild.artifact import Artifact
from pvelxcbuild.communicator import SSHCommunicator
from pvelxcbuild.config import BuildConfig, prepare
from pvelxcbuild.errors import BuildCancelled
from pvelxcbuild.pipeline.sequencer import Sequencer, Step
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.pipeline.steps.cleanup_keys import CleanupTempKeys
from pvelxcbuild.pipeline.steps.connect import Connect, comm_host
from pvelxcbuild.pipeline.steps.convert import ConvertToTemplate
from pvelxcbuild.pipeline.steps.create_container import CreateContainer
from pvelxcbuild.pipeline.steps.http_server import ServeHTTP
from pvelxcbuild.pipeline.steps.provision import Provision
from pvelxcbuild.provision import Hook
from pvelxcbuild.proxmox.client import ProxmoxClient
from pvelxcbuild.proxmox.node import NodeSFTP
from pvelxcbuild.ui import Ui
from pvelxcbuild.utils.logging import get_logger, log_secret_filter

logger = get_logger(__name__)


class Builder:
    """Builds one LXC template per run().

    Stages (executed in order):
    1. create_container   — allocate VMID, create and start the container
    2. http_server        — serve http_directory to the guest (optional)
    3. connect            — open SSH to the guest
    4. provision          — run the provisioning hook
    5. cleanup_temp_keys  — drop the bootstrap authorized key (optional)
    6. convert_to_template — stop, vzdump, download over SFTP, delete

    The remote factories are injectable so the pipeline can run against
    in-memory doubles.
    """

    def __init__(
        self,
        client_factory=ProxmoxClient,
        node_factory=NodeSFTP,
        communicator_factory=SSHCommunicator,
    ):
        self.config: Optional[BuildConfig] = None
        self.state: Optional[BuildState] = None
        self.client_factory = client_factory
        self.node_factory = node_factory
        self.communicator_factory = communicator_factory

    def prepare(self, *raws: Any) -> list[str]:
        """Validate configuration; returns warnings, raises ConfigError."""
        warnings, self.config = prepare(*raws)
        return warnings

    def steps(self) -> list[Step]:
        config = self.config
        return [
            CreateContainer(),
            ServeHTTP(),
            Connect(comm_host(config.provision_host), communicator_factory=self.communicator_factory),
            Provision(),
            CleanupTempKeys(),
            ConvertToTemplate(node_factory=self.node_factory),
        ]

    def _connect(self) -> ProxmoxClient:
        config = self.config
        client = self.client_factory(
            config.proxmox_url,
            config.username,
            config.password_value,
            verify_tls=not config.insecure_skip_tls_verify,
            timeout=config.task_timeout,
            poll_interval=config.task_poll_interval,
        )
        client.login()
        return client

    def run(
        self,
        cancel: Optional[threading.Event] = None,
        ui: Optional[Ui] = None,
        hook: Optional[Hook] = None,
    ) -> Artifact:
        """Run the pipeline.

        Returns:
            The produced Artifact

        Raises:
            BuildCancelled: If `cancel` was set before the build finished
            Exception: The first fatal error recorded by a step
        """
        if self.config is None:
            raise RuntimeError("Builder.prepare() must be called before run()")
        config = self.config
        # prepare() registers these too; a Builder may be handed a config built elsewhere
        log_secret_filter.set(config.password_value, config.node_password_value)

        ui = ui or Ui()
        cancel = cancel or threading.Event()
        client = self._connect()

        state = BuildState(config=config, client=client, ui=ui, hook=hook, cancel=cancel)
        self.state = state
        completed = Sequencer(self.steps()).run(state)
        logger.debug(f"Reached: {' → '.join(state.reached) or 'nothing'}")

        if state.error is not None:
            raise state.error
        if state.cancelled:
            raise BuildCancelled("build was cancelled")
        if not completed:
            raise RuntimeError("build halted without reporting an error")

        return Artifact(
            template_path=config.output_path,
            state_data={"generated_data": dict(state.generated_data)},
        )
