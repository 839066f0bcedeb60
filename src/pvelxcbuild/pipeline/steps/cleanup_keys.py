"""Remove the bootstrap authorized key from the guest before export."""

from __future__ import annotations

import shlex

from pvelxcbuild.errors import CommunicatorError
from pvelxcbuild.pipeline.sequencer import Step, StepAction
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)


def remove_key_command(public_key: str) -> str:
    """Shell command dropping every authorized_keys line containing the key body."""
    parts = public_key.split()
    body = parts[1] if len(parts) > 1 else public_key
    return (
        "f=~/.ssh/authorized_keys; [ -f \"$f\" ] || exit 0; "
        f"grep -vF {shlex.quote(body)} \"$f\" > \"$f.tmp\"; "
        "mv \"$f.tmp\" \"$f\" && chmod 600 \"$f\""
    )


class CleanupTempKeys(Step):
    """Best effort: failures are reported but never fail the build."""

    name = "cleanup_temp_keys"

    def run(self, state: BuildState) -> StepAction:
        comm = state.config.communicator
        if comm.type != "ssh" or not comm.ssh_clear_authorized_keys:
            return StepAction.CONTINUE
        if state.communicator is None:
            return StepAction.CONTINUE

        state.ui.say("Trying to remove ephemeral keys from authorized_keys files")
        try:
            public_key = state.config.provision_public_key_file.read_text().strip()
            result = state.communicator.run(remove_key_command(public_key), cancel=state.cancel)
            if not result.success:
                raise CommunicatorError(result.stderr.strip() or f"exit status {result.exit_status}")
            logger.info("Removed bootstrap key from authorized_keys")
        except (CommunicatorError, OSError) as e:
            state.ui.error(f"Error cleaning up ~/.ssh/authorized_keys; please clean up keys manually: {e}")
        return StepAction.CONTINUE
