"""Run the provisioning hook against the connected guest."""

from __future__ import annotations

from pvelxcbuild.errors import BuildCancelled, CommunicatorError
from pvelxcbuild.pipeline.sequencer import Step, StepAction
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.provision import HOOK_PROVISION


class Provision(Step):
    name = "provision"

    def run(self, state: BuildState) -> StepAction:
        if state.hook is None:
            return StepAction.CONTINUE

        state.ui.say("Running provisioners")
        try:
            extra = state.hook.run(
                HOOK_PROVISION,
                state.ui,
                state.communicator,
                dict(state.generated_data),
                cancel=state.cancel,
            )
        except BuildCancelled:
            return StepAction.HALT
        except (CommunicatorError, OSError) as e:
            return self.halt(state, f"Error provisioning: {e}", e)

        if extra:
            state.generated_data.update(extra)
        return StepAction.CONTINUE
