from __future__ import annotations

from llmflow.flows.agent_transfer import AgentTransferRequestProcessor
from llmflow.flows.single_flow import SingleFlow


class AutoFlow(SingleFlow):
    """
    SingleFlow plus agent hand-off.

    The `transfer_to_agent` tool lets the model pass control to its parent,
    a peer or a sub-agent; the loop then continues with that agent's
    instruction and tools.
    """

    def __init__(self) -> None:
        super().__init__()
        self.request_processors.append(AgentTransferRequestProcessor())
