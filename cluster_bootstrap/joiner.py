"""State machine for control-plane and agent nodes joining an existing cluster.

NotStarted -> Installing -> Rebooting -> AwaitingReachable -> AwaitingClusterToken
-> ConfigWritten -> Joining -> APIReady (control-plane only) -> Ready
"""

from cluster_bootstrap.exceptions import Timeout
from cluster_bootstrap.handoff import ClusterHandoff
from cluster_bootstrap.models.cluster import ClusterConfig
from cluster_bootstrap.models.node import NodeRole, NodeSpec
from cluster_bootstrap.models.state import Phase, ProvisioningState
from cluster_bootstrap.provisioner import NodeProvisioner
from cluster_bootstrap.remote import RemoteExecutor
from cluster_bootstrap.render import render_node


class NodeJoiner(NodeProvisioner):
    """Joins one node to the cluster published through the handoff."""

    def __init__(
        self,
        node: NodeSpec,
        config: ClusterConfig,
        executor: RemoteExecutor,
        handoff: ClusterHandoff,
        observer: NodeSpec,
        state: ProvisioningState | None = None,
    ):
        """Initialize the joiner.

        Args:
            node: Node to join
            config: Cluster configuration
            executor: Remote executor
            handoff: Barrier published by the first control-plane node
            observer: Server node used to check this node's Ready condition
            state: Existing state record, created when omitted
        """
        if node.role is NodeRole.FIRST_CONTROL_PLANE:
            raise ValueError(f"{node.name} initiates the cluster and cannot join it")
        super().__init__(node, config, executor, state)
        self.handoff = handoff
        self.observer = observer

    async def _provision(self) -> None:
        await self._prepare_os()

        self.state.advance(Phase.AWAITING_CLUSTER_TOKEN)
        self.log.info("Waiting for the cluster token")
        identity = await self.handoff.wait()

        rendered = render_node(
            self.node.role, self.config, identity.token, self.node, identity.server_address
        )
        await self._write_config(rendered.config_text)

        self.state.advance(Phase.JOINING)
        self.log.info(f"Joining via {identity.server_address}")
        await self._start_service()

        if self.node.role is NodeRole.CONTROL_PLANE:
            await self._wait_api_ready(Timeout)
            self.state.advance(Phase.API_READY)

        await self._wait_node_ready(self.observer)
        self.state.advance(Phase.READY)
