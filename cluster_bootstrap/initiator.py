"""State machine for the first control-plane node.

NotStarted -> Installing -> Rebooting -> AwaitingReachable -> ConfigWritten
-> Initializing -> APIReady -> SecretsSeeded -> AddonsApplied -> Ready

Any error moves the node to Failed, and the orchestrator aborts the run:
no other node can join without this one.
"""

from cluster_bootstrap.addons import PostInstallApplier
from cluster_bootstrap.exceptions import AddonApplyFailure, InitializationTimeout
from cluster_bootstrap.handoff import ClusterHandoff
from cluster_bootstrap.models.cluster import ClusterConfig, ClusterToken
from cluster_bootstrap.models.node import NodeRole, NodeSpec
from cluster_bootstrap.models.state import Phase, ProvisioningState
from cluster_bootstrap.provisioner import NodeProvisioner
from cluster_bootstrap.remote import RemoteExecutor, run_checked
from cluster_bootstrap.render import render_node
from cluster_bootstrap.secrets import generate_cluster_token, parse_token_output, read_token_command


class ClusterInitiator(NodeProvisioner):
    """Brings up the first control-plane node and publishes the cluster identity."""

    def __init__(
        self,
        node: NodeSpec,
        config: ClusterConfig,
        executor: RemoteExecutor,
        handoff: ClusterHandoff,
        applier: PostInstallApplier,
        state: ProvisioningState | None = None,
    ):
        if node.role is not NodeRole.FIRST_CONTROL_PLANE:
            raise ValueError(f"{node.name} is not the first control-plane node")
        super().__init__(node, config, executor, state)
        self.handoff = handoff
        self.applier = applier
        self.token: ClusterToken | None = None

    async def _provision(self) -> None:
        await self._prepare_os()

        self.token = await self._obtain_token()
        rendered = render_node(
            self.node.role, self.config, self.token, self.node, bundle=self.applier.bundle
        )
        await self._write_config(rendered.config_text)

        self.state.advance(Phase.INITIALIZING)
        await self._start_service()
        await self._wait_api_ready(InitializationTimeout)
        self.state.advance(Phase.API_READY)

        outcomes = await self.applier.seed_secrets(self.node)
        self.log.debug(f"Secrets: {outcomes}")
        self.state.advance(Phase.SECRETS_SEEDED)

        try:
            await self.applier.apply(self.node, rendered.manifest_files)
            self.state.advance(Phase.ADDONS_APPLIED)
        except AddonApplyFailure as e:
            # The node itself is still usable; report and carry on
            self.log.error(f"Add-on bundle failed: {e.message}")
            self.state.warn(f"AddonApplyFailure: {e.message}")

        await self._wait_node_ready(self.node)
        self.state.advance(Phase.READY)
        self.handoff.publish(self.token, self.node.address)
        self.log.info(f"Cluster identity published ({self.node.address})")

    async def _obtain_token(self) -> ClusterToken:
        """Reuse the token of an already initialized server, or generate one."""
        result = await run_checked(
            self.executor, self.node, [read_token_command()], "Reading existing cluster token"
        )
        existing = parse_token_output(result.stdout)
        if existing is not None:
            self.log.info("Server was initialized before, reusing its cluster token")
            return existing
        return generate_cluster_token()
