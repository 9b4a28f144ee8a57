"""Top-level coordination of a cluster bootstrap run.

One asyncio task is started per declared node. The first control-plane
node runs ClusterInitiator; every other node runs NodeJoiner and parks on
the ClusterHandoff until the initiator publishes the cluster identity.
"""

import asyncio
from dataclasses import dataclass, field
from functools import partial

from cluster_bootstrap.addons import PostInstallApplier
from cluster_bootstrap.exceptions import BootstrapAborted, ConfigurationError
from cluster_bootstrap.handoff import ClusterHandoff
from cluster_bootstrap.initiator import ClusterInitiator
from cluster_bootstrap.inventory import validate_nodes
from cluster_bootstrap.joiner import NodeJoiner
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import (
    ClusterConfig,
    ControlPlaneFailurePolicy,
    ManifestBundle,
)
from cluster_bootstrap.models.node import NodeRole, NodeSpec
from cluster_bootstrap.models.state import Phase, ProvisioningState
from cluster_bootstrap.provisioner import NodeProvisioner
from cluster_bootstrap.remote import BoundedExecutor, RemoteExecutor

logger = get_logger(__name__)


@dataclass
class RunReport:
    """Outcome of a bootstrap run, one state per node."""

    states: list[ProvisioningState]
    first_control_plane: str
    quorum_size: int
    aborted: bool = False
    abort_reason: str | None = None
    addons_applied: bool = False

    def state(self, name: str) -> ProvisioningState:
        return next(s for s in self.states if s.node == name)

    @property
    def first_control_plane_failed(self) -> bool:
        return not self.state(self.first_control_plane).succeeded

    @property
    def ready_control_planes(self) -> int:
        return sum(1 for s in self.states if s.role.is_server and s.succeeded)

    @property
    def quorum_met(self) -> bool:
        return self.ready_control_planes >= self.quorum_size

    @property
    def failed(self) -> list[ProvisioningState]:
        return [s for s in self.states if s.phase is Phase.FAILED]

    @property
    def exit_code(self) -> int:
        """Non-zero if the first control-plane failed or quorum was not reached."""
        if self.first_control_plane_failed or not self.quorum_met:
            return 1
        return 0

    def rows(self) -> list[tuple[str, str, str, str, str]]:
        """Summary rows: node, role, phase, retries, error."""
        rows = []
        for s in self.states:
            phase = s.phase.value
            if s.phase is Phase.FAILED and s.failed_phase is not None:
                phase = f"Failed ({s.failed_phase.value})"
            error = f"{s.error_kind}: {s.error}" if s.error else "; ".join(s.warnings)
            rows.append((s.node, s.role.value, phase, str(s.retries), error))
        return rows


@dataclass
class _RunContext:
    handoff: ClusterHandoff
    applier: PostInstallApplier
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)


class BootstrapOrchestrator:
    """Provisions every declared node and enforces the join ordering."""

    def __init__(
        self,
        config: ClusterConfig,
        nodes: list[NodeSpec],
        executor: RemoteExecutor,
        max_workers: int = 10,
        bundle: ManifestBundle | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Cluster configuration
            nodes: Every declared cluster member
            executor: Remote executor shared by all node tasks
            max_workers: Maximum number of remote calls in flight at once
            bundle: Add-on bundle; derived from config when omitted

        Raises:
            ValidationError: If the node set is inconsistent
            ConfigurationError: If required settings are missing
        """
        validate_nodes(config, nodes)
        if not config.secrets.cloud_token.get_secret_value():
            raise ConfigurationError(
                "No cloud API token configured",
                "Pass --cloud-token or set HCLOUD_TOKEN; the cloud controller and "
                "storage driver secrets need it",
            )
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")

        self.config = config
        self.nodes = list(nodes)
        self.executor = executor
        self.max_workers = max_workers
        self.bundle = bundle
        self.first_control_plane = next(
            n for n in self.nodes if n.role is NodeRole.FIRST_CONTROL_PLANE
        )
        self.states = {n.name: ProvisioningState(node=n.name, role=n.role) for n in self.nodes}
        self._context: _RunContext | None = None
        self._abort_reason: str | None = None

    @property
    def handoff(self) -> ClusterHandoff | None:
        return self._context.handoff if self._context else None

    def _build_workers(
        self, context: _RunContext, executor: RemoteExecutor
    ) -> list[NodeProvisioner]:
        first = self.first_control_plane
        workers: list[NodeProvisioner] = [
            ClusterInitiator(
                first,
                self.config,
                executor,
                context.handoff,
                context.applier,
                state=self.states[first.name],
            )
        ]
        for node in self.nodes:
            if node is first:
                continue
            workers.append(
                NodeJoiner(
                    node,
                    self.config,
                    executor,
                    context.handoff,
                    observer=first,
                    state=self.states[node.name],
                )
            )
        return workers

    async def run(self) -> RunReport:
        """Provision all nodes and wait for every task to finish.

        Returns:
            RunReport with one state per node

        Raises:
            asyncio.CancelledError: If the run itself is cancelled; node tasks
                are cancelled and their states recorded first
        """
        if self._context is not None:
            raise RuntimeError("An orchestrator instance can only run once")

        executor = BoundedExecutor(self.executor, self.max_workers)
        context = _RunContext(
            handoff=ClusterHandoff(),
            applier=PostInstallApplier(executor, self.config, self.bundle),
        )
        self._context = context

        logger.info(
            f"Bootstrapping cluster '{self.config.cluster_name}': {len(self.nodes)} node(s), "
            f"first control-plane {self.first_control_plane.name}"
        )

        for worker in self._build_workers(context, executor):
            task = asyncio.create_task(worker.run(), name=f"provision-{worker.node.name}")
            task.add_done_callback(partial(self._on_task_done, worker.node))
            context.tasks[worker.node.name] = task

        tasks = list(context.tasks.values())
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self.abort("Bootstrap run was cancelled")
            await asyncio.gather(*tasks, return_exceptions=True)
            self._close_unfinished()
            raise

        self._close_unfinished()
        report = self.report()
        self._log_summary(report)
        return report

    def abort(self, reason: str = "Bootstrap aborted by operator") -> None:
        """Cancel every in-flight node task.

        Tasks stop at their next suspension point and record the abort in
        their state.
        """
        if self._context is None:
            return
        if self._abort_reason is None:
            self._abort_reason = reason
            logger.warning(f"Aborting bootstrap: {reason}")
        self._context.handoff.abort(BootstrapAborted(reason))
        for task in self._context.tasks.values():
            if not task.done():
                task.cancel()

    def _close_unfinished(self) -> None:
        # Tasks cancelled before their first step never got to record anything
        for state in self.states.values():
            if not state.phase.is_terminal:
                state.fail(BootstrapAborted(self._abort_reason or "Node task did not finish"))

    def _on_task_done(self, node: NodeSpec, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return

        if node.role is NodeRole.FIRST_CONTROL_PLANE:
            self.abort(f"First control-plane node {node.name} failed")
        elif (
            node.role is NodeRole.CONTROL_PLANE
            and self.config.control_plane_failure_policy is ControlPlaneFailurePolicy.ABORT
        ):
            self.abort(f"Control-plane node {node.name} failed")
        else:
            logger.warning(f"{node.name} failed; other nodes continue")

    def report(self) -> RunReport:
        """Snapshot of every node's state."""
        return RunReport(
            states=[self.states[n.name] for n in self.nodes],
            first_control_plane=self.first_control_plane.name,
            quorum_size=self.config.quorum_size,
            aborted=self._abort_reason is not None,
            abort_reason=self._abort_reason,
            addons_applied=bool(self._context and self._context.applier.applied),
        )

    def _log_summary(self, report: RunReport) -> None:
        for state in report.states:
            if state.phase is Phase.FAILED:
                logger.error(f"{state.node}: {state.error_kind}: {state.error}")
            else:
                logger.info(f"{state.node}: {state.phase.value}")
        logger.info(
            f"{report.ready_control_planes}/{self.config.control_plane_count} control-plane "
            f"node(s) ready, quorum {report.quorum_size}"
        )
