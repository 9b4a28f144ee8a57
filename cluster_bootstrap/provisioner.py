"""Steps shared by every node's provisioning task."""

import asyncio

from cluster_bootstrap.exceptions import (
    BootstrapAborted,
    ClusterBootstrapError,
    RebootTimeout,
    RemoteConnectionError,
    Timeout,
)
from cluster_bootstrap.gate import ReadinessGate
from cluster_bootstrap.installer import ImageInstaller
from cluster_bootstrap.logging_config import get_node_logger
from cluster_bootstrap.models.cluster import ClusterConfig
from cluster_bootstrap.models.node import NodeRole, NodeSpec
from cluster_bootstrap.models.state import Phase, ProvisioningState
from cluster_bootstrap.remote import RemoteExecutor, run_checked

K3S_CONFIG_PATH = "/etc/rancher/k3s/config.yaml"
K3S_INSTALL_URL = "https://get.k3s.io"


def readyz_command() -> str:
    return "kubectl get --raw=/readyz"


def node_ready_command(node_name: str) -> str:
    jsonpath = "{.status.conditions[?(@.type==\"Ready\")].status}"
    return f"kubectl get node {node_name} -o jsonpath='{jsonpath}'"


class NodeProvisioner:
    """Base class for the initiator and joiner state machines.

    Subclasses implement ``_provision``; ``run`` records the outcome in the
    node's ProvisioningState.
    """

    def __init__(
        self,
        node: NodeSpec,
        config: ClusterConfig,
        executor: RemoteExecutor,
        state: ProvisioningState | None = None,
    ):
        self.node = node
        self.config = config
        self.executor = executor
        self.state = state or ProvisioningState(node=node.name, role=node.role)
        self.installer = ImageInstaller(executor, config)
        self.log = get_node_logger(type(self).__module__, node.name)

    @property
    def service_name(self) -> str:
        return "k3s-agent" if self.node.role is NodeRole.AGENT else "k3s"

    async def run(self) -> ProvisioningState:
        """Provision the node, recording any failure before re-raising it."""
        self.log.info(f"Provisioning as {self.node.role.value}")
        try:
            await self._provision()
        except asyncio.CancelledError:
            self.state.fail(BootstrapAborted("Bootstrap run was cancelled"))
            self.log.warning(f"Cancelled in {self.state.failed_phase.value}")
            raise
        except ClusterBootstrapError as e:
            self.state.fail(e)
            self.log.error(f"Failed in {self.state.failed_phase.value}: {e.message}")
            raise
        except Exception as e:
            self.state.fail(e)
            self.log.error(f"Unexpected error while provisioning: {e}", exc_info=True)
            raise
        self.log.info("Node is ready")
        return self.state

    async def _provision(self) -> None:
        raise NotImplementedError

    def _gate(self, timeout: float, description: str) -> ReadinessGate:
        return ReadinessGate(self.config.timeouts.poll_interval, timeout, description)

    async def _prepare_os(self) -> None:
        """Installing -> Rebooting -> AwaitingReachable, then hand timing control to us."""
        self.state.advance(Phase.INSTALLING)
        rebooted = await self.installer.install(self.node)
        if rebooted:
            self.state.advance(Phase.REBOOTING)
        self.state.advance(Phase.AWAITING_REACHABLE)
        await self._await_reachable()
        await self.installer.disable_auto_updates(self.node)

    async def _await_reachable(self) -> None:
        """Wait for the installed OS to answer, retrying on reboot timeouts.

        Raises:
            RebootTimeout: If every attempt times out
        """
        timeouts = self.config.timeouts
        gate = self._gate(timeouts.reboot_timeout, f"{self.node.name} to come back after reboot")

        for attempt in range(1, timeouts.reboot_attempts + 1):
            try:
                await gate.wait(
                    lambda: self.installer.is_installed(self.node),
                    error_cls=RebootTimeout,
                    tolerate=(RemoteConnectionError,),
                )
                return
            except RebootTimeout:
                if attempt == timeouts.reboot_attempts:
                    raise
                self.state.retries += 1
                self.log.warning(
                    "Not reachable yet "
                    f"(attempt {attempt}/{timeouts.reboot_attempts}), waiting again"
                )

    async def _write_config(self, config_text: str) -> None:
        """Deliver the rendered config and install k3s without starting it."""
        await self.executor.upload_file(self.node, config_text, K3S_CONFIG_PATH, mode=0o600)
        exec_mode = "agent" if self.node.role is NodeRole.AGENT else "server"
        await run_checked(
            self.executor,
            self.node,
            [
                f"curl -sfL {K3S_INSTALL_URL} | INSTALL_K3S_SKIP_START=true "
                f"INSTALL_K3S_SKIP_SELINUX_RPM=true INSTALL_K3S_CHANNEL={self.config.k3s_channel} "
                f"INSTALL_K3S_EXEC={exec_mode} sh -"
            ],
            "Installing k3s",
        )
        self.state.advance(Phase.CONFIG_WRITTEN)

    async def _start_service(self) -> None:
        await run_checked(
            self.executor,
            self.node,
            [f"systemctl start {self.service_name}"],
            f"Starting {self.service_name}",
        )

    async def _api_ready(self, on: NodeSpec) -> bool:
        result = await self.executor.execute(on, [readyz_command()])
        return result.ok and result.stdout.strip() == "ok"

    async def _wait_api_ready(self, error_cls: type[Timeout]) -> None:
        gate = self._gate(self.config.timeouts.api_timeout, f"API server on {self.node.name}")
        await gate.wait(
            lambda: self._api_ready(self.node),
            error_cls=error_cls,
            tolerate=(RemoteConnectionError,),
        )

    async def _wait_node_ready(self, observer: NodeSpec) -> None:
        """Wait for this node's Ready condition as seen from a server node."""

        async def node_ready() -> bool:
            result = await self.executor.execute(observer, [node_ready_command(self.node.name)])
            return result.ok and result.stdout.strip() == "True"

        gate = self._gate(self.config.timeouts.node_ready_timeout, f"{self.node.name} to be Ready")
        await gate.wait(node_ready, tolerate=(RemoteConnectionError,))
