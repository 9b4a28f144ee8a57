"""Write-once handoff from the initiating control-plane node to the joiners."""

import asyncio
from dataclasses import dataclass

from cluster_bootstrap.exceptions import BootstrapAborted, JoinPreconditionUnmet
from cluster_bootstrap.models.cluster import ClusterToken


@dataclass(frozen=True)
class ClusterIdentity:
    """What a joiner needs to reach the cluster."""

    token: ClusterToken
    server_address: str


class ClusterHandoff:
    """Single-assignment cell that joiners wait on.

    The initiating node publishes exactly once. Waiters are released either
    by the publish or by an abort; nothing else writes to the cell.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._identity: ClusterIdentity | None = None
        self._abort_reason: BaseException | None = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def published(self) -> bool:
        return self._identity is not None

    def publish(self, token: ClusterToken, server_address: str) -> ClusterIdentity:
        """Publish the cluster identity and release all waiters.

        Raises:
            JoinPreconditionUnmet: If the cell was already published or aborted
        """
        if self._event.is_set():
            raise JoinPreconditionUnmet(
                "Cluster identity was already published",
                "Only the first control-plane node may publish, and only once",
            )
        self._identity = ClusterIdentity(token=token, server_address=server_address)
        self._event.set()
        return self._identity

    def abort(self, reason: BaseException) -> None:
        """Release waiters with a failure. No-op once published."""
        if self._event.is_set():
            return
        self._abort_reason = reason
        self._event.set()

    @property
    def identity(self) -> ClusterIdentity:
        """The published identity.

        Raises:
            JoinPreconditionUnmet: If read before publication
        """
        if self._identity is None:
            raise JoinPreconditionUnmet(
                "Cluster token read before the first control-plane node published it"
            )
        return self._identity

    async def wait(self) -> ClusterIdentity:
        """Suspend until the identity is published.

        Raises:
            BootstrapAborted: If the initiating node failed instead
        """
        await self._event.wait()
        if self._abort_reason is not None:
            reason = self._abort_reason
            raise BootstrapAborted(
                "First control-plane node failed; not joining",
                getattr(reason, "message", None) or str(reason) or type(reason).__name__,
            )
        return self.identity
