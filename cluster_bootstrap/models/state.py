"""Per-node provisioning state tracked during a bootstrap run."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from cluster_bootstrap.models.node import NodeRole


class Phase(str, Enum):
    """Provisioning phases, declared in the order a node moves through them.

    The initiating node and the joiners take different subsets of these
    phases, but both only ever move forward in this order.
    """

    NOT_STARTED = "NotStarted"
    INSTALLING = "Installing"
    REBOOTING = "Rebooting"
    AWAITING_REACHABLE = "AwaitingReachable"
    AWAITING_CLUSTER_TOKEN = "AwaitingClusterToken"
    CONFIG_WRITTEN = "ConfigWritten"
    INITIALIZING = "Initializing"
    JOINING = "Joining"
    API_READY = "APIReady"
    SECRETS_SEEDED = "SecretsSeeded"
    ADDONS_APPLIED = "AddonsApplied"
    READY = "Ready"
    FAILED = "Failed"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.READY, Phase.FAILED)


_PHASE_ORDER = list(Phase)


class PhaseRegression(ValueError):
    """Raised when a state is asked to move backwards."""


class PhaseChange(BaseModel):
    """One entry of a node's phase history."""

    phase: Phase
    at: datetime


class ProvisioningState(BaseModel):
    """Mutable progress record for one node.

    Only the node's own task writes to it; the orchestrator reads it
    for reporting once the run is over.
    """

    node: str
    role: NodeRole
    phase: Phase = Phase.NOT_STARTED
    failed_phase: Phase | None = None
    error: str | None = None
    error_kind: str | None = None
    retries: int = 0
    warnings: list[str] = Field(default_factory=list)
    history: list[PhaseChange] = Field(default_factory=list)

    def advance(self, phase: Phase) -> None:
        """Move to a later phase.

        Args:
            phase: Target phase

        Raises:
            PhaseRegression: If the target is not after the current phase,
                or the state is already terminal
        """
        if phase is Phase.FAILED:
            raise PhaseRegression("use fail() to record a failure")
        if self.phase.is_terminal:
            raise PhaseRegression(f"{self.node} is already {self.phase.value}")
        if phase.rank <= self.phase.rank:
            raise PhaseRegression(
                f"{self.node} cannot move from {self.phase.value} back to {phase.value}"
            )
        self.phase = phase
        self.history.append(PhaseChange(phase=phase, at=datetime.now()))

    def fail(self, error: BaseException) -> None:
        """Record a terminal failure, keeping the phase it happened in."""
        if self.phase.is_terminal:
            return
        self.failed_phase = self.phase
        self.phase = Phase.FAILED
        self.error_kind = type(error).__name__
        self.error = getattr(error, "message", None) or str(error) or self.error_kind
        self.history.append(PhaseChange(phase=Phase.FAILED, at=datetime.now()))

    def warn(self, message: str) -> None:
        """Record a non-fatal problem."""
        self.warnings.append(message)

    def visited(self, phase: Phase) -> bool:
        """True if the node has passed through the given phase."""
        return any(change.phase is phase for change in self.history)

    @property
    def succeeded(self) -> bool:
        return self.phase is Phase.READY
