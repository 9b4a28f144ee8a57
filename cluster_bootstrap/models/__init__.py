"""Data models for cluster configuration and bootstrap state."""

from cluster_bootstrap.models.cluster import (
    AddonSettings,
    ClusterConfig,
    ClusterToken,
    ControlPlaneFailurePolicy,
    ManifestBundle,
    SecretConflictPolicy,
    SecretSettings,
    TimeoutSettings,
)
from cluster_bootstrap.models.node import NodeRole, NodeSpec
from cluster_bootstrap.models.state import Phase, PhaseRegression, ProvisioningState

__all__ = [
    "AddonSettings",
    "ClusterConfig",
    "ClusterToken",
    "ControlPlaneFailurePolicy",
    "ManifestBundle",
    "NodeRole",
    "NodeSpec",
    "Phase",
    "PhaseRegression",
    "ProvisioningState",
    "SecretConflictPolicy",
    "SecretSettings",
    "TimeoutSettings",
]
