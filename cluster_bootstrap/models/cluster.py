"""Data models for cluster-wide configuration."""

import hashlib
import json
import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

MASKED_SECRET = "**********"


class ControlPlaneFailurePolicy(str, Enum):
    """What to do when a non-initiating control-plane node fails."""

    ISOLATE = "isolate"  # record it, keep going, judge quorum at the end
    ABORT = "abort"  # cancel every remaining node task


class SecretConflictPolicy(str, Enum):
    """What to do when a cluster secret exists with different content."""

    PATCH = "patch"
    FAIL = "fail"


class ClusterToken(BaseModel):
    """Shared secret authorizing nodes to join the cluster.

    Generated once by the first control-plane node and read-only afterwards.
    """

    model_config = ConfigDict(frozen=True)

    value: SecretStr

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: SecretStr) -> SecretStr:
        """Validate the token is not empty and has no whitespace."""
        raw = v.get_secret_value()
        if not raw:
            raise ValueError("cluster token cannot be empty")
        if any(c.isspace() for c in raw):
            raise ValueError("cluster token cannot contain whitespace")
        return v

    def reveal(self) -> str:
        """Return the raw token value."""
        return self.value.get_secret_value()

    def __str__(self) -> str:
        return MASKED_SECRET


class AddonSettings(BaseModel):
    """Versions and knobs for the post-install add-on bundle."""

    ccm_version: str = "v1.12.1"
    csi_version: str = "v1.6.0"
    kured_version: str = "1.9.1"
    kured_period: str = "5m"
    kured_reboot_sentinel: str = "/var/run/reboot-needed"
    ingress_chart_version: str = "10.19.4"
    load_balancer_location: str = "fsn1"
    load_balancer_type: str = "lb11"
    extra_resources: list[str] = Field(default_factory=list)
    extra_patches: list[str] = Field(default_factory=list)

    @field_validator("ccm_version", "csi_version")
    @classmethod
    def validate_prefixed_version(cls, v: str) -> str:
        """Validate versions that upstream publishes with a leading 'v'."""
        if not re.fullmatch(r"v\d+\.\d+\.\d+", v):
            raise ValueError(f"version '{v}' must look like v1.2.3")
        return v

    @field_validator("kured_version", "ingress_chart_version")
    @classmethod
    def validate_plain_version(cls, v: str) -> str:
        """Validate versions that upstream publishes without a prefix."""
        if not re.fullmatch(r"\d+\.\d+\.\d+", v):
            raise ValueError(f"version '{v}' must look like 1.2.3")
        return v


class SecretSettings(BaseModel):
    """Credentials seeded into the cluster as Kubernetes secrets."""

    cloud_token: SecretStr = SecretStr("")
    network_name: str = ""
    cloud_secret_name: str = "hcloud"
    csi_secret_name: str = "hcloud-csi"
    namespace: str = "kube-system"
    conflict_policy: SecretConflictPolicy = SecretConflictPolicy.PATCH

    @field_validator("cloud_token")
    @classmethod
    def validate_cloud_token(cls, v: SecretStr) -> SecretStr:
        """Reject the placeholder pydantic writes when dumping a SecretStr."""
        if v.get_secret_value() == MASKED_SECRET:
            raise ValueError("cloud_token is a masked placeholder, not a real token")
        return v


class TimeoutSettings(BaseModel):
    """Poll intervals and deadlines, in seconds."""

    poll_interval: float = 5.0
    reboot_timeout: float = 300.0
    reboot_attempts: int = 3
    api_timeout: float = 600.0
    node_ready_timeout: float = 600.0

    @field_validator("poll_interval", "reboot_timeout", "api_timeout", "node_ready_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return v

    @field_validator("reboot_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("reboot_attempts must be at least 1")
        return v


class ClusterConfig(BaseModel):
    """Cluster-wide parameters, fixed for the duration of a run."""

    cluster_name: str
    control_plane_count: int = 3
    agent_count: int = 0
    allow_scheduling_on_control_plane: bool = False
    k3s_channel: str = "stable"
    network_interface: str = "eth1"
    disabled_components: list[str] = Field(
        default_factory=lambda: ["local-storage", "servicelb", "traefik"]
    )
    kubelet_args: list[str] = Field(default_factory=lambda: ["cloud-provider=external"])
    os_image_url: str = (
        "https://download.opensuse.org/tumbleweed/appliances/"
        "openSUSE-MicroOS.x86_64-OpenStack-Cloud.qcow2"
    )
    os_id: str = "opensuse-microos"
    install_disk: str = "/dev/sda"
    addons: AddonSettings = Field(default_factory=AddonSettings)
    secrets: SecretSettings = Field(default_factory=SecretSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    control_plane_failure_policy: ControlPlaneFailurePolicy = ControlPlaneFailurePolicy.ISOLATE

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is not empty."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        return v

    @field_validator("control_plane_count")
    @classmethod
    def validate_control_plane_count(cls, v: int) -> int:
        """Validate there is at least one control-plane node."""
        if v < 1:
            raise ValueError("control_plane_count must be at least 1")
        return v

    @field_validator("agent_count")
    @classmethod
    def validate_agent_count(cls, v: int) -> int:
        if v < 0:
            raise ValueError("agent_count cannot be negative")
        return v

    @field_validator("k3s_channel")
    @classmethod
    def validate_k3s_channel(cls, v: str) -> str:
        """Validate k3s_channel names a release channel."""
        if not re.fullmatch(r"(stable|latest|testing|v\d+\.\d+)", v):
            raise ValueError(
                f"k3s_channel '{v}' must be stable, latest, testing or a minor line like v1.24"
            )
        return v

    @property
    def quorum_size(self) -> int:
        """Control-plane nodes required for the datastore to stay available."""
        return self.control_plane_count // 2 + 1


class ManifestBundle(BaseModel):
    """Add-on manifests applied once per cluster lifetime."""

    model_config = ConfigDict(frozen=True)

    resources: list[str] = Field(default_factory=list)
    patches: list[str] = Field(default_factory=list)
    files: dict[str, str] = Field(default_factory=dict)

    @field_validator("files")
    @classmethod
    def validate_files(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate extra files are plain names inside the bundle directory."""
        for name in v:
            if not name or "/" in name or name.startswith("."):
                raise ValueError(f"bundle file name '{name}' must be a plain file name")
            if name == "kustomization.yaml":
                raise ValueError("kustomization.yaml is generated and cannot be supplied")
        return v

    def digest(self) -> str:
        """Stable content hash used to mark the bundle as applied."""
        payload = json.dumps(self.model_dump(), sort_keys=True).encode()
        return hashlib.sha256(payload).hexdigest()
