"""Data models for cluster member declarations."""

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, IPvAnyAddress, field_validator


class NodeRole(str, Enum):
    """Role a node plays in the cluster."""

    FIRST_CONTROL_PLANE = "first-control-plane"
    CONTROL_PLANE = "control-plane"
    AGENT = "agent"

    @property
    def is_server(self) -> bool:
        """True for roles that run the API server and datastore."""
        return self is not NodeRole.AGENT


class NodeSpec(BaseModel):
    """A declared cluster member.

    Nodes are created by the external resource engine; this model only
    describes how to reach them and what they should become.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    role: NodeRole
    location: str
    server_type: str
    private_ip: IPvAnyAddress
    ssh_host: str
    ssh_port: int = 22

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate node name follows DNS naming conventions."""
        if not v:
            raise ValueError("name cannot be empty")
        if len(v) > 63:
            raise ValueError("name cannot exceed 63 characters")
        # RFC 1123 label validation
        if not re.fullmatch(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?", v):
            raise ValueError(
                f"name '{v}' must contain only lowercase alphanumeric characters and "
                "hyphens, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("ssh_host")
    @classmethod
    def validate_ssh_host(cls, v: str) -> str:
        """Validate ssh_host is not empty."""
        if not v:
            raise ValueError("ssh_host cannot be empty")
        return v

    @field_validator("ssh_port")
    @classmethod
    def validate_ssh_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"ssh_port must be between 1 and 65535, got {v}")
        return v

    @property
    def address(self) -> str:
        """Private network address as a string."""
        return str(self.private_ip)

    def to_definition_dict(self) -> dict:
        """Convert to cluster definition file format."""
        result = {
            "name": self.name,
            "role": self.role.value,
            "location": self.location,
            "server_type": self.server_type,
            "private_ip": self.address,
            "ssh_host": self.ssh_host,
        }
        if self.ssh_port != 22:
            result["ssh_port"] = self.ssh_port
        return result

    @classmethod
    def from_definition_dict(cls, data: dict) -> "NodeSpec":
        """Parse from cluster definition file format."""
        return cls(
            name=data["name"],
            role=data["role"],
            location=data.get("location", ""),
            server_type=data.get("server_type", ""),
            private_ip=data["private_ip"],
            ssh_host=data["ssh_host"],
            ssh_port=data.get("ssh_port", 22),
        )
