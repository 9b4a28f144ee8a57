"""Cluster token generation and Kubernetes secret helpers.

This module produces the shared join token and describes the secrets the
cloud controller and storage driver need, along with the kubectl commands
used to inspect and upsert them on the first control-plane node.
"""

import base64
import binascii
import json
import secrets as secrets_module
import shlex
from dataclasses import dataclass, field
from typing import Any

from cluster_bootstrap.models.cluster import ClusterConfig, ClusterToken

SERVER_TOKEN_PATH = "/var/lib/rancher/k3s/server/token"


def generate_cluster_token(num_bytes: int = 32) -> ClusterToken:
    """Generate a new random cluster token.

    Args:
        num_bytes: Entropy in bytes

    Returns:
        ClusterToken wrapping a hex string
    """
    return ClusterToken(value=secrets_module.token_hex(num_bytes))


def read_token_command() -> str:
    """Command printing the token of an already initialized server, if any."""
    return f"if [ -s {SERVER_TOKEN_PATH} ]; then cat {SERVER_TOKEN_PATH}; fi"


def parse_token_output(output: str) -> ClusterToken | None:
    """Parse the output of read_token_command.

    Returns:
        The existing token, or None if the server has not been initialized
    """
    value = output.strip()
    if not value:
        return None
    return ClusterToken(value=value)


@dataclass
class SecretSpec:
    """A generic Opaque secret the cluster needs.

    Attributes:
        name: Secret name
        namespace: Namespace it lives in
        data: Plain-text key/value pairs
    """

    name: str
    namespace: str
    data: dict[str, str] = field(default_factory=dict)

    def to_kubernetes_secret(self) -> dict[str, Any]:
        """Convert to a Kubernetes Secret manifest.

        Returns:
            Dictionary representing a Kubernetes Secret manifest
        """
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": self.name, "namespace": self.namespace},
            "type": "Opaque",
            "stringData": dict(self.data),
        }

    def to_merge_patch(self) -> dict[str, Any]:
        """Merge patch replacing the secret's values."""
        return {"stringData": dict(self.data)}

    def matches(self, existing: dict[str, str]) -> bool:
        """True if the decoded data of an existing secret equals this spec."""
        return existing == self.data

    def get_command(self) -> str:
        """kubectl command printing the secret as JSON, or nothing if absent."""
        return (
            f"kubectl -n {shlex.quote(self.namespace)} get secret {shlex.quote(self.name)} "
            "--ignore-not-found -o json"
        )

    def create_command(self, manifest_path: str) -> str:
        return f"kubectl create -f {shlex.quote(manifest_path)}"

    def patch_command(self, patch_path: str) -> str:
        return (
            f"kubectl -n {shlex.quote(self.namespace)} patch secret {shlex.quote(self.name)} "
            f"--type merge --patch-file {shlex.quote(patch_path)}"
        )


def decode_secret_data(output: str) -> dict[str, str] | None:
    """Decode ``kubectl get secret -o json`` output.

    Args:
        output: Command stdout; empty when the secret does not exist

    Returns:
        Plain-text data of the secret, or None if it does not exist

    Raises:
        ValueError: If the output is not a secret document
    """
    if not output.strip():
        return None
    try:
        document = json.loads(output)
        encoded = document.get("data") or {}
        return {key: base64.b64decode(value).decode() for key, value in encoded.items()}
    except (json.JSONDecodeError, binascii.Error, UnicodeDecodeError, AttributeError) as e:
        raise ValueError(f"Unexpected secret output: {e}")


def cluster_secrets(config: ClusterConfig) -> list[SecretSpec]:
    """Secrets consumed by the cloud controller manager and the CSI driver."""
    settings = config.secrets
    token = settings.cloud_token.get_secret_value()
    return [
        SecretSpec(
            name=settings.cloud_secret_name,
            namespace=settings.namespace,
            data={"token": token, "network": settings.network_name},
        ),
        SecretSpec(
            name=settings.csi_secret_name,
            namespace=settings.namespace,
            data={"token": token},
        ),
    ]
