"""Cluster definition file handling.

The cluster definition is a YAML file describing cluster-wide settings and
every node the external resource engine created. It is read with ruamel.yaml
so the file keeps its comments when tooling rewrites it.
"""

from pathlib import Path

from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML

from cluster_bootstrap.exceptions import ClusterBootstrapError, ValidationError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterConfig
from cluster_bootstrap.models.node import NodeRole, NodeSpec

logger = get_logger(__name__)


class InventoryError(ClusterBootstrapError):
    """Base exception for cluster definition operations."""

    pass


class InventoryValidationError(InventoryError):
    """Exception raised when the cluster definition is invalid."""

    pass


def validate_nodes(config: ClusterConfig, nodes: list[NodeSpec]) -> None:
    """Check the declared nodes form a cluster the config describes.

    Args:
        config: Cluster configuration
        nodes: Declared nodes

    Raises:
        ValidationError: If the node set is inconsistent
    """
    first = [n for n in nodes if n.role is NodeRole.FIRST_CONTROL_PLANE]
    if len(first) != 1:
        raise ValidationError(
            f"Exactly one node must have role first-control-plane, found {len(first)}",
            "Mark the node that should initialize the cluster with role: first-control-plane",
        )

    names = [n.name for n in nodes]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate node names: {', '.join(duplicates)}")

    addresses = [n.address for n in nodes]
    duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate private IPs: {', '.join(duplicates)}")

    servers = sum(1 for n in nodes if n.role.is_server)
    agents = sum(1 for n in nodes if n.role is NodeRole.AGENT)
    if servers != config.control_plane_count:
        raise ValidationError(
            f"control_plane_count is {config.control_plane_count} "
            f"but {servers} control-plane node(s) are declared"
        )
    if agents != config.agent_count:
        raise ValidationError(
            f"agent_count is {config.agent_count} but {agents} agent node(s) are declared"
        )


class ClusterDefinition:
    """Reader for the cluster definition file."""

    def __init__(self, path: str | Path):
        """Initialize the reader.

        Args:
            path: Path to the cluster definition YAML file
        """
        self.path = Path(path)
        self.yaml = YAML(typ="rt")
        self.yaml.preserve_quotes = True

    def read(self) -> dict:
        """Read the definition file and return parsed data.

        Returns:
            Dictionary containing the definition

        Raises:
            InventoryError: If file cannot be read or parsed
        """
        logger.debug(f"Reading cluster definition: {self.path}")

        if not self.path.exists():
            logger.error(f"Cluster definition not found: {self.path}")
            raise InventoryError(
                f"Cluster definition not found: {self.path}\n\n"
                f"Expected location: {self.path.absolute()}\n"
                f"Create the file or specify a different path with --cluster"
            )

        try:
            with open(self.path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read cluster definition: {e}", exc_info=True)
            raise InventoryError(
                f"Failed to read cluster definition: {e}\n\n"
                f"The file may have invalid YAML syntax. Check the file at: {self.path.absolute()}"
            )

        if data is None:
            logger.error("Cluster definition is empty")
            raise InventoryError(
                "Cluster definition is empty\n\n"
                "The file must contain a 'cluster' mapping and a 'nodes' list."
            )

        return data

    def validate(self, data: dict) -> None:
        """Validate the top-level structure.

        Raises:
            InventoryValidationError: If validation fails
        """
        if not isinstance(data, dict):
            raise InventoryValidationError("Cluster definition must be a mapping")

        if "cluster" not in data or not isinstance(data["cluster"], dict):
            raise InventoryValidationError("Cluster definition must have a 'cluster' mapping")

        if "nodes" not in data or not isinstance(data["nodes"], list):
            raise InventoryValidationError("Cluster definition must have a 'nodes' list")

        for index, entry in enumerate(data["nodes"]):
            if not isinstance(entry, dict):
                raise InventoryValidationError(f"Node entry {index} must be a mapping")
            for field in ("name", "role", "private_ip", "ssh_host"):
                if field not in entry:
                    raise InventoryValidationError(
                        f"Node entry {index} ({entry.get('name', 'unnamed')}) "
                        f"missing required field: {field}"
                    )

    def get_config(self, data: dict | None = None) -> ClusterConfig:
        """Parse the cluster-wide settings.

        Raises:
            InventoryValidationError: If the settings are invalid
        """
        data = data if data is not None else self.read()
        self.validate(data)
        try:
            return ClusterConfig(**_plain(data["cluster"]))
        except PydanticValidationError as e:
            raise InventoryValidationError(f"Invalid cluster settings: {e}")

    def get_nodes(self, data: dict | None = None) -> list[NodeSpec]:
        """Parse the declared nodes.

        Raises:
            InventoryValidationError: If a node entry is invalid
        """
        data = data if data is not None else self.read()
        self.validate(data)
        nodes = []
        for entry in data["nodes"]:
            try:
                nodes.append(NodeSpec.from_definition_dict(_plain(entry)))
            except PydanticValidationError as e:
                raise InventoryValidationError(f"Node '{entry.get('name')}' validation failed: {e}")
        return nodes

    def load(self, cloud_token: str | None = None) -> tuple[ClusterConfig, list[NodeSpec]]:
        """Read, parse and cross-check the whole definition.

        Args:
            cloud_token: Cloud API token to seed into the cluster secrets

        Returns:
            Tuple of (config, nodes)

        Raises:
            InventoryError: If the file cannot be read or is invalid
        """
        data = self.read()
        config = self.get_config(data)
        nodes = self.get_nodes(data)

        if cloud_token:
            secrets = config.secrets.model_copy(update={"cloud_token": SecretStr(cloud_token)})
            config = config.model_copy(update={"secrets": secrets})

        try:
            validate_nodes(config, nodes)
        except ValidationError as e:
            raise InventoryValidationError(e.message, e.details)

        logger.info(f"Loaded cluster '{config.cluster_name}' with {len(nodes)} node(s)")
        return config, nodes


def _plain(value):
    """Convert ruamel containers to builtin dicts and lists."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value
