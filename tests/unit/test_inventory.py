"""Unit tests for cluster definition loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from cluster_bootstrap.exceptions import ValidationError
from cluster_bootstrap.inventory import (
    ClusterDefinition,
    InventoryError,
    InventoryValidationError,
    validate_nodes,
)
from cluster_bootstrap.models import ClusterConfig, NodeRole

EXAMPLE_FILE = Path(__file__).parents[2] / "cluster.example.yml"


def _write(tmp_path, data) -> Path:
    path = tmp_path / "cluster.yml"
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


def test_load_definition(tmp_path, sample_definition_data):
    """Test that settings and nodes are parsed from the file."""
    config, nodes = ClusterDefinition(_write(tmp_path, sample_definition_data)).load()

    assert config.cluster_name == "test-cluster"
    assert config.quorum_size == 1
    assert [n.name for n in nodes] == ["cp-0", "agent-0"]
    assert nodes[0].role is NodeRole.FIRST_CONTROL_PLANE
    assert nodes[1].address == "10.0.2.1"


def test_load_example_definition():
    """Test that the shipped example definition is valid."""
    config, nodes = ClusterDefinition(EXAMPLE_FILE).load()

    assert config.control_plane_count == 3
    assert len(nodes) == 5
    assert sum(1 for n in nodes if n.role is NodeRole.FIRST_CONTROL_PLANE) == 1


def test_cloud_token_injected(tmp_path, sample_definition_data):
    """Test that the cloud token passed at load time ends up in the secrets."""
    config, _ = ClusterDefinition(_write(tmp_path, sample_definition_data)).load(
        cloud_token="abc123"
    )

    assert config.secrets.cloud_token.get_secret_value() == "abc123"


def test_masked_cloud_token_rejected(tmp_path, sample_definition_data):
    """Test that a masked token copied from a dump is not mistaken for a real one."""
    sample_definition_data["cluster"]["secrets"] = {"cloud_token": "**********"}

    with pytest.raises(InventoryValidationError, match="masked placeholder"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_dumped_config_cannot_be_reloaded(cluster_config):
    """Test that a JSON dump never revives the cloud token as its mask."""
    dumped = cluster_config.model_dump(mode="json")

    assert dumped["secrets"]["cloud_token"] == "**********"
    with pytest.raises(PydanticValidationError, match="masked placeholder"):
        ClusterConfig(**dumped)


def test_comments_are_accepted(tmp_path, sample_definition_data):
    """Test that YAML comments do not leak into the parsed settings."""
    path = _write(tmp_path, sample_definition_data)
    path.write_text("# managed by terraform\n" + path.read_text())

    config, _ = ClusterDefinition(path).load()

    assert config.cluster_name == "test-cluster"


def test_empty_file(tmp_path):
    path = tmp_path / "cluster.yml"
    path.write_text("")

    with pytest.raises(InventoryError, match="empty"):
        ClusterDefinition(path).read()


def test_invalid_yaml(tmp_path):
    path = tmp_path / "cluster.yml"
    path.write_text("cluster: [unclosed\n")

    with pytest.raises(InventoryError, match="invalid YAML"):
        ClusterDefinition(path).read()


def test_missing_nodes_list(tmp_path, sample_definition_data):
    del sample_definition_data["nodes"]

    with pytest.raises(InventoryValidationError, match="'nodes' list"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_missing_node_field(tmp_path, sample_definition_data):
    del sample_definition_data["nodes"][1]["private_ip"]

    with pytest.raises(InventoryValidationError, match="private_ip"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_invalid_node_name(tmp_path, sample_definition_data):
    sample_definition_data["nodes"][1]["name"] = "Agent_0"

    with pytest.raises(InventoryValidationError, match="Agent_0"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_invalid_cluster_settings(tmp_path, sample_definition_data):
    sample_definition_data["cluster"]["k3s_channel"] = "nightly"

    with pytest.raises(InventoryValidationError, match="Invalid cluster settings"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_two_first_control_planes(tmp_path, sample_definition_data):
    """Test that exactly one node may initialize the cluster."""
    sample_definition_data["cluster"]["agent_count"] = 0
    sample_definition_data["cluster"]["control_plane_count"] = 2
    sample_definition_data["nodes"][1]["role"] = "first-control-plane"

    with pytest.raises(InventoryValidationError, match="Exactly one"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_count_mismatch(tmp_path, sample_definition_data):
    sample_definition_data["cluster"]["agent_count"] = 3

    with pytest.raises(InventoryValidationError, match="agent_count"):
        ClusterDefinition(_write(tmp_path, sample_definition_data)).load()


def test_duplicate_private_ips(cluster_config, cluster_nodes):
    """Test that two nodes cannot share a private address."""
    clash = cluster_nodes[4].model_copy(update={"private_ip": cluster_nodes[3].private_ip})

    with pytest.raises(ValidationError, match="Duplicate private IPs"):
        validate_nodes(cluster_config, [*cluster_nodes[:4], clash])


def test_duplicate_names(cluster_config, cluster_nodes):
    clash = cluster_nodes[4].model_copy(update={"name": "agent-0"})

    with pytest.raises(ValidationError, match="Duplicate node names"):
        validate_nodes(cluster_config, [*cluster_nodes[:4], clash])
