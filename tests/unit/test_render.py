"""Unit tests for node configuration and manifest rendering."""

import pytest
import yaml

from cluster_bootstrap.exceptions import ConfigRenderError
from cluster_bootstrap.models import ClusterConfig, ClusterToken, ManifestBundle, NodeRole
from cluster_bootstrap.render import (
    CONTROL_PLANE_TAINT,
    INGRESS_FILE,
    KUSTOMIZATION_FILE,
    build_manifest_bundle,
    normalize_block_markers,
    render_kustomization,
    render_manifest_files,
    render_node,
)

TOKEN = ClusterToken(value="K10abcdef::server:0123456789")


def _by_name(nodes, name):
    return next(n for n in nodes if n.name == name)


def test_first_control_plane_initializes_cluster(cluster_config, cluster_nodes):
    """Test that the first server enables cluster-init and has no server URL."""
    node = _by_name(cluster_nodes, "cp-0")

    rendered = render_node(NodeRole.FIRST_CONTROL_PLANE, cluster_config, TOKEN, node)
    data = yaml.safe_load(rendered.config_text)

    assert data["cluster-init"] is True
    assert "server" not in data
    assert data["token"] == TOKEN.reveal()
    assert data["node-ip"] == "10.0.1.1"
    assert data["advertise-address"] == "10.0.1.1"
    assert data["disable-cloud-controller"] is True
    assert data["disable"] == ["local-storage", "servicelb", "traefik"]
    assert data["node-taint"] == [CONTROL_PLANE_TAINT]
    assert rendered.manifest_text is not None
    assert rendered.manifest_files == render_manifest_files(build_manifest_bundle(cluster_config))


def test_first_control_plane_renders_given_bundle(cluster_config, cluster_nodes):
    """Test that an explicit bundle replaces the one derived from the config."""
    node = _by_name(cluster_nodes, "cp-0")
    bundle = ManifestBundle(resources=["custom.yaml"], files={"custom.yaml": "kind: X\n"})

    rendered = render_node(node.role, cluster_config, TOKEN, node, bundle=bundle)

    assert rendered.manifest_files == render_manifest_files(bundle)
    assert rendered.manifest_text == render_kustomization(bundle)


def test_joining_control_plane_points_at_initiator(cluster_config, cluster_nodes):
    """Test that a joining server references the first server's API."""
    node = _by_name(cluster_nodes, "cp-1")

    rendered = render_node(NodeRole.CONTROL_PLANE, cluster_config, TOKEN, node, "10.0.1.1")
    data = yaml.safe_load(rendered.config_text)

    assert data["cluster-init"] is False
    assert data["server"] == "https://10.0.1.1:6443"
    assert data["node-ip"] == "10.0.1.2"
    assert data["flannel-iface"] == "eth1"
    assert rendered.manifest_text is None


def test_agent_config_has_no_server_settings(cluster_config, cluster_nodes):
    """Test that agents only get the join settings."""
    node = _by_name(cluster_nodes, "agent-0")

    rendered = render_node(NodeRole.AGENT, cluster_config, TOKEN, node, "10.0.1.1")
    data = yaml.safe_load(rendered.config_text)

    assert set(data) == {"node-name", "server", "token", "flannel-iface", "kubelet-arg", "node-ip"}
    assert data["kubelet-arg"] == ["cloud-provider=external"]
    assert data["server"] == "https://10.0.1.1:6443"
    assert rendered.manifest_text is None


def test_control_plane_taint_can_be_disabled(cluster_config, cluster_nodes):
    """Test that workloads may be scheduled on servers when allowed."""
    config = cluster_config.model_copy(update={"allow_scheduling_on_control_plane": True})
    node = _by_name(cluster_nodes, "cp-0")

    data = yaml.safe_load(render_node(node.role, config, TOKEN, node).config_text)

    assert data["node-taint"] == []


def test_rendering_is_deterministic(cluster_config, cluster_nodes):
    """Test that identical inputs produce identical text."""
    for node in cluster_nodes:
        address = None if node.role is NodeRole.FIRST_CONTROL_PLANE else "10.0.1.1"
        first = render_node(node.role, cluster_config, TOKEN, node, address)
        second = render_node(node.role, cluster_config, TOKEN, node, address)
        assert first == second


def test_role_mismatch_is_rejected(cluster_config, cluster_nodes):
    """Test that a node cannot be rendered for a role it was not declared with."""
    node = _by_name(cluster_nodes, "agent-0")

    with pytest.raises(ConfigRenderError):
        render_node(NodeRole.CONTROL_PLANE, cluster_config, TOKEN, node, "10.0.1.1")


def test_joiner_requires_server_address(cluster_config, cluster_nodes):
    """Test that joiners cannot be rendered before the initiator address is known."""
    node = _by_name(cluster_nodes, "agent-1")

    with pytest.raises(ConfigRenderError):
        render_node(NodeRole.AGENT, cluster_config, TOKEN, node)


def test_missing_token_is_rejected(cluster_config, cluster_nodes):
    """Test that rendering without a token fails."""
    node = _by_name(cluster_nodes, "cp-0")

    with pytest.raises(ConfigRenderError):
        render_node(NodeRole.FIRST_CONTROL_PLANE, cluster_config, None, node)


def test_normalize_indentation_indicator():
    """Test that '|2' headers become '|' with the block lines untouched."""
    text = "patchesStrategicMerge:\n- |2\n    apiVersion: apps/v1\n    kind: DaemonSet\n"

    normalized = normalize_block_markers(text)

    assert normalized == (
        "patchesStrategicMerge:\n- |\n    apiVersion: apps/v1\n    kind: DaemonSet\n"
    )


@pytest.mark.parametrize(
    "header,expected",
    [
        ("key: |2", "key: |"),
        ("key: |2-", "key: |-"),
        ("key: |-2", "key: |-"),
        ("key: |2+", "key: |+"),
        ("- |4", "- |"),
    ],
)
def test_normalize_keeps_chomping(header, expected):
    """Test that chomping indicators survive normalization."""
    assert normalize_block_markers(f"{header}\n  value\n") == f"{expected}\n  value\n"


def test_normalize_leaves_other_text_alone():
    """Test that plain scalars and already-plain headers are unchanged."""
    text = "a: |\n  x\nb: '|2'\nc: value |2 here\n"

    assert normalize_block_markers(text) == text


def test_kustomization_lists_bundle(cluster_config):
    """Test that the kustomization references resources and inline patches."""
    bundle = build_manifest_bundle(cluster_config)

    document = yaml.safe_load(render_kustomization(bundle))

    assert document["kind"] == "Kustomization"
    assert INGRESS_FILE in document["resources"]
    assert any("hcloud-cloud-controller-manager" in r for r in document["resources"])
    assert any("csi-driver" in r for r in document["resources"])
    assert any("kured" in r for r in document["resources"])
    kured_patch = yaml.safe_load(document["patchesStrategicMerge"][0])
    assert kured_patch["metadata"]["name"] == "kured"
    assert "--period=5m" in kured_patch["spec"]["template"]["spec"]["containers"][0]["command"]


def test_kustomization_has_no_indentation_indicators():
    """Test that patches starting with a blank line are written with a plain header."""
    bundle = ManifestBundle(resources=["a.yaml"], patches=["\nkind: X\n"])

    text = render_kustomization(bundle)

    assert "|2" not in text
    assert yaml.safe_load(text)["patchesStrategicMerge"] == ["\nkind: X\n"]


def test_manifest_files_include_kustomization(cluster_config):
    """Test that every bundle file is rendered next to the kustomization."""
    files = render_manifest_files(build_manifest_bundle(cluster_config))

    assert set(files) == {INGRESS_FILE, KUSTOMIZATION_FILE}
    chart = yaml.safe_load(files[INGRESS_FILE])
    assert chart["kind"] == "HelmChart"
    values = yaml.safe_load(chart["spec"]["valuesContent"])
    annotations = values["service"]["annotations"]
    assert annotations["load-balancer.hetzner.cloud/name"] == "test-cluster-ingress"


def test_extra_addons_are_appended():
    """Test that configured extra resources and patches join the bundle."""
    config = ClusterConfig(
        cluster_name="extra",
        addons={"extra_resources": ["https://example.com/x.yaml"], "extra_patches": ["kind: Y\n"]},
    )

    bundle = build_manifest_bundle(config)

    assert bundle.resources[-1] == "https://example.com/x.yaml"
    assert bundle.patches[-1] == "kind: Y\n"
