"""Rendering of per-node k3s configuration and the add-on manifest bundle.

Everything in this module is a pure function of its inputs: the same
role, cluster configuration, token and node always produce byte-identical
text, so re-running a bootstrap rewrites files with identical content.
"""

import re
from dataclasses import dataclass

import yaml

from cluster_bootstrap.exceptions import ConfigRenderError
from cluster_bootstrap.models.cluster import ClusterConfig, ClusterToken, ManifestBundle
from cluster_bootstrap.models.node import NodeRole, NodeSpec

API_PORT = 6443
CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane:NoSchedule"
KUSTOMIZATION_FILE = "kustomization.yaml"

CCM_URL = (
    "https://github.com/hetznercloud/hcloud-cloud-controller-manager/releases/download/"
    "{version}/ccm-networks.yaml"
)
CSI_URL = (
    "https://raw.githubusercontent.com/hetznercloud/csi-driver/"
    "{version}/deploy/kubernetes/hcloud-csi.yml"
)
KURED_URL = (
    "https://github.com/weaveworks/kured/releases/download/{version}/kured-{version}-dockerhub.yaml"
)
INGRESS_FILE = "ingress.yaml"

# A block scalar header with an indentation indicator, e.g. "- |2" or "key: |-2"
_INDENTED_BLOCK_HEADER = re.compile(
    r"(?<=[:\-] )\|"
    r"(?:(?P<hint>[1-9])(?P<chomp>[+-]?)|(?P<chomp_first>[+-])(?P<hint_last>[1-9]))"
    r"[ \t]*$",
    re.MULTILINE,
)


@dataclass(frozen=True)
class RenderedNode:
    """Files produced for one node.

    ``manifest_files`` is only set for the first control-plane node and maps
    each file of the add-on bundle directory to its content.
    """

    config_text: str
    manifest_files: dict[str, str] | None = None

    @property
    def manifest_text(self) -> str | None:
        """The add-on kustomization, if this node applies the bundle."""
        if self.manifest_files is None:
            return None
        return self.manifest_files[KUSTOMIZATION_FILE]


class _BlockStyleDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_str(data)


_BlockStyleDumper.add_representer(str, _represent_str)


def dump_yaml(data) -> str:
    """Serialize to YAML with stable key order and literal multi-line strings."""
    return yaml.dump(
        data,
        Dumper=_BlockStyleDumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
        width=4096,
    )


def normalize_block_markers(text: str) -> str:
    """Rewrite indentation-annotated literal block headers to the plain form.

    ``|2`` becomes ``|`` and ``|2-``/``|-2`` become ``|-``. Only the header
    is touched; the lines of the block keep their indentation.

    Args:
        text: YAML document text

    Returns:
        Text safe to hand to kustomize
    """

    def _plain(match: re.Match) -> str:
        return "|" + (match.group("chomp") or match.group("chomp_first") or "")

    return _INDENTED_BLOCK_HEADER.sub(_plain, text)


def server_url(address: str) -> str:
    """URL of the supervisor/API port on a server node."""
    return f"https://{address}:{API_PORT}"


def node_config(
    role: NodeRole,
    config: ClusterConfig,
    token: ClusterToken,
    node: NodeSpec,
    server_address: str | None = None,
) -> dict:
    """Build the k3s ``config.yaml`` mapping for a node.

    Args:
        role: Role to render for; must match the node's declared role
        config: Cluster configuration
        token: Shared cluster token
        node: Node being configured
        server_address: Private address of the initiating node; required for joiners

    Returns:
        Ordered mapping of k3s configuration keys

    Raises:
        ConfigRenderError: If the inputs are inconsistent
    """
    if role is not node.role:
        raise ConfigRenderError(
            f"Cannot render {role.value} config for {node.name}",
            f"The node is declared as {node.role.value}",
        )
    if token is None:
        raise ConfigRenderError(f"Cannot render config for {node.name} without a cluster token")
    if role is not NodeRole.FIRST_CONTROL_PLANE and not server_address:
        raise ConfigRenderError(
            f"Cannot render config for {node.name} without the initiating server address"
        )

    if role is NodeRole.AGENT:
        return {
            "node-name": node.name,
            "server": server_url(server_address),
            "token": token.reveal(),
            "flannel-iface": config.network_interface,
            "kubelet-arg": list(config.kubelet_args),
            "node-ip": node.address,
        }

    data = {"node-name": node.name}
    if role is NodeRole.CONTROL_PLANE:
        data["server"] = server_url(server_address)
    data.update(
        {
            "cluster-init": role is NodeRole.FIRST_CONTROL_PLANE,
            "disable-cloud-controller": True,
            "disable": list(config.disabled_components),
            "flannel-iface": config.network_interface,
            "kubelet-arg": list(config.kubelet_args),
            "node-ip": node.address,
            "advertise-address": node.address,
            "token": token.reveal(),
            "node-taint": [] if config.allow_scheduling_on_control_plane else [CONTROL_PLANE_TAINT],
        }
    )
    return data


def _kured_patch(config: ClusterConfig) -> dict:
    addons = config.addons
    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {"name": "kured", "namespace": "kube-system"},
        "spec": {
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": "kured",
                            "command": [
                                "/usr/bin/kured",
                                f"--reboot-sentinel={addons.kured_reboot_sentinel}",
                                f"--period={addons.kured_period}",
                            ],
                        }
                    ]
                }
            }
        },
    }


def _ccm_patch(config: ClusterConfig) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "hcloud-cloud-controller-manager", "namespace": "kube-system"},
        "spec": {
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": "hcloud-cloud-controller-manager",
                            "env": [
                                {
                                    "name": "HCLOUD_LOAD_BALANCERS_LOCATION",
                                    "value": config.addons.load_balancer_location,
                                },
                                {"name": "HCLOUD_LOAD_BALANCERS_USE_PRIVATE_IP", "value": "true"},
                            ],
                        }
                    ]
                }
            }
        },
    }


def _ingress_chart(config: ClusterConfig) -> dict:
    addons = config.addons
    values = {
        "service": {
            "enabled": True,
            "type": "LoadBalancer",
            "annotations": {
                "load-balancer.hetzner.cloud/name": f"{config.cluster_name}-ingress",
                "load-balancer.hetzner.cloud/use-private-ip": "true",
                "load-balancer.hetzner.cloud/location": addons.load_balancer_location,
                "load-balancer.hetzner.cloud/type": addons.load_balancer_type,
            },
        },
        "additionalArguments": ["--entryPoints.web.forwardedHeaders.insecure=true"],
    }
    return {
        "apiVersion": "helm.cattle.io/v1",
        "kind": "HelmChart",
        "metadata": {"name": "traefik", "namespace": "kube-system"},
        "spec": {
            "chart": "traefik",
            "repo": "https://helm.traefik.io/traefik",
            "version": addons.ingress_chart_version,
            "targetNamespace": "kube-system",
            "valuesContent": dump_yaml(values),
        },
    }


def build_manifest_bundle(config: ClusterConfig) -> ManifestBundle:
    """Assemble the add-on bundle: cloud controller, storage driver, reboot daemon, ingress."""
    addons = config.addons
    return ManifestBundle(
        resources=[
            CCM_URL.format(version=addons.ccm_version),
            CSI_URL.format(version=addons.csi_version),
            KURED_URL.format(version=addons.kured_version),
            INGRESS_FILE,
            *addons.extra_resources,
        ],
        patches=[
            dump_yaml(_kured_patch(config)),
            dump_yaml(_ccm_patch(config)),
            *addons.extra_patches,
        ],
        files={INGRESS_FILE: dump_yaml(_ingress_chart(config))},
    )


def render_kustomization(bundle: ManifestBundle) -> str:
    """Render the kustomization document for a bundle."""
    document = {
        "apiVersion": "kustomize.config.k8s.io/v1beta1",
        "kind": "Kustomization",
        "resources": list(bundle.resources),
        "patchesStrategicMerge": list(bundle.patches),
    }
    return normalize_block_markers(dump_yaml(document))


def render_manifest_files(bundle: ManifestBundle) -> dict[str, str]:
    """Render every file of the bundle directory, keyed by file name."""
    files = {name: normalize_block_markers(text) for name, text in sorted(bundle.files.items())}
    files[KUSTOMIZATION_FILE] = render_kustomization(bundle)
    return files


def render_node(
    role: NodeRole,
    config: ClusterConfig,
    token: ClusterToken,
    node: NodeSpec,
    server_address: str | None = None,
    bundle: ManifestBundle | None = None,
) -> RenderedNode:
    """Render the configuration files for one node.

    The first control-plane node also gets the add-on bundle directory,
    rendered from ``bundle`` or, when omitted, from the cluster configuration.

    Raises:
        ConfigRenderError: If the inputs are inconsistent
    """
    config_text = dump_yaml(node_config(role, config, token, node, server_address))
    manifest_files = None
    if role is NodeRole.FIRST_CONTROL_PLANE:
        manifest_files = render_manifest_files(bundle or build_manifest_bundle(config))
    return RenderedNode(config_text=config_text, manifest_files=manifest_files)
