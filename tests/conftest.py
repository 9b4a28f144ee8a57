"""Pytest configuration and shared fixtures."""

import asyncio
import base64
import json
import shlex

import pytest
import yaml
from hypothesis import Verbosity, settings

from cluster_bootstrap.exceptions import RemoteConnectionError
from cluster_bootstrap.models import ClusterConfig, NodeSpec
from cluster_bootstrap.remote import CommandResult

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


class FakeCluster:
    """In-memory stand-in for the nodes and the cluster API behind them.

    Implements the RemoteExecutor protocol by interpreting the commands the
    bootstrap sends, so tests can drive whole runs without SSH.
    """

    def __init__(
        self,
        installed=(),
        install_exit_codes=None,
        unreachable_polls=0,
        api_delay=0.0,
        server_tokens=None,
        never_ready=(),
        apply_exit_code=0,
        secret_write_exit_code=0,
    ):
        self.installed = set(installed)
        self.install_exit_codes = dict(install_exit_codes or {})
        self.unreachable_polls = unreachable_polls
        self.api_delay = api_delay
        self.server_tokens = dict(server_tokens or {})
        self.never_ready = set(never_ready)
        self.apply_exit_code = apply_exit_code
        self.secret_write_exit_code = secret_write_exit_code

        self.rebooting = {}
        self.started = {}
        self.files = {}
        self.secrets = {}
        self.configmaps = {}
        self.applied = []
        self.calls = []
        self.events = []
        self.secret_writes = []

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _check_reachable(self, node):
        remaining = self.rebooting.get(node.name)
        if remaining is None:
            return
        if remaining > 0:
            self.rebooting[node.name] = remaining - 1
            raise RemoteConnectionError(f"{node.name} is rebooting")
        del self.rebooting[node.name]
        self.installed.add(node.name)

    async def execute(self, node, commands):
        await asyncio.sleep(0)
        self._check_reachable(node)
        output = []
        for command in commands:
            self.calls.append((node.name, command))
            result = self._run(node, command)
            if result.stdout:
                output.append(result.stdout)
            if not result.ok:
                return CommandResult("\n".join(output), result.exit_code, result.stderr)
        return CommandResult("\n".join(output), 0)

    async def upload_file(self, node, content, destination, mode=0o644):
        await asyncio.sleep(0)
        self._check_reachable(node)
        self.files[(node.name, destination)] = content

    def config_of(self, name: str) -> dict:
        return yaml.safe_load(self.files[(name, "/etc/rancher/k3s/config.yaml")])

    def commands_on(self, name: str) -> list[str]:
        return [command for node, command in self.calls if node == name]

    def _run(self, node, command) -> CommandResult:
        name = node.name
        argv = shlex.split(command) if command.startswith(("kubectl", "rm ")) else []

        if "/etc/os-release" in command:
            return CommandResult("", 0 if name in self.installed else 1)
        if "qemu-img convert" in command:
            code = self.install_exit_codes.get(name, 0)
            return CommandResult("", code, "qemu-img: write failed" if code else "")
        if command.startswith(("command -v qemu-img", "wget ", "sgdisk ", "partprobe ")):
            return CommandResult("", 0)
        if "reboot" in command:
            self.events.append((name, "reboot"))
            if self.unreachable_polls:
                self.rebooting[name] = self.unreachable_polls
            else:
                self.installed.add(name)
            return CommandResult("", 0)
        if command.startswith("systemctl disable"):
            return CommandResult("", 0)
        if "/var/lib/rancher/k3s/server/token" in command:
            return CommandResult(self.server_tokens.get(name, ""), 0)
        if "get.k3s.io" in command:
            return CommandResult("", 0)
        if command.startswith("systemctl start"):
            self.started[name] = self._now()
            self.events.append((name, "start"))
            config = self.config_of(name)
            if config.get("cluster-init"):
                self.server_tokens[name] = config["token"]
            return CommandResult("", 0)
        if "--raw=/readyz" in command:
            started = self.started.get(name)
            if started is not None and self._now() - started >= self.api_delay:
                return CommandResult("ok", 0)
            return CommandResult("", 1, "The connection to the server was refused")
        if argv[:3] == ["kubectl", "get", "node"]:
            target = argv[3]
            ready = target in self.started and target not in self.never_ready
            return CommandResult("True" if ready else "False", 0)
        if argv[:2] == ["kubectl", "-n"] and argv[3:5] == ["get", "secret"]:
            data = self.secrets.get(argv[5])
            if data is None:
                return CommandResult("", 0)
            encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
            return CommandResult(json.dumps({"kind": "Secret", "data": encoded}), 0)
        if argv[:3] == ["kubectl", "create", "-f"]:
            if self.secret_write_exit_code:
                return CommandResult("", self.secret_write_exit_code, "error: admission denied")
            document = json.loads(self.files[(name, argv[3])])
            secret_name = document["metadata"]["name"]
            if secret_name in self.secrets:
                return CommandResult("", 1, f'secrets "{secret_name}" already exists')
            self.secrets[secret_name] = dict(document["stringData"])
            self.secret_writes.append(("create", secret_name))
            return CommandResult("", 0)
        if argv[:2] == ["kubectl", "-n"] and argv[3:5] == ["patch", "secret"]:
            if self.secret_write_exit_code:
                return CommandResult("", self.secret_write_exit_code, "error: admission denied")
            patch = json.loads(self.files[(name, argv[argv.index("--patch-file") + 1])])
            self.secrets[argv[5]].update(patch["stringData"])
            self.secret_writes.append(("patch", argv[5]))
            return CommandResult("", 0)
        if argv[:2] == ["rm", "-f"]:
            self.files.pop((name, argv[2]), None)
            return CommandResult("", 0)
        if argv[:2] == ["kubectl", "-n"] and argv[3:5] == ["get", "configmap"]:
            data = self.configmaps.get(argv[5])
            return CommandResult(data["bundle-digest"] if data else "", 0)
        if argv[:2] == ["kubectl", "-n"] and argv[3:5] == ["create", "configmap"]:
            if argv[5] in self.configmaps:
                return CommandResult("", 1, "already exists")
            key, value = argv[6].removeprefix("--from-literal=").split("=", 1)
            self.configmaps[argv[5]] = {key: value}
            return CommandResult("", 0)
        if argv[:3] == ["kubectl", "apply", "-k"]:
            if self.apply_exit_code:
                return CommandResult("", self.apply_exit_code, "error: unable to fetch resource")
            prefix = argv[3].rstrip("/") + "/"
            snapshot = {
                path.removeprefix(prefix): content
                for (node_name, path), content in self.files.items()
                if node_name == name and path.startswith(prefix)
            }
            self.applied.append(snapshot)
            self.events.append((name, "apply"))
            return CommandResult("", 0)

        raise AssertionError(f"Unexpected command on {name}: {command}")


@pytest.fixture
def make_cluster():
    """Factory for FakeCluster instances."""
    return FakeCluster


@pytest.fixture
def fake_cluster():
    """A fake cluster where every node starts in the rescue system."""
    return FakeCluster()


@pytest.fixture
def cluster_config():
    """Cluster configuration with short timeouts for tests."""
    return ClusterConfig(
        cluster_name="test-cluster",
        control_plane_count=3,
        agent_count=2,
        secrets={"cloud_token": "test-cloud-token", "network_name": "test-network"},
        timeouts={
            "poll_interval": 0.01,
            "reboot_timeout": 1.0,
            "reboot_attempts": 3,
            "api_timeout": 1.0,
            "node_ready_timeout": 1.0,
        },
    )


@pytest.fixture
def cluster_nodes():
    """Three control-plane nodes and two agents."""
    roles = [
        ("cp-0", "first-control-plane", "10.0.1.1"),
        ("cp-1", "control-plane", "10.0.1.2"),
        ("cp-2", "control-plane", "10.0.1.3"),
        ("agent-0", "agent", "10.0.2.1"),
        ("agent-1", "agent", "10.0.2.2"),
    ]
    return [
        NodeSpec(
            name=name,
            role=role,
            location="fsn1",
            server_type="cpx21",
            private_ip=ip,
            ssh_host=f"203.0.113.{index + 10}",
        )
        for index, (name, role, ip) in enumerate(roles)
    ]


@pytest.fixture
def first_node(cluster_nodes):
    return cluster_nodes[0]


@pytest.fixture
def sample_definition_data():
    """Sample cluster definition data for testing."""
    return {
        "cluster": {
            "cluster_name": "test-cluster",
            "control_plane_count": 1,
            "agent_count": 1,
            "k3s_channel": "stable",
        },
        "nodes": [
            {
                "name": "cp-0",
                "role": "first-control-plane",
                "location": "fsn1",
                "server_type": "cpx21",
                "private_ip": "10.0.1.1",
                "ssh_host": "203.0.113.10",
            },
            {
                "name": "agent-0",
                "role": "agent",
                "location": "fsn1",
                "server_type": "cpx31",
                "private_ip": "10.0.2.1",
                "ssh_host": "203.0.113.20",
            },
        ],
    }
