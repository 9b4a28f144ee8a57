"""Main CLI entry point for cluster bootstrap."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from cluster_bootstrap.exceptions import ClusterBootstrapError
from cluster_bootstrap.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="cluster-boot",
    help="Bootstrap a highly-available k3s cluster on freshly created machines",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

CLUSTER_OPTION_HELP = "Path to the cluster definition file"


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _print_error(error: ClusterBootstrapError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    if error.details:
        console.print(f"\n{error.details}")


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_bootstrap import __version__

    typer.echo(f"cluster-boot version {__version__}")


@app.command()
def validate(
    cluster: str = typer.Option("cluster.yml", "--cluster", "-c", help=CLUSTER_OPTION_HELP),
) -> None:
    """
    Validate the cluster definition and list the declared nodes.

    Checks that exactly one node initializes the cluster and that the declared
    nodes match the configured control-plane and agent counts.
    """
    from cluster_bootstrap.inventory import ClusterDefinition

    try:
        config, nodes = ClusterDefinition(cluster).load()
    except ClusterBootstrapError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    table = Table(title=f"Cluster '{config.cluster_name}'")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Location")
    table.add_column("Type")
    table.add_column("Private IP", style="yellow")
    table.add_column("SSH", style="green")

    for node in nodes:
        table.add_row(
            node.name,
            node.role.value,
            node.location,
            node.server_type,
            node.address,
            f"{node.ssh_host}:{node.ssh_port}",
        )

    console.print(table)
    console.print(f"\n[bold]k3s channel:[/bold] {config.k3s_channel}")
    console.print(
        f"[bold]Quorum:[/bold] {config.quorum_size} of {config.control_plane_count} "
        "control-plane node(s)"
    )
    console.print("\n[green]✓ Cluster definition is valid[/green]")


@app.command()
def render(
    node_name: str = typer.Argument(..., help="Name of the node to render configuration for"),
    cluster: str = typer.Option("cluster.yml", "--cluster", "-c", help=CLUSTER_OPTION_HELP),
    token: str | None = typer.Option(
        None, "--token", envvar="K3S_TOKEN", help="Cluster token to embed (placeholder if omitted)"
    ),
) -> None:
    """
    Print the k3s configuration a node would receive.

    For the first control-plane node the add-on kustomization is printed too.
    """
    from cluster_bootstrap.inventory import ClusterDefinition
    from cluster_bootstrap.models import ClusterToken, NodeRole
    from cluster_bootstrap.render import render_node

    try:
        config, nodes = ClusterDefinition(cluster).load()
        node = next((n for n in nodes if n.name == node_name), None)
        if node is None:
            console.print(f"[red]Error:[/red] Node '{node_name}' is not in {cluster}")
            raise typer.Exit(code=1)

        first = next(n for n in nodes if n.role is NodeRole.FIRST_CONTROL_PLANE)
        cluster_token = ClusterToken(value=token or "<cluster-token>")
        rendered = render_node(node.role, config, cluster_token, node, first.address)
    except ClusterBootstrapError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[bold cyan]# /etc/rancher/k3s/config.yaml on {node.name}[/bold cyan]")
    console.print(Syntax(rendered.config_text, "yaml"))
    if rendered.manifest_text is not None:
        console.print("[bold cyan]# add-on kustomization.yaml[/bold cyan]")
        console.print(Syntax(rendered.manifest_text, "yaml"))


def _report_table(report) -> Table:
    table = Table(title="Bootstrap Summary")
    table.add_column("Node", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Phase")
    table.add_column("Retries", justify="right")
    table.add_column("Error / Warnings", style="red")

    for node, role, phase, retries, error in report.rows():
        phase_str = f"[green]{phase}[/green]" if phase == "Ready" else f"[red]{phase}[/red]"
        table.add_row(node, role, phase_str, retries, error)
    return table


def _print_report(report) -> None:
    console.print()
    console.print(_report_table(report))
    console.print(
        f"\n[bold]Control-plane nodes ready:[/bold] {report.ready_control_planes} "
        f"(quorum {report.quorum_size})"
    )
    if report.aborted:
        console.print(f"[yellow]Run aborted:[/yellow] {report.abort_reason}")

    if report.exit_code == 0:
        console.print("\n[green]✓ Cluster bootstrap completed[/green]")
    elif report.first_control_plane_failed:
        console.print(
            "\n[red]✗ First control-plane node failed; the cluster was not created[/red]"
        )
    else:
        console.print("\n[red]✗ Control-plane quorum was not reached[/red]")


@app.command()
def bootstrap(
    cluster: str = typer.Option("cluster.yml", "--cluster", "-c", help=CLUSTER_OPTION_HELP),
    cloud_token: str | None = typer.Option(
        None, "--cloud-token", envvar="HCLOUD_TOKEN", help="Cloud API token seeded as secrets"
    ),
    ssh_user: str = typer.Option("root", "--ssh-user", "-u", help="SSH login user"),
    ssh_key: str | None = typer.Option(
        None, "--ssh-key", "-k", help="Private key file (SSH agent is used when omitted)"
    ),
    max_workers: int = typer.Option(
        10, "--max-workers", "-w", help="Maximum concurrent remote operations"
    ),
) -> None:
    """
    Install, initialize and join every node in the cluster definition.

    Nodes are provisioned in parallel; joiners wait until the first
    control-plane node has published the cluster token.

    Examples:
        # Bootstrap the cluster described in cluster.yml
        HCLOUD_TOKEN=... cluster-boot bootstrap

        # Limit concurrent SSH sessions
        cluster-boot bootstrap --max-workers 4 --ssh-key ~/.ssh/cluster
    """
    from cluster_bootstrap.inventory import ClusterDefinition
    from cluster_bootstrap.orchestrator import BootstrapOrchestrator
    from cluster_bootstrap.remote import SSHExecutor

    try:
        config, nodes = ClusterDefinition(cluster).load(cloud_token=cloud_token)
        key_path = Path(ssh_key).expanduser() if ssh_key else None
        executor = SSHExecutor(user=ssh_user, key_path=key_path)
        orchestrator = BootstrapOrchestrator(config, nodes, executor, max_workers=max_workers)
    except ClusterBootstrapError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    console.print(
        f"[bold cyan]Bootstrapping '{config.cluster_name}'[/bold cyan] "
        f"({config.control_plane_count} control-plane, {config.agent_count} agent)"
    )

    try:
        report = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Bootstrap interrupted by user[/yellow]")
        _print_report(orchestrator.report())
        raise typer.Exit(code=130)
    except Exception as e:
        logger.error(f"Unexpected error during bootstrap: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
        raise typer.Exit(code=1)

    _print_report(report)
    raise typer.Exit(code=report.exit_code)


@app.command()
def status(
    kubeconfig: str | None = typer.Option(
        None, "--kubeconfig", help="Path to kubeconfig (defaults to KUBECONFIG or ~/.kube/config)"
    ),
) -> None:
    """
    Show the nodes of a bootstrapped cluster and whether they are Ready.
    """
    from kubernetes import client, config
    from kubernetes.client.rest import ApiException

    try:
        config.load_kube_config(config_file=kubeconfig)
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to load kubeconfig: {e}")
        console.print("\nCopy /etc/rancher/k3s/k3s.yaml from the first control-plane node")
        console.print("and point its server address at the node or load balancer")
        raise typer.Exit(code=1)

    try:
        nodes = client.CoreV1Api().list_node()
    except ApiException as e:
        console.print(f"[red]Error:[/red] Failed to list nodes: {e}")
        raise typer.Exit(code=1)

    if not nodes.items:
        console.print("[yellow]No nodes found in the cluster[/yellow]")
        raise typer.Exit(code=0)

    table = Table(title=f"Cluster Nodes ({len(nodes.items)})")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Version", style="blue")
    table.add_column("Internal IP", style="yellow")

    ready_nodes = 0
    for node in sorted(nodes.items, key=lambda n: n.metadata.name):
        labels = node.metadata.labels or {}
        role = "Control Plane" if "node-role.kubernetes.io/control-plane" in labels else "Agent"

        conditions = node.status.conditions or []
        ready_condition = next((c for c in conditions if c.type == "Ready"), None)
        if ready_condition and ready_condition.status == "True":
            ready_nodes += 1
            node_status = "[green]✓ Ready[/green]"
        else:
            node_status = "[red]✗ NotReady[/red]"

        addresses = node.status.addresses or []
        internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), "N/A")

        table.add_row(
            node.metadata.name,
            role,
            node_status,
            node.status.node_info.kubelet_version,
            internal_ip,
        )

    console.print(table)
    console.print(f"\n[bold]Ready:[/bold] {ready_nodes}/{len(nodes.items)}")


if __name__ == "__main__":
    app()
