"""Base OS installation on nodes booted into the rescue system."""

import shlex

from cluster_bootstrap.exceptions import InstallFailure, RemoteCommandError, RemoteConnectionError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterConfig
from cluster_bootstrap.models.node import NodeSpec
from cluster_bootstrap.remote import RemoteExecutor, run_checked

logger = get_logger(__name__)

IMAGE_PATH = "/tmp/os-image.qcow2"
AUTO_UPDATE_TIMER = "transactional-update.timer"


class ImageInstaller:
    """Writes the OS image to a node's disk and reboots into it."""

    def __init__(self, executor: RemoteExecutor, config: ClusterConfig):
        self.executor = executor
        self.config = config

    def os_check_command(self) -> str:
        """Command that succeeds only on the installed OS, not the rescue system."""
        pattern = f'^ID="?{self.config.os_id}"?$'
        return f"grep -Eq {shlex.quote(pattern)} /etc/os-release"

    def install_commands(self) -> list[str]:
        disk = shlex.quote(self.config.install_disk)
        url = shlex.quote(self.config.os_image_url)
        return [
            "command -v qemu-img >/dev/null || "
            "(apt-get update -qq && apt-get install -y -qq qemu-utils)",
            "wget --timeout=5 --waitretry=5 --tries=5 --retry-connrefused -q "
            f"-O {IMAGE_PATH} {url}",
            f"qemu-img convert -p -f qcow2 -O host_device {IMAGE_PATH} {disk}",
            f"sgdisk -e {disk}",
            f"partprobe {disk}",
        ]

    async def is_installed(self, node: NodeSpec) -> bool:
        """Check whether the node is running the installed OS.

        Raises:
            RemoteConnectionError: If the node is unreachable, e.g. mid-reboot
        """
        result = await self.executor.execute(node, [self.os_check_command()])
        return result.ok

    async def install(self, node: NodeSpec) -> bool:
        """Install the OS and request a reboot.

        Args:
            node: Node booted into the rescue system

        Returns:
            True if the image was written, False if the OS was already present

        Raises:
            InstallFailure: If any installation step fails
        """
        try:
            if await self.is_installed(node):
                logger.info(f"{node.name} already runs {self.config.os_id}, skipping install")
                return False

            logger.info(f"Installing {self.config.os_id} on {node.name}")
            result = await self.executor.execute(node, self.install_commands())
        except RemoteConnectionError as e:
            raise InstallFailure(f"Cannot reach {node.name} to install the OS", e.message)

        if not result.ok:
            logger.error(f"OS installation on {node.name} exited with {result.exit_code}")
            raise InstallFailure(
                f"OS installation failed on {node.name} with exit code {result.exit_code}",
                (result.stderr or result.stdout).strip() or None,
            )

        await self.request_reboot(node)
        return True

    async def request_reboot(self, node: NodeSpec) -> None:
        """Ask the node to reboot shortly, without waiting for it."""
        try:
            await self.executor.execute(
                node, ["nohup sh -c 'sleep 2 && reboot' >/dev/null 2>&1 &"]
            )
        except RemoteConnectionError as e:
            # The connection may drop as the node goes down
            logger.debug(f"Connection to {node.name} dropped while rebooting: {e.message}")
        logger.info(f"Reboot requested on {node.name}")

    async def disable_auto_updates(self, node: NodeSpec) -> None:
        """Stop the OS from updating and rebooting on its own schedule.

        Raises:
            InstallFailure: If the timer cannot be disabled
        """
        try:
            await run_checked(
                self.executor,
                node,
                [f"systemctl disable --now {AUTO_UPDATE_TIMER}"],
                "Disabling automatic updates",
            )
        except (RemoteCommandError, RemoteConnectionError) as e:
            raise InstallFailure(e.message, e.details)
        logger.debug(f"Disabled {AUTO_UPDATE_TIMER} on {node.name}")
