"""Seeding of cluster secrets and the one-time add-on bundle."""

import json
import shlex

from cluster_bootstrap.exceptions import (
    AddonApplyFailure,
    RemoteCommandError,
    RemoteConnectionError,
    SecretConflict,
)
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterConfig, ManifestBundle, SecretConflictPolicy
from cluster_bootstrap.models.node import NodeSpec
from cluster_bootstrap.remote import RemoteExecutor, run_checked
from cluster_bootstrap.render import build_manifest_bundle, render_manifest_files
from cluster_bootstrap.secrets import SecretSpec, cluster_secrets, decode_secret_data

logger = get_logger(__name__)

BUNDLE_DIR = "/var/post_install"
SECRET_STAGING_DIR = "/root/.cluster-bootstrap"
MARKER_CONFIGMAP = "cluster-bootstrap-addons"
MARKER_NAMESPACE = "kube-system"
MARKER_KEY = "bundle-digest"


class PostInstallApplier:
    """Applies secrets and the add-on bundle through the first control-plane node.

    Manifest application is merge based and repeatable, but the applier keeps
    an ``applied`` flag and an in-cluster marker so the bundle is only applied
    once per cluster lifetime.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        config: ClusterConfig,
        bundle: ManifestBundle | None = None,
    ):
        """Initialize the applier.

        Args:
            executor: Remote executor
            config: Cluster configuration
            bundle: Add-on bundle; derived from config when omitted
        """
        self.executor = executor
        self.config = config
        self.bundle = bundle or build_manifest_bundle(config)
        self.applied = False

    async def seed_secrets(self, node: NodeSpec) -> dict[str, str]:
        """Create or update every cluster secret.

        Existing secrets with identical content are left alone.

        Args:
            node: Server node with kubectl access

        Returns:
            Mapping of secret name to "created", "unchanged" or "patched"

        Raises:
            SecretConflict: If a secret differs and the policy is "fail"
            RemoteCommandError: If kubectl fails
        """
        outcomes = {}
        for spec in cluster_secrets(self.config):
            outcomes[spec.name] = await self._upsert_secret(node, spec)
        return outcomes

    async def _upsert_secret(self, node: NodeSpec, spec: SecretSpec) -> str:
        result = await run_checked(
            self.executor, node, [spec.get_command()], f"Reading secret {spec.name}"
        )
        try:
            existing = decode_secret_data(result.stdout)
        except ValueError as e:
            raise RemoteCommandError(f"Could not read secret {spec.name} on {node.name}", str(e))

        if existing is None:
            await self._run_with_staged_file(
                node, spec, spec.to_kubernetes_secret(), spec.create_command, "Creating"
            )
            logger.info(f"Created secret {spec.namespace}/{spec.name}")
            return "created"

        if spec.matches(existing):
            logger.debug(f"Secret {spec.namespace}/{spec.name} is up to date")
            return "unchanged"

        if self.config.secrets.conflict_policy is SecretConflictPolicy.FAIL:
            raise SecretConflict(
                f"Secret {spec.namespace}/{spec.name} exists with different content",
                "Delete it or set secrets.conflict_policy to 'patch'",
            )

        await self._run_with_staged_file(
            node, spec, spec.to_merge_patch(), spec.patch_command, "Patching"
        )
        logger.info(f"Patched secret {spec.namespace}/{spec.name}")
        return "patched"

    async def _run_with_staged_file(self, node, spec, document, command_for, verb) -> None:
        # Values go through a private file rather than the command line
        path = f"{SECRET_STAGING_DIR}/{spec.name}.json"
        try:
            await self.executor.upload_file(
                node, json.dumps(document, sort_keys=True), path, mode=0o600
            )
            await run_checked(
                self.executor, node, [command_for(path)], f"{verb} secret {spec.name}"
            )
        finally:
            await self._remove_staged_file(node, path)

    async def _remove_staged_file(self, node: NodeSpec, path: str) -> None:
        try:
            result = await self.executor.execute(node, [f"rm -f {shlex.quote(path)}"])
        except RemoteConnectionError as e:
            logger.warning(f"Could not remove {path} from {node.name}: {e.message}")
            return
        if not result.ok:
            logger.warning(f"Could not remove {path} from {node.name}: {result.stderr.strip()}")

    def marker_get_command(self) -> str:
        return (
            f"kubectl -n {MARKER_NAMESPACE} get configmap {MARKER_CONFIGMAP} "
            f"--ignore-not-found -o jsonpath='{{.data.{MARKER_KEY}}}'"
        )

    def marker_create_command(self) -> str:
        return (
            f"kubectl -n {MARKER_NAMESPACE} create configmap {MARKER_CONFIGMAP} "
            f"--from-literal={MARKER_KEY}={self.bundle.digest()}"
        )

    async def applied_digest(self, node: NodeSpec) -> str | None:
        """Digest of the bundle recorded in the cluster, if any was applied."""
        result = await run_checked(
            self.executor, node, [self.marker_get_command()], "Reading add-on marker"
        )
        return result.stdout.strip() or None

    async def apply(self, node: NodeSpec, files: dict[str, str] | None = None) -> bool:
        """Apply the add-on bundle unless it has already been applied.

        Args:
            node: Server node with kubectl access
            files: Bundle directory already rendered for the node; rendered
                from the applier's bundle when omitted

        Returns:
            True if the bundle was applied by this call

        Raises:
            AddonApplyFailure: If uploading or applying the bundle fails
        """
        if self.applied:
            logger.debug("Add-on bundle already applied in this run")
            return False

        try:
            digest = await self.applied_digest(node)
            if digest is not None:
                if digest != self.bundle.digest():
                    logger.warning(
                        "Add-on bundle changed since it was applied; it is only applied once "
                        "per cluster and will not be reapplied"
                    )
                else:
                    logger.info("Add-on bundle already applied to this cluster")
                self.applied = True
                return False

            if files is None:
                files = render_manifest_files(self.bundle)
            for name, text in files.items():
                await self.executor.upload_file(node, text, f"{BUNDLE_DIR}/{name}")

            logger.info(f"Applying add-on bundle ({len(self.bundle.resources)} resources)")
            await run_checked(
                self.executor, node, [f"kubectl apply -k {BUNDLE_DIR}"], "Applying add-ons"
            )
            await run_checked(
                self.executor, node, [self.marker_create_command()], "Recording add-on marker"
            )
        except (RemoteCommandError, RemoteConnectionError) as e:
            raise AddonApplyFailure(e.message, e.details)

        self.applied = True
        logger.info("Add-on bundle applied")
        return True
