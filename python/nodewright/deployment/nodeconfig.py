"""
nodewright/deployment/nodeconfig.py

NodeConfig turns one Windows instance into a worker node (configure), removes it again
(deconfigure), and reboots it without disrupting workloads (safe_reboot).

Each step of these procedures is either REQUIRED or ADVISORY (see
nodewright.utils.outcome). A required step that fails raises PhaseError naming the step
and the node (or instance address while no node is known). Advisory failures are logged
and recorded on `NodeConfig.outcomes`.

Configure hands control to the on-instance configuration daemon halfway through: once
the desired-version annotation is set, the daemon converges services and networking and
reports back by setting the configured-version annotation, which NodeConfig waits for.
Any failure after bootstrap runs the daemon cleanup once, so a half-configured node goes
NotReady instead of looking healthy.

Usage:
    cache = await initialize_node_config_cache(cluster, namespace)
    nc = NodeConfig(cluster, instance, windows, boot_config, cache,
                    cluster_service_cidr="172.30.0.0/16", version="10.17.0",
                    namespace=namespace, public_key_hash=public_key_hash(private_key))
    await nc.configure()
"""

from __future__ import annotations

import logging
from typing import Awaitable, Dict, List, Mapping, Optional, TypeVar

from nodewright.deployment.interfaces import BootConfig, ClusterClient, WindowsInstance
from nodewright.deployment.payload import generate_bootstrap_artifacts
from nodewright.deployment.windows import CONTAINERD_CONFIG_DIR, K8S_DIR, split_path
from nodewright.models.instance import InstanceInfo
from nodewright.models.k8s import Node, find_by_address
from nodewright.models.nodeconfig import (
    KUBELET_CLIENT_CA_PATH,
    Kubeconfig,
    NodeConfigCache,
)
from nodewright.utils.cluster import get_dns
from nodewright.utils.errors import ConfigurationError, PhaseError
from nodewright.utils.k8s import get_node, list_windows_nodes, set_unschedulable
from nodewright.utils.metadata import (
    DESIRED_VERSION_ANNOTATION,
    PUB_KEY_HASH_ANNOTATION,
    REBOOT_ANNOTATION,
    UPGRADING_ANNOTATION,
    VERSION_ANNOTATION,
    generate_add_patch,
    generate_remove_patch,
)
from nodewright.utils.outcome import StepOutcome, StepPolicy
from nodewright.utils.polling import (
    DEFAULT_PROFILE,
    QUICK_PROFILE,
    PollProfile,
    PollTimeoutError,
    poll_until,
    watch_for_value,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TLS_SECRET_NAME = "windows-node-tls"


class NodeConfig:
    """
    Orchestrates the lifecycle of one instance. Create one per reconciliation attempt.

    Args:
        cluster: Cluster client.
        instance: The instance; `instance.node` is used if already known.
        windows: Remote operations on the instance.
        boot_config: Worker boot specification.
        cache: Startup cache from initialize_node_config_cache.
        cluster_service_cidr: The service network; the cluster DNS address derives from it.
        version: The version being rolled out (desired-version annotation value).
        namespace: Namespace of the configuration daemon's resources.
        public_key_hash: Value of the public-key-hash annotation.
        additional_labels / additional_annotations: Extra node metadata to apply.
        tls_secret_name: Secret (in `namespace`) holding the node TLS certificate and key.
        default_profile / quick_profile: Polling bounds.
        environ: Environment used for proxy detection (defaults to os.environ).

    Raises:
        ConfigurationError: If `cluster_service_cidr` is malformed.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        instance: InstanceInfo,
        windows: WindowsInstance,
        boot_config: BootConfig,
        cache: NodeConfigCache,
        *,
        cluster_service_cidr: str,
        version: str,
        namespace: str,
        public_key_hash: str,
        additional_labels: Optional[Dict[str, str]] = None,
        additional_annotations: Optional[Dict[str, str]] = None,
        tls_secret_name: str = DEFAULT_TLS_SECRET_NAME,
        default_profile: PollProfile = DEFAULT_PROFILE,
        quick_profile: PollProfile = QUICK_PROFILE,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.cluster_dns = get_dns(cluster_service_cidr)
        self.cluster = cluster
        self.instance = instance
        self.windows = windows
        self.boot_config = boot_config
        self.cache = cache
        self.cluster_service_cidr = cluster_service_cidr
        self.version = version
        self.namespace = namespace
        self.public_key_hash = public_key_hash
        self.additional_labels = dict(additional_labels or {})
        self.additional_annotations = dict(additional_annotations or {})
        self.tls_secret_name = tls_secret_name
        self.default_profile = default_profile
        self.quick_profile = quick_profile
        self.environ = environ
        self.outcomes: List[StepOutcome] = []

    @property
    def node(self) -> Optional[Node]:
        return self.instance.node

    @node.setter
    def node(self, value: Optional[Node]) -> None:
        self.instance.node = value

    @property
    def name(self) -> str:
        """The node name, or the instance address while no node is known."""
        return self.node.name if self.node is not None else self.windows.get_address()

    def _require_node(self) -> Node:
        if self.node is None:
            raise ConfigurationError(
                f"no node associated with instance {self.windows.get_address()}"
            )
        return self.node

    def sidecar_kubeconfig(self) -> Kubeconfig:
        """Kubeconfig of the configuration daemon's service account."""
        return Kubeconfig.generate(
            self.cache.credentials, self.cache.api_server_endpoint
        )

    async def _step(self, step: str, policy: StepPolicy, action: Awaitable[T]) -> Optional[T]:
        try:
            result = await action
        except Exception as exc:
            self.outcomes.append(StepOutcome(step=step, policy=policy, error=str(exc)))
            if policy == StepPolicy.REQUIRED:
                raise PhaseError(step, self.name, exc) from exc
            logger.warning("%s for %s failed, continuing: %s", step, self.name, exc)
            return None
        self.outcomes.append(StepOutcome(step=step, policy=policy))
        return result

    # node helpers

    async def set_node(self, quick: bool) -> Node:
        """
        Find the node reporting the instance's address among Windows nodes. Polls until
        exactly one node matches.

        Raises:
            PollTimeoutError: If no single node matched within the profile's timeout.
        """
        address = self.windows.get_address()
        profile = self.quick_profile if quick else self.default_profile

        async def _find() -> Optional[Node]:
            return find_by_address(address, await list_windows_nodes(self.cluster))

        self.node = await poll_until(_find, profile, f"node with address {address}")
        return self.node

    async def refresh_node(self) -> Node:
        node = await get_node(self.cluster, self._require_node().name)
        if node is None:
            raise ConfigurationError(f"node {self.name} no longer exists")
        self.node = node
        return node

    async def cordon(self) -> None:
        self.node = await set_unschedulable(self.cluster, self._require_node().name, True)

    async def uncordon(self) -> None:
        self.node = await set_unschedulable(self.cluster, self._require_node().name, False)

    async def drain(self) -> None:
        await self.cluster.drain(self._require_node().name)

    async def apply_labels_and_annotations(
        self,
        labels: Optional[Dict[str, str]],
        annotations: Optional[Dict[str, str]],
    ) -> None:
        patch = generate_add_patch(labels, annotations)
        manifest = await self.cluster.patch("node", self._require_node().name, patch)
        self.node = Node.from_manifest(manifest)

    async def remove_annotations(self, keys: List[str]) -> None:
        """Remove the given annotations; keys that are not set are skipped."""
        node = self._require_node()
        present = [k for k in keys if k in node.annotations]
        if not present:
            return
        manifest = await self.cluster.patch(
            "node", node.name, generate_remove_patch(annotations=present)
        )
        self.node = Node.from_manifest(manifest)

    async def _node_annotations(self) -> Optional[Dict[str, str]]:
        node = await get_node(self.cluster, self._require_node().name)
        if node is None:
            return None
        self.node = node
        return node.annotations

    async def wait_for_version_annotation(self) -> None:
        """
        Block until the configured-version annotation equals the desired-version annotation.

        Raises:
            ConfigurationError: If the node carries no desired-version annotation.
            PollTimeoutError: If the versions do not converge in time.
        """
        desired = self._require_node().annotations.get(DESIRED_VERSION_ANNOTATION)
        if desired is None:
            raise ConfigurationError(
                f"node {self.name} has no {DESIRED_VERSION_ANNOTATION} annotation"
            )
        await watch_for_value(
            self._node_annotations,
            VERSION_ANNOTATION,
            self.default_profile,
            expected=desired,
        )

    async def wait_for_reboot_cleared(self) -> None:
        await watch_for_value(
            self._node_annotations,
            REBOOT_ANNOTATION,
            self.default_profile,
            present=False,
        )

    # artifacts

    async def create_bootstrap_files(self) -> None:
        """Generate every bootstrap artifact, then push them to the instance."""
        artifacts = await generate_bootstrap_artifacts(
            self.cluster,
            self.boot_config,
            self.cache,
            cluster_service_cidr=self.cluster_service_cidr,
            namespace=self.namespace,
            tls_secret_name=self.tls_secret_name,
            environ=self.environ,
        )
        for path, contents in artifacts.files.items():
            directory, filename = split_path(path)
            await self.windows.ensure_file_content(contents, filename, directory)
        await self.windows.replace_dir(artifacts.registries, CONTAINERD_CONFIG_DIR)

    async def update_kubelet_client_ca(self, contents: bytes) -> None:
        """
        Push a rotated kubelet client CA bundle. The kubelet watches the file, so no
        restart is needed. Empty contents is a no-op.
        """
        if not contents:
            return
        _, filename = split_path(KUBELET_CLIENT_CA_PATH)
        await self.windows.ensure_file_content(contents, filename, K8S_DIR)

    # lifecycle operations

    async def configure(self) -> None:
        """
        Configure the instance as a worker node.

        Raises:
            PhaseError: If a required step fails.
        """
        if self.node is None:
            try:
                await self.set_node(quick=True)
            except PollTimeoutError:
                logger.debug("No existing node for %s", self.windows.get_address())
        if self.node is not None:
            # reconfiguration: keep workloads off until fully configured
            await self._step("Cordon", StepPolicy.ADVISORY, self.cordon())

        await self._step(
            "WriteBootstrapArtifacts", StepPolicy.REQUIRED, self.create_bootstrap_files()
        )
        await self._step(
            "Bootstrap",
            StepPolicy.REQUIRED,
            self.windows.bootstrap(
                self.version, self.namespace, self.sidecar_kubeconfig()
            ),
        )

        try:
            if self.node is None:
                await self._step(
                    "DiscoverNode", StepPolicy.REQUIRED, self.set_node(quick=False)
                )
            await self._step("Cordon", StepPolicy.ADVISORY, self.cordon())

            identity = {PUB_KEY_HASH_ANNOTATION: self.public_key_hash}
            identity.update(self.additional_annotations)
            await self._step(
                "ApplyIdentity",
                StepPolicy.REQUIRED,
                self.apply_labels_and_annotations(self.additional_labels, identity),
            )
            await self._step(
                "ConfigureSidecar",
                StepPolicy.REQUIRED,
                self.windows.configure_sidecar(
                    self.namespace, self.sidecar_kubeconfig()
                ),
            )
            await self._step(
                "AnnounceDesiredVersion",
                StepPolicy.REQUIRED,
                self.apply_labels_and_annotations(
                    None, {DESIRED_VERSION_ANNOTATION: self.version}
                ),
            )
            await self._step(
                "AwaitConfiguredVersion",
                StepPolicy.REQUIRED,
                self.wait_for_version_annotation(),
            )
            await self._step("Refresh", StepPolicy.REQUIRED, self.refresh_node())
            await self._step("Uncordon", StepPolicy.REQUIRED, self.uncordon())
            await self._step(
                "ClearUpgrading",
                StepPolicy.ADVISORY,
                self.remove_annotations([UPGRADING_ANNOTATION]),
            )
        except Exception:
            # leave the node NotReady rather than half configured
            await self._step(
                "Cleanup",
                StepPolicy.ADVISORY,
                self.windows.run_cleanup(self.namespace, self.sidecar_kubeconfig()),
            )
            raise

        logger.info(
            "Instance %s has been configured as a worker node, version %s",
            self.windows.get_address(),
            self._require_node().annotations.get(VERSION_ANNOTATION),
        )

    async def deconfigure(self) -> None:
        """
        Remove the node's workloads and everything installed on the instance. The Node
        object itself is left in place.

        Raises:
            PhaseError: If a required step fails, including when no node can be found.
        """
        if self.node is None:
            await self._step("DiscoverNode", StepPolicy.REQUIRED, self.set_node(quick=True))

        await self._step("Cordon", StepPolicy.REQUIRED, self.cordon())
        await self._step("Drain", StepPolicy.REQUIRED, self.drain())
        await self._step(
            "Cleanup",
            StepPolicy.REQUIRED,
            self.windows.run_cleanup(self.namespace, self.sidecar_kubeconfig()),
        )
        await self._step(
            "AwaitRebootCleared", StepPolicy.REQUIRED, self.wait_for_reboot_cleared()
        )
        await self._step(
            "RemoveFilesAndNetworks",
            StepPolicy.REQUIRED,
            self.windows.remove_files_and_networks(),
        )
        await self._step(
            "RemoveVersionAnnotation",
            StepPolicy.REQUIRED,
            self.remove_annotations([VERSION_ANNOTATION]),
        )
        logger.info("Instance %s has been deconfigured", self.name)

    async def safe_reboot(self) -> None:
        """
        Reboot the instance with its workloads drained. On failure the node is left
        cordoned.

        Raises:
            PhaseError: If a step fails.
        """
        if self.node is None:
            await self._step("DiscoverNode", StepPolicy.REQUIRED, self.set_node(quick=True))

        await self._step("Cordon", StepPolicy.REQUIRED, self.cordon())
        await self._step("Drain", StepPolicy.REQUIRED, self.drain())
        await self._step(
            "RebootAndReconnect", StepPolicy.REQUIRED, self.windows.reboot_and_reconnect()
        )
        await self._step(
            "RemoveRebootAnnotation",
            StepPolicy.REQUIRED,
            self._refresh_and_remove([REBOOT_ANNOTATION]),
        )
        await self._step("Uncordon", StepPolicy.REQUIRED, self.uncordon())
        logger.info("Instance %s has been rebooted", self.name)

    async def _refresh_and_remove(self, keys: List[str]) -> None:
        await self.refresh_node()
        await self.remove_annotations(keys)
