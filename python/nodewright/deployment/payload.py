"""
nodewright/deployment/payload.py

Generates the bootstrap artifacts pushed to a Windows instance before its kubelet starts:

| artifact                  | instance path                       |
|---------------------------|-------------------------------------|
| bootstrap kubeconfig      | C:\\k\\bootstrap-kubeconfig           |
| kubelet configuration     | C:\\k\\kubelet.conf                   |
| cloud config (if any)     | C:\\k\\cloud.conf                     |
| kubelet client CA bundle  | C:\\k\\kubelet-ca.crt                 |
| trusted CA bundle (if any)| C:\\Temp\\ca-bundle.crt               |
| TLS certificate and key   | C:\\k\\tls\\tls.crt, C:\\k\\tls\\tls.key  |
| mirror configuration      | C:\\k\\containerd\\registries\\...      |

Everything is computed up front; nothing is written here.
"""

from __future__ import annotations

import base64
import logging
import ntpath
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from nodewright.deployment.interfaces import BootConfig, ClusterClient
from nodewright.deployment.windows import (
    BOOTSTRAP_KUBECONFIG_PATH,
    K8S_DIR,
    KUBELET_CONFIG_PATH,
    TLS_DIR,
    TRUSTED_CA_BUNDLE_PATH,
)
from nodewright.models.nodeconfig import (
    KUBELET_CLIENT_CA_PATH,
    Credentials,
    Kubeconfig,
    KubeletConfiguration,
    NodeConfigCache,
)
from nodewright.utils.certificates import (
    CA_BUNDLE_KEY,
    KUBE_APISERVER_OPERATOR_NAMESPACE,
    KUBELET_CLIENT_CA_CONFIGMAP,
    KUBELET_CLIENT_CA_SIGNER,
    PROXY_TRUSTED_CA_CONFIGMAP,
    get_cas_from_configmap,
    get_image_registry_ca_data,
    merge_ca_bundles,
)
from nodewright.utils.cluster import get_dns, is_proxy_enabled
from nodewright.utils.errors import ConfigurationError
from nodewright.utils.ignition import CLOUD_CONFIG_OPTION, CLOUD_CONFIG_PATH, decode_data_url
from nodewright.utils.registries import generate_config_files

logger = logging.getLogger(__name__)

MCO_NAMESPACE = "openshift-machine-config-operator"
MCO_BOOTSTRAP_SECRET = "node-bootstrapper-token"
SERVICE_ACCOUNT_ROOT_CA_KEY = "ca.crt"
SERVICE_ACCOUNT_TOKEN_KEY = "token"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


class BootstrapArtifacts(BaseModel):
    """
    Attributes:
        files: Absolute instance path -> contents, written one by one.
        registries: Path relative to the registries directory -> contents, published as
            a whole (the directory is replaced).
    """

    files: Dict[str, bytes] = Field(default_factory=dict)
    registries: Dict[str, bytes] = Field(default_factory=dict)


def _secret_field(secret: Dict[str, Any], key: str) -> bytes:
    data = secret.get("data") or {}
    if key not in data:
        meta = secret.get("metadata") or {}
        raise ConfigurationError(
            f"unable to find {key} in secret {meta.get('namespace', '')}/{meta.get('name', '')}"
        )
    return base64.b64decode(data[key])


async def _get_secret(
    cluster: ClusterClient, namespace: str, name: str
) -> Dict[str, Any]:
    secret = await cluster.get("secret", name, namespace=namespace)
    if secret is None:
        raise ConfigurationError(f"secret {namespace}/{name} not found")
    return secret


async def create_bootstrap_kubeconfig(
    cluster: ClusterClient, api_server_endpoint: str
) -> bytes:
    """
    Kubeconfig the kubelet uses to register before it has its own client certificate,
    built from the cluster's node bootstrapper token.

    Raises:
        ConfigurationError: If the secret or one of its fields is missing.
    """
    secret = await _get_secret(cluster, MCO_NAMESPACE, MCO_BOOTSTRAP_SECRET)
    credentials = Credentials(
        ca_cert=_secret_field(secret, SERVICE_ACCOUNT_ROOT_CA_KEY),
        token=_secret_field(secret, SERVICE_ACCOUNT_TOKEN_KEY).decode("utf-8"),
    )
    return Kubeconfig.generate(credentials, api_server_endpoint).to_json().encode("utf-8")


def create_kubelet_conf(cluster_service_cidr: str) -> bytes:
    config = KubeletConfiguration(cluster_dns=[get_dns(cluster_service_cidr)])
    return config.to_json().encode("utf-8")


async def create_files_from_boot_config(boot_config: BootConfig) -> Dict[str, bytes]:
    """
    Files carried over from the worker boot specification. Only the cloud provider
    config applies, and only when the kubelet is started with one.

    Raises:
        ConfigurationError: If a required file has no contents.
    """
    args = await boot_config.get_service_args()
    if CLOUD_CONFIG_OPTION not in args:
        return {}

    files: Dict[str, bytes] = {}
    for boot_file in await boot_config.get_files():
        if boot_file.path != CLOUD_CONFIG_PATH:
            continue
        if not boot_file.contents:
            raise ConfigurationError(f"could not process {boot_file.path}: File is empty")
        filename = boot_file.path.rsplit("/", 1)[-1]
        files[ntpath.join(K8S_DIR, filename)] = decode_data_url(boot_file.contents)
    return files


async def create_kubelet_client_ca(
    cluster: ClusterClient, boot_config: BootConfig
) -> bytes:
    """
    The kubelet client CA bundle: the boot trust anchors, with the kubelet signer
    replaced by its current rotation when the rotated ConfigMap exists.
    """
    initial = await boot_config.get_trust_anchor_data()
    configmap = await cluster.get(
        "configmap",
        KUBELET_CLIENT_CA_CONFIGMAP,
        namespace=KUBE_APISERVER_OPERATOR_NAMESPACE,
    )
    current: Optional[bytes] = None
    if configmap is not None:
        current = get_cas_from_configmap(configmap, CA_BUNDLE_KEY)
    return merge_ca_bundles(initial, current, KUBELET_CLIENT_CA_SIGNER)


async def create_trusted_ca_bundle(
    cluster: ClusterClient,
    namespace: str,
    environ: Optional[Mapping[str, str]] = None,
) -> bytes:
    """
    CAs trusted for outbound connections: image registry CAs plus, when a cluster-wide
    proxy is configured, the proxy's trusted CA bundle.
    """
    bundle = await get_image_registry_ca_data(cluster)
    if is_proxy_enabled(environ):
        configmap = await cluster.get(
            "configmap", PROXY_TRUSTED_CA_CONFIGMAP, namespace=namespace
        )
        if configmap is None:
            raise ConfigurationError(
                f"configmap {namespace}/{PROXY_TRUSTED_CA_CONFIGMAP} not found"
            )
        bundle += get_cas_from_configmap(configmap, CA_BUNDLE_KEY)
    return bundle


async def create_tls_files(
    cluster: ClusterClient, namespace: str, secret_name: str
) -> Dict[str, bytes]:
    secret = await _get_secret(cluster, namespace, secret_name)
    return {
        ntpath.join(TLS_DIR, TLS_CERT_KEY): _secret_field(secret, TLS_CERT_KEY),
        ntpath.join(TLS_DIR, TLS_PRIVATE_KEY_KEY): _secret_field(
            secret, TLS_PRIVATE_KEY_KEY
        ),
    }


async def generate_bootstrap_artifacts(
    cluster: ClusterClient,
    boot_config: BootConfig,
    cache: NodeConfigCache,
    *,
    cluster_service_cidr: str,
    namespace: str,
    tls_secret_name: str,
    environ: Optional[Mapping[str, str]] = None,
) -> BootstrapArtifacts:
    """
    Compute every bootstrap artifact for one instance.

    Raises:
        ConfigurationError: If a required cluster object or field is missing.
    """
    files = await create_files_from_boot_config(boot_config)
    files[BOOTSTRAP_KUBECONFIG_PATH] = await create_bootstrap_kubeconfig(
        cluster, cache.api_server_endpoint
    )
    files[KUBELET_CONFIG_PATH] = create_kubelet_conf(cluster_service_cidr)
    files[KUBELET_CLIENT_CA_PATH] = await create_kubelet_client_ca(cluster, boot_config)

    trusted_ca = await create_trusted_ca_bundle(cluster, namespace, environ)
    if trusted_ca:
        files[TRUSTED_CA_BUNDLE_PATH] = trusted_ca

    files.update(await create_tls_files(cluster, namespace, tls_secret_name))

    registries = await generate_config_files(cluster)
    logger.debug(
        "Generated %d bootstrap files and %d mirror files", len(files), len(registries)
    )
    return BootstrapArtifacts(files=files, registries=registries)
