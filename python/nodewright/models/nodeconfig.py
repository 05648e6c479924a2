"""
nodewright/models/nodeconfig.py

Typed documents written to a Windows instance during bootstrap, and the credentials
they are built from:
  - Credentials: CA certificate and bearer token of a service account.
  - Kubeconfig: a single-cluster, single-user kubeconfig (JSON).
  - KubeletConfiguration: the kubelet config file (JSON), with Windows-specific defaults.
  - NodeConfigCache: state resolved once per process (API endpoint + daemon credentials).

Serialise documents with `to_json()`, which always emits the camelCase / dashed field
names the consumers expect.
"""

from __future__ import annotations

import base64
from typing import Dict, List

from pydantic import BaseModel, Field, field_serializer

KUBELET_CLIENT_CA_PATH = "C:\\k\\kubelet-ca.crt"


class Credentials(BaseModel):
    """A service account CA certificate and token."""

    ca_cert: bytes
    token: str

    class Config:
        frozen = True


class NodeConfigCache(BaseModel):
    """Process-wide state needed before any instance can be configured."""

    api_server_endpoint: str
    credentials: Credentials

    class Config:
        frozen = True


class _Document(BaseModel):
    class Config:
        populate_by_name = True

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class KubeconfigClusterSpec(_Document):
    server: str
    certificate_authority_data: bytes = Field(alias="certificate-authority-data")

    @field_serializer("certificate_authority_data")
    def _b64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class KubeconfigCluster(_Document):
    name: str
    cluster: KubeconfigClusterSpec


class KubeconfigUserSpec(_Document):
    token: str


class KubeconfigUser(_Document):
    name: str
    user: KubeconfigUserSpec


class KubeconfigContextSpec(_Document):
    cluster: str
    user: str


class KubeconfigContext(_Document):
    name: str
    context: KubeconfigContextSpec


class Kubeconfig(_Document):
    kind: str = "Config"
    api_version: str = Field(default="v1", alias="apiVersion")
    clusters: List[KubeconfigCluster]
    users: List[KubeconfigUser]
    contexts: List[KubeconfigContext]
    current_context: str = Field(alias="current-context")

    @classmethod
    def generate(cls, credentials: Credentials, api_server_url: str) -> "Kubeconfig":
        """
        Build the kubeconfig used by the kubelet (and the configuration daemon) to reach
        the API server: cluster "local", user and context "kubelet".
        """
        return cls(
            clusters=[
                KubeconfigCluster(
                    name="local",
                    cluster=KubeconfigClusterSpec(
                        server=api_server_url,
                        certificate_authority_data=credentials.ca_cert,
                    ),
                )
            ],
            users=[
                KubeconfigUser(
                    name="kubelet", user=KubeconfigUserSpec(token=credentials.token)
                )
            ],
            contexts=[
                KubeconfigContext(
                    name="kubelet",
                    context=KubeconfigContextSpec(cluster="local", user="kubelet"),
                )
            ],
            current_context="kubelet",
        )


class KubeletX509Authentication(_Document):
    client_ca_file: str = Field(default=KUBELET_CLIENT_CA_PATH, alias="clientCAFile")


class KubeletAnonymousAuthentication(_Document):
    enabled: bool = False


class KubeletAuthentication(_Document):
    x509: KubeletX509Authentication = Field(default_factory=KubeletX509Authentication)
    anonymous: KubeletAnonymousAuthentication = Field(
        default_factory=KubeletAnonymousAuthentication
    )


def _default_feature_gates() -> Dict[str, bool]:
    return {
        "LegacyNodeRoleBehavior": False,
        "NodeDisruptionExclusion": True,
        "RotateKubeletServerCertificate": True,
        "SCTPSupport": True,
        "ServiceNodeExclusion": True,
        "SupportPodPidsLimit": True,
    }


def _default_system_reserved() -> Dict[str, str]:
    return {"cpu": "500m", "ephemeral-storage": "1Gi", "memory": "1Gi"}


class KubeletConfiguration(_Document):
    """
    Kubelet configuration for Windows nodes. Numeric defaults follow the recommendations
    for Linux workers. `enforceNodeAllocatable` is always written, even when empty, so the
    kubelet does not fall back to its own default at service start.
    """

    kind: str = "KubeletConfiguration"
    api_version: str = Field(default="kubelet.config.k8s.io/v1beta1", alias="apiVersion")
    rotate_certificates: bool = Field(default=True, alias="rotateCertificates")
    server_tls_bootstrap: bool = Field(default=True, alias="serverTLSBootstrap")
    authentication: KubeletAuthentication = Field(default_factory=KubeletAuthentication)
    cluster_domain: str = Field(default="cluster.local", alias="clusterDomain")
    cluster_dns: List[str] = Field(alias="clusterDNS")
    cgroups_per_qos: bool = Field(default=False, alias="cgroupsPerQOS")
    runtime_request_timeout: str = Field(default="10m0s", alias="runtimeRequestTimeout")
    max_pods: int = Field(default=250, alias="maxPods")
    kube_api_qps: int = Field(default=50, alias="kubeAPIQPS")
    kube_api_burst: int = Field(default=100, alias="kubeAPIBurst")
    serialize_image_pulls: bool = Field(default=False, alias="serializeImagePulls")
    feature_gates: Dict[str, bool] = Field(
        default_factory=_default_feature_gates, alias="featureGates"
    )
    container_log_max_size: str = Field(default="50Mi", alias="containerLogMaxSize")
    system_reserved: Dict[str, str] = Field(
        default_factory=_default_system_reserved, alias="systemReserved"
    )
    enforce_node_allocatable: List[str] = Field(
        default_factory=list, alias="enforceNodeAllocatable"
    )


class BootFile(BaseModel):
    """A file declared in the boot specification; `contents` is a data URL."""

    path: str
    contents: str

    class Config:
        frozen = True
