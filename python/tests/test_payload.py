"""
tests/test_payload.py

Bootstrap artifact generation.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from fakes import (
    API_SERVER,
    NAMESPACE,
    FakeBootConfig,
    FakeCluster,
    b64,
    make_ca_pem,
    make_cache,
    seed_bootstrap_objects,
)
from nodewright.deployment.payload import (
    create_bootstrap_kubeconfig,
    create_files_from_boot_config,
    create_kubelet_client_ca,
    create_kubelet_conf,
    create_trusted_ca_bundle,
    generate_bootstrap_artifacts,
)
from nodewright.models.nodeconfig import BootFile
from nodewright.utils.certificates import KUBELET_CLIENT_CA_SIGNER
from nodewright.utils.errors import ConfigurationError
from nodewright.utils.ignition import CLOUD_CONFIG_PATH
from nodewright.utils.registries import IDMS_KIND


def test_kubelet_conf() -> None:
    conf = json.loads(create_kubelet_conf("172.30.0.0/16"))

    assert conf["clusterDNS"] == ["172.30.0.10"]
    assert conf["enforceNodeAllocatable"] == []
    assert conf["kind"] == "KubeletConfiguration"
    assert conf["authentication"]["x509"]["clientCAFile"] == "C:\\k\\kubelet-ca.crt"
    assert conf["authentication"]["anonymous"]["enabled"] is False


def test_bootstrap_kubeconfig() -> None:
    cluster = FakeCluster()
    seed_bootstrap_objects(cluster)

    doc = json.loads(asyncio.run(create_bootstrap_kubeconfig(cluster, API_SERVER)))

    assert doc["current-context"] == "kubelet"
    assert doc["apiVersion"] == "v1"
    assert doc["clusters"][0]["cluster"]["server"] == API_SERVER
    assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == b64(b"bootstrap-ca")
    assert doc["users"][0] == {"name": "kubelet", "user": {"token": "bootstrap-token"}}


def test_bootstrap_kubeconfig_missing_secret() -> None:
    with pytest.raises(ConfigurationError, match="node-bootstrapper-token"):
        asyncio.run(create_bootstrap_kubeconfig(FakeCluster(), API_SERVER))


def test_cloud_config_only_when_kubelet_uses_it() -> None:
    files = [BootFile(path=CLOUD_CONFIG_PATH, contents="data:,%5BGlobal%5D")]

    without = FakeBootConfig(service_args={"cloud-provider": "external"}, files=files)
    assert asyncio.run(create_files_from_boot_config(without)) == {}

    with_config = FakeBootConfig(
        service_args={"cloud-config": CLOUD_CONFIG_PATH}, files=files
    )
    assert asyncio.run(create_files_from_boot_config(with_config)) == {
        "C:\\k\\cloud.conf": b"[Global]"
    }

    empty = FakeBootConfig(
        service_args={"cloud-config": CLOUD_CONFIG_PATH},
        files=[BootFile(path=CLOUD_CONFIG_PATH, contents="")],
    )
    with pytest.raises(ConfigurationError):
        asyncio.run(create_files_from_boot_config(empty))


def test_kubelet_client_ca_merges_rotated_signer() -> None:
    root = make_ca_pem("root-ca")
    rotated = make_ca_pem(KUBELET_CLIENT_CA_SIGNER)
    cluster = FakeCluster()
    boot = FakeBootConfig(trust_anchors=root + make_ca_pem(KUBELET_CLIENT_CA_SIGNER))

    cluster.add(
        "configmap",
        {
            "metadata": {
                "name": "kube-apiserver-to-kubelet-client-ca",
                "namespace": "openshift-kube-apiserver-operator",
            },
            "data": {"ca-bundle.crt": rotated.decode()},
        },
    )

    assert asyncio.run(create_kubelet_client_ca(cluster, boot)) == root + rotated


def test_trusted_ca_bundle_with_proxy() -> None:
    cluster = FakeCluster()
    assert asyncio.run(create_trusted_ca_bundle(cluster, NAMESPACE, {})) == b""

    proxy_env = {"HTTPS_PROXY": "http://proxy:3128"}
    with pytest.raises(ConfigurationError):
        asyncio.run(create_trusted_ca_bundle(cluster, NAMESPACE, proxy_env))

    cluster.add(
        "configmap",
        {
            "metadata": {"name": "trusted-ca", "namespace": NAMESPACE},
            "data": {"ca-bundle.crt": "PROXY CA\n"},
        },
    )
    assert asyncio.run(create_trusted_ca_bundle(cluster, NAMESPACE, proxy_env)) == b"PROXY CA\n"


def test_generate_bootstrap_artifacts() -> None:
    cluster = FakeCluster()
    seed_bootstrap_objects(cluster)
    cluster.add(
        IDMS_KIND,
        {
            "metadata": {"name": "digest"},
            "spec": {
                "imageDigestMirrors": [
                    {"source": "quay.io/org/app", "mirrors": ["mirror.example.com/app"]}
                ]
            },
        },
    )

    artifacts = asyncio.run(
        generate_bootstrap_artifacts(
            cluster,
            FakeBootConfig(trust_anchors=b"anchors"),
            make_cache(),
            cluster_service_cidr="172.30.0.0/16",
            namespace=NAMESPACE,
            tls_secret_name="windows-node-tls",
            environ={},
        )
    )

    assert sorted(artifacts.files) == sorted(
        [
            "C:\\k\\bootstrap-kubeconfig",
            "C:\\k\\kubelet.conf",
            "C:\\k\\kubelet-ca.crt",
            "C:\\k\\tls\\tls.crt",
            "C:\\k\\tls\\tls.key",
        ]
    )
    assert list(artifacts.registries) == ["quay.io/hosts.toml"]
    assert artifacts.registries["quay.io/hosts.toml"].startswith(
        b'server = "https://quay.io"\r\n'
    )
    assert artifacts.files["C:\\k\\tls\\tls.key"] == b"node-key"
