"""
nodewright/utils/certificates.py

CA trust-bundle handling:
  - merge_ca_bundles: replace the certificates of one signer in a PEM bundle with a
    rotated bundle, keeping every other certificate in place.
  - get_cas_from_configmap / merge_ca_configmaps: the same, starting from ConfigMaps.
  - get_image_registry_ca_data: the additional CAs configured for image registries.

The merge is a pure function over bytes; only get_image_registry_ca_data talks to the
cluster.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from cryptography import x509
from pydantic import BaseModel

from nodewright.utils.errors import ConfigurationError

if TYPE_CHECKING:
    from nodewright.deployment.interfaces import ClusterClient

CA_BUNDLE_KEY = "ca-bundle.crt"

KUBE_APISERVER_OPERATOR_NAMESPACE = "openshift-kube-apiserver-operator"
KUBELET_CLIENT_CA_CONFIGMAP = "kube-apiserver-to-kubelet-client-ca"
KUBELET_CLIENT_CA_SIGNER = "kube-apiserver-to-kubelet-signer"

CONFIG_NAMESPACE = "openshift-config"
PROXY_TRUSTED_CA_CONFIGMAP = "trusted-ca"

_PEM_BLOCK_RE = re.compile(
    rb"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n"
    rb"(?P<body>.*?)"
    rb"-----END (?P=label)-----",
    re.DOTALL,
)
_PEM_HEADER_RE = re.compile(rb"^[A-Za-z0-9-]+:")


class PemBlock(BaseModel):
    """A single decoded PEM block: its label (e.g. CERTIFICATE) and DER bytes."""

    label: str
    der: bytes

    class Config:
        frozen = True

    def encode(self) -> bytes:
        """Canonical PEM encoding: 64-column base64 body and '\\n' line endings."""
        b64 = base64.b64encode(self.der)
        lines = [b64[i : i + 64] for i in range(0, len(b64), 64)]
        label = self.label.encode("ascii")
        return (
            b"-----BEGIN "
            + label
            + b"-----\n"
            + b"".join(line + b"\n" for line in lines)
            + b"-----END "
            + label
            + b"-----\n"
        )


def decode_pem_blocks(bundle: bytes) -> List[PemBlock]:
    """
    Split a PEM bundle into blocks, in order. Text outside of blocks is ignored, as are
    RFC 1421 headers (e.g. "Proc-Type:") inside a block.

    Raises:
        ConfigurationError: If a block body is not valid base64.
    """

    def _decode(match: "re.Match[bytes]") -> PemBlock:
        label = match.group("label").decode("ascii")
        body_lines = [
            line.strip()
            for line in match.group("body").splitlines()
            if line.strip() and not _PEM_HEADER_RE.match(line.strip())
        ]
        try:
            der = base64.b64decode(b"".join(body_lines), validate=True)
        except binascii.Error as exc:
            raise ConfigurationError(
                f"unable to decode PEM block of type {label}: {exc}"
            ) from exc
        return PemBlock(label=label, der=der)

    return [_decode(m) for m in _PEM_BLOCK_RE.finditer(bundle)]


def _parse_certificate(block: PemBlock) -> Optional[x509.Certificate]:
    try:
        return x509.load_der_x509_certificate(block.der)
    except ValueError:
        return None


def merge_ca_bundles(
    initial_bundle: Optional[bytes],
    new_bundle: Optional[bytes],
    subject: str,
) -> bytes:
    """
    Merge a rotated CA bundle into an existing one.

    Each PEM block of `initial_bundle` is kept in order, except that:
      - blocks that do not parse as X.509 certificates are dropped;
      - a certificate whose subject (RFC 4514 form) contains `subject` is replaced by the
        full contents of `new_bundle`. If several certificates match, `new_bundle` is
        emitted once per match, so callers must pass a specific enough `subject`.
    Kept certificates are re-encoded canonically.

    Args:
        initial_bundle: The bundle currently in use.
        new_bundle: The rotated bundle, or None when there is nothing to merge.
        subject: Substring identifying the signer being rotated. Must not be empty.

    Returns:
        The merged bundle, or `initial_bundle` untouched when `new_bundle` is None.

    Raises:
        ConfigurationError: If `subject` is empty, `initial_bundle` is missing or holds an
            undecodable block, or `new_bundle` is given but empty.
    """
    if not subject:
        raise ConfigurationError("subject cannot be empty")
    if initial_bundle is None:
        raise ConfigurationError("initial CA bundle cannot be empty")
    if new_bundle is None:
        return initial_bundle
    if len(new_bundle) == 0:
        raise ConfigurationError("CA bundle cannot be empty")

    merged = bytearray()
    for block in decode_pem_blocks(initial_bundle):
        cert = _parse_certificate(block)
        if cert is None:
            continue
        if subject in cert.subject.rfc4514_string():
            merged += new_bundle
        else:
            merged += block.encode()
    return bytes(merged)


def get_cas_from_configmap(configmap: Dict[str, Any], key: str) -> bytes:
    """
    Read CA data from a ConfigMap manifest. `binaryData` wins over `data`; a `data`
    value is base64-decoded when it decodes cleanly and used verbatim otherwise.

    Raises:
        ConfigurationError: If the ConfigMap is missing, `key` is empty, or the key is absent.
    """
    if configmap is None:
        raise ConfigurationError("configMap cannot be nil")
    if not key:
        raise ConfigurationError("key cannot be empty")

    binary_data = configmap.get("binaryData") or {}
    data = configmap.get("data") or {}
    if key in binary_data:
        # binaryData is base64 on the wire
        return base64.b64decode(binary_data[key])
    if key in data:
        value = data[key]
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error:
            return value.encode("utf-8")

    meta = configmap.get("metadata", {})
    raise ConfigurationError(
        f"{key} not found in {meta.get('namespace', '')}/{meta.get('name', '')}"
    )


def merge_ca_configmaps(
    initial_configmap: Dict[str, Any],
    current_configmap: Optional[Dict[str, Any]],
    subject: str,
) -> bytes:
    """
    ConfigMap-level wrapper around merge_ca_bundles, using the CA_BUNDLE_KEY entry of
    each ConfigMap. A missing `current_configmap` returns the initial bundle.
    """
    if not subject:
        raise ConfigurationError("subject cannot be empty")
    initial = get_cas_from_configmap(initial_configmap, CA_BUNDLE_KEY)
    if current_configmap is None:
        return initial
    current = get_cas_from_configmap(current_configmap, CA_BUNDLE_KEY)
    return merge_ca_bundles(initial, current, subject)


async def get_image_registry_ca_data(cluster: "ClusterClient") -> bytes:
    """
    Collect the additional trusted CAs configured for image registries.

    The cluster image config names a ConfigMap in openshift-config; every value in it is
    a CA bundle for one registry. Values are concatenated in key order.

    Returns:
        The concatenated bundles, or b"" when no additional CA is configured.
    """
    image_config = await cluster.get("images.config.openshift.io", "cluster")
    if image_config is None:
        return b""
    name = (
        image_config.get("spec", {}).get("additionalTrustedCA", {}).get("name", "")
    )
    if not name:
        return b""

    configmap = await cluster.get("configmap", name, namespace=CONFIG_NAMESPACE)
    if configmap is None:
        raise ConfigurationError(
            f"image registry CA configmap {CONFIG_NAMESPACE}/{name} not found"
        )
    data = configmap.get("data") or {}
    return b"".join(data[key].encode("utf-8") for key in sorted(data))
