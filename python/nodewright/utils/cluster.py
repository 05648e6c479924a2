"""
nodewright/utils/cluster.py

Cluster-wide network and proxy helpers:
  - validate_cidr / get_dns: service network CIDR checks and the cluster DNS address.
  - get_proxy_vars / is_proxy_enabled: the cluster-wide egress proxy, as injected into
    this process's environment.
"""

from __future__ import annotations

import ipaddress
import os
from typing import Dict, Mapping, Optional, Union

from nodewright.utils.errors import ConfigurationError

SUPPORTED_PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY")

# upstream Kubernetes convention: cluster DNS is the 10th address of the service network
CLUSTER_DNS_HOST_INDEX = 10


def validate_cidr(cidr: str) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
    """
    Parse a CIDR such as "172.30.0.0/16". Host bits may be set.

    Raises:
        ConfigurationError: If `cidr` is empty or malformed.
    """
    if not cidr or "/" not in cidr:
        raise ConfigurationError(f"received invalid CIDR value {cidr!r}")
    try:
        return ipaddress.ip_network(cidr, strict=False)
    except ValueError as exc:
        raise ConfigurationError(f"received invalid CIDR value {cidr!r}: {exc}") from exc


def get_dns(cidr: str) -> str:
    """
    Return the cluster DNS address for a service network, e.g. 172.30.0.0/16 -> 172.30.0.10.

    Raises:
        ConfigurationError: If `cidr` is malformed or too small to hold the address.
    """
    network = validate_cidr(cidr)
    if network.num_addresses <= CLUSTER_DNS_HOST_INDEX:
        raise ConfigurationError(
            f"CIDR {cidr} is too small to hold the cluster DNS address"
        )
    return str(network.network_address + CLUSTER_DNS_HOST_INDEX)


def get_proxy_vars(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Return the proxy variables set in the environment. Host lists are separated by
    semicolons on Windows, so commas are replaced.
    """
    env = os.environ if environ is None else environ
    return {
        var: env[var].replace(",", ";") for var in SUPPORTED_PROXY_VARS if var in env
    }


def is_proxy_enabled(environ: Optional[Mapping[str, str]] = None) -> bool:
    return len(get_proxy_vars(environ)) > 0
