#!/usr/bin/env python3
"""
nodewright/cli/node.py

CLI for running one lifecycle operation against one Windows instance.
Example usage:

    NODEWRIGHT_VERSION=10.17.0 nodewright-node configure \
       --address 10.0.1.15 \
       --private-key-path /etc/private-key/private-key.pem \
       --cluster-service-cidr 172.30.0.0/16

Cluster and version settings come from NODEWRIGHT_* environment variables (see
NodeWrightSettings); the instance is described on the command line.
"""

import argparse
import asyncio
import logging
import sys
from typing import Dict, List

import aiofiles

from nodewright.deployment.cache import initialize_node_config_cache
from nodewright.deployment.nodeconfig import NodeConfig
from nodewright.deployment.windows import SSHWindowsInstance
from nodewright.models.instance import InstanceInfo
from nodewright.models.settings import NodeWrightSettings
from nodewright.models.ssh import SSHConfig
from nodewright.utils.cluster import is_proxy_enabled
from nodewright.utils.ignition import IgnitionBootConfig
from nodewright.utils.k8s import KubectlClient
from nodewright.utils.ssh import public_key_hash

VSPHERE_PLATFORM = "vsphere"


def _parse_pairs(pairs: List[str]) -> Dict[str, str]:
    """Turn ["k=v", ...] into a dict."""
    result: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {pair!r}")
        result[key] = value
    return result


async def _build_node_config(args: argparse.Namespace) -> NodeConfig:
    settings = NodeWrightSettings()
    cluster = KubectlClient(kubectl_path=settings.kubectl_path)

    async with aiofiles.open(args.private_key_path, "r", encoding="utf-8") as f:
        private_key = await f.read()

    instance = InstanceInfo(
        address=args.address,
        ipv4_address=args.ipv4_address or args.address,
        username=args.username,
    )
    ssh_config = SSHConfig(
        user=args.username,
        hostname=args.address,
        port=args.port,
        private_key=private_key,
    )
    windows = SSHWindowsInstance(
        instance,
        ssh_config,
        ca_bundle_configured=is_proxy_enabled(),
        reboot_profile=settings.quick_profile(),
    )

    cache = await initialize_node_config_cache(cluster, settings.namespace)
    boot_config = await IgnitionBootConfig.load(
        cluster, vsphere_in_tree=settings.platform_type.lower() == VSPHERE_PLATFORM
    )

    return NodeConfig(
        cluster,
        instance,
        windows,
        boot_config,
        cache,
        cluster_service_cidr=args.cluster_service_cidr,
        version=settings.version,
        namespace=settings.namespace,
        public_key_hash=public_key_hash(private_key),
        additional_labels=_parse_pairs(args.label),
        additional_annotations=_parse_pairs(args.annotation),
        tls_secret_name=settings.tls_secret_name,
        default_profile=settings.default_profile(),
        quick_profile=settings.quick_profile(),
    )


async def _run_configure(args: argparse.Namespace) -> None:
    nc = await _build_node_config(args)
    await nc.configure()


async def _run_deconfigure(args: argparse.Namespace) -> None:
    nc = await _build_node_config(args)
    await nc.deconfigure()


async def _run_reboot(args: argparse.Namespace) -> None:
    nc = await _build_node_config(args)
    await nc.safe_reboot()


def _add_instance_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--address", required=True, help="DNS name or IP used to reach the instance."
    )
    parser.add_argument(
        "--ipv4-address",
        default=None,
        help="IPv4 address the node reports (default: --address).",
    )
    parser.add_argument(
        "--username", default="Administrator", help="SSH user (default: Administrator)."
    )
    parser.add_argument("--port", type=int, default=22, help="SSH port (default: 22).")
    parser.add_argument(
        "--private-key-path",
        required=True,
        help="Path to the SSH private key used for every instance.",
    )
    parser.add_argument(
        "--cluster-service-cidr",
        required=True,
        help="Cluster service network, e.g. 172.30.0.0/16.",
    )
    parser.add_argument(
        "--label",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra node label (repeatable).",
    )
    parser.add_argument(
        "--annotation",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra node annotation (repeatable).",
    )


def main() -> None:
    """
    Entry point for the 'nodewright-node' CLI.
    Subcommands:
      - configure: make the instance a worker node
      - deconfigure: remove everything installed on the instance
      - reboot: drain and reboot the instance
    """
    parser = argparse.ArgumentParser(
        prog="nodewright-node",
        description="Configure, deconfigure or safely reboot a Windows worker instance.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, handler, help_text in (
        ("configure", _run_configure, "Configure the instance as a worker node."),
        ("deconfigure", _run_deconfigure, "Deconfigure the instance."),
        ("reboot", _run_reboot, "Cordon, drain and reboot the instance."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        _add_instance_args(sub)
        sub.set_defaults(func=handler)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"nodewright-node {args.command} error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
