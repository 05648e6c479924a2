"""
nodewright/deployment/cache.py

One-time startup resolution of the state every NodeConfig needs: the internal API server
endpoint and the configuration daemon's service account credentials.

initialize_node_config_cache either returns a complete NodeConfigCache or raises
CacheInitError; there is no partially populated state to fall back on.
"""

from __future__ import annotations

import base64
import logging

from nodewright.deployment.interfaces import ClusterClient
from nodewright.models.nodeconfig import Credentials, NodeConfigCache
from nodewright.utils.errors import CacheInitError

logger = logging.getLogger(__name__)

INFRASTRUCTURE_KIND = "infrastructures.config.openshift.io"
INFRASTRUCTURE_NAME = "cluster"
WICD_TOKEN_SECRET_PREFIX = "windows-instance-config-daemon-token-"


async def get_api_server_endpoint(cluster: ClusterClient) -> str:
    infra = await cluster.get(INFRASTRUCTURE_KIND, INFRASTRUCTURE_NAME)
    if infra is None:
        raise CacheInitError(f"infrastructure {INFRASTRUCTURE_NAME} not found")
    endpoint = infra.get("status", {}).get("apiServerInternalURI", "")
    if not endpoint:
        raise CacheInitError("can not get the api server internal endpoint")
    return endpoint


async def get_daemon_credentials(cluster: ClusterClient, namespace: str) -> Credentials:
    """
    Read the configuration daemon's token secret. Exactly one secret named with the
    daemon token prefix must exist in `namespace`.
    """
    secrets = await cluster.list("secret", namespace=namespace)
    matches = [
        s
        for s in secrets
        if s.get("metadata", {}).get("name", "").startswith(WICD_TOKEN_SECRET_PREFIX)
    ]
    if len(matches) != 1:
        raise CacheInitError(
            f"expected exactly one {WICD_TOKEN_SECRET_PREFIX}* secret in {namespace}, "
            f"found {len(matches)}"
        )

    data = matches[0].get("data") or {}
    if "ca.crt" not in data or "token" not in data:
        raise CacheInitError(
            f"secret {namespace}/{matches[0]['metadata']['name']} is missing ca.crt or token"
        )
    return Credentials(
        ca_cert=base64.b64decode(data["ca.crt"]),
        token=base64.b64decode(data["token"]).decode("utf-8"),
    )


async def initialize_node_config_cache(
    cluster: ClusterClient, namespace: str
) -> NodeConfigCache:
    """
    Resolve the process-wide NodeConfigCache.

    Raises:
        CacheInitError: If any piece cannot be resolved.
    """
    try:
        endpoint = await get_api_server_endpoint(cluster)
        credentials = await get_daemon_credentials(cluster, namespace)
    except CacheInitError:
        raise
    except Exception as exc:
        raise CacheInitError(f"unable to initialize node config cache: {exc}") from exc

    logger.info("Node config cache initialized, API server %s", endpoint)
    return NodeConfigCache(api_server_endpoint=endpoint, credentials=credentials)
