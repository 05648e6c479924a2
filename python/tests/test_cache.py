"""
tests/test_cache.py
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import API_SERVER, NAMESPACE, FakeCluster
from nodewright.deployment.cache import (
    INFRASTRUCTURE_KIND,
    WICD_TOKEN_SECRET_PREFIX,
    initialize_node_config_cache,
)
from nodewright.utils.errors import CacheInitError


def _infrastructure(cluster: FakeCluster, endpoint: str = API_SERVER) -> None:
    cluster.add(
        INFRASTRUCTURE_KIND,
        {"metadata": {"name": "cluster"}, "status": {"apiServerInternalURI": endpoint}},
    )


def test_initialize_cache() -> None:
    cluster = FakeCluster()
    _infrastructure(cluster)
    cluster.add_secret(
        NAMESPACE, WICD_TOKEN_SECRET_PREFIX + "x7k2p", {"ca.crt": b"ca", "token": b"tok"}
    )
    cluster.add_secret(NAMESPACE, "unrelated", {"token": b"other"})

    cache = asyncio.run(initialize_node_config_cache(cluster, NAMESPACE))

    assert cache.api_server_endpoint == API_SERVER
    assert cache.credentials.ca_cert == b"ca"
    assert cache.credentials.token == "tok"


def test_missing_endpoint() -> None:
    cluster = FakeCluster()
    _infrastructure(cluster, endpoint="")

    with pytest.raises(CacheInitError, match="endpoint"):
        asyncio.run(initialize_node_config_cache(cluster, NAMESPACE))


def test_ambiguous_token_secrets() -> None:
    cluster = FakeCluster()
    _infrastructure(cluster)
    for suffix in ("a", "b"):
        cluster.add_secret(
            NAMESPACE, WICD_TOKEN_SECRET_PREFIX + suffix, {"ca.crt": b"ca", "token": b"t"}
        )

    with pytest.raises(CacheInitError, match="found 2"):
        asyncio.run(initialize_node_config_cache(cluster, NAMESPACE))


def test_incomplete_token_secret() -> None:
    cluster = FakeCluster()
    _infrastructure(cluster)
    cluster.add_secret(NAMESPACE, WICD_TOKEN_SECRET_PREFIX + "a", {"token": b"t"})

    with pytest.raises(CacheInitError):
        asyncio.run(initialize_node_config_cache(cluster, NAMESPACE))


def test_unexpected_errors_are_wrapped() -> None:
    class BrokenCluster(FakeCluster):
        async def get(self, kind, name, namespace=None):
            raise ConnectionError("connection refused")

    with pytest.raises(CacheInitError, match="connection refused"):
        asyncio.run(initialize_node_config_cache(BrokenCluster(), NAMESPACE))
