"""
tests/test_cluster.py

Service network and proxy helpers.
"""

from __future__ import annotations

import pytest

from nodewright.utils.cluster import get_dns, get_proxy_vars, is_proxy_enabled, validate_cidr
from nodewright.utils.errors import ConfigurationError


@pytest.mark.parametrize(
    "cidr,expected",
    [
        ("172.30.0.0/16", "172.30.0.10"),
        ("10.96.0.0/12", "10.96.0.10"),
        ("fd02::/112", "fd02::a"),
    ],
)
def test_get_dns(cidr: str, expected: str) -> None:
    assert get_dns(cidr) == expected


@pytest.mark.parametrize("cidr", ["", "172.30.0.0", "not-a-cidr/16", "172.30.0.0/40"])
def test_invalid_cidr(cidr: str) -> None:
    with pytest.raises(ConfigurationError):
        validate_cidr(cidr)


def test_cidr_too_small_for_dns() -> None:
    with pytest.raises(ConfigurationError):
        get_dns("172.30.0.0/29")


def test_proxy_vars() -> None:
    env = {
        "HTTP_PROXY": "http://proxy:3128",
        "NO_PROXY": ".cluster.local,.svc,10.0.0.0/16",
        "HOME": "/root",
    }

    assert get_proxy_vars(env) == {
        "HTTP_PROXY": "http://proxy:3128",
        "NO_PROXY": ".cluster.local;.svc;10.0.0.0/16",
    }
    assert is_proxy_enabled(env)
    assert not is_proxy_enabled({"HOME": "/root"})
