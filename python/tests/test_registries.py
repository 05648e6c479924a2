"""
tests/test_registries.py

Mirror set merging and hosts.toml rendering.
"""

from __future__ import annotations

import asyncio
import base64
import json

import pytest

from fakes import FakeCluster
from nodewright.models.registries import (
    AuthEntry,
    Mirror,
    MirrorDeclaration,
    MirrorSet,
    MirrorSourcePolicy,
    extract_mirror_url,
    extract_registry_hostname,
)
from nodewright.utils.errors import ConfigurationError
from nodewright.utils.registries import (
    IDMS_KIND,
    ITMS_KIND,
    build_config,
    generate_config_files,
    merge_mirror_sets,
    merge_mirrors,
    parse_auths,
)

UBI = "registry.access.redhat.com/ubi9/ubi-minimal"
RELEASE = "quay.io/openshift-release-dev/ocp-release"

ALLOW = MirrorSourcePolicy.ALLOW
NEVER = MirrorSourcePolicy.NEVER


def m(host: str, resolve_tags: bool = False) -> Mirror:
    return Mirror(host=host, resolve_tags=resolve_tags)


@pytest.mark.parametrize(
    "mirrors,policy,expected",
    [
        (
            [m("example.io/example/ubi-minimal")],
            ALLOW,
            f'server = "https://{UBI}"\r\n\r\n'
            '[host."https://example.io/example/ubi-minimal"]\r\n'
            '  capabilities = ["pull"]\r\n',
        ),
        (
            [m("example.io/example/ubi-minimal", True)],
            ALLOW,
            f'server = "https://{UBI}"\r\n\r\n'
            '[host."https://example.io/example/ubi-minimal"]\r\n'
            '  capabilities = ["pull", "resolve"]\r\n',
        ),
        (
            [m("example.io/example/ubi-minimal")],
            NEVER,
            'server = "https://example.io/example/ubi-minimal"\r\n\r\n'
            '[host."https://example.io/example/ubi-minimal"]\r\n'
            '  capabilities = ["pull"]\r\n',
        ),
        (
            [
                m("example.io/example/ubi-minimal"),
                m("mirror.example.com/redhat"),
                m("mirror.example.net/image", True),
            ],
            NEVER,
            'server = "https://example.io/example/ubi-minimal"\r\n\r\n'
            '[host."https://example.io/example/ubi-minimal"]\r\n'
            '  capabilities = ["pull"]\r\n'
            '[host."https://mirror.example.com/redhat"]\r\n'
            '  capabilities = ["pull"]\r\n'
            '[host."https://mirror.example.net/image"]\r\n'
            '  capabilities = ["pull", "resolve"]\r\n',
        ),
    ],
)
def test_render(mirrors, policy, expected) -> None:
    ms = MirrorSet(source=UBI, mirrors=mirrors, mirror_source_policy=policy)
    assert ms.render() == expected


def test_render_without_mirrors_is_empty() -> None:
    assert MirrorSet(source=UBI).render() == ""


def test_render_with_credentials() -> None:
    ms = MirrorSet(source=UBI, mirrors=[m("mirror.example.com/redhat")])
    auths = {"mirror.example.com": AuthEntry(username="user", password="pass")}

    out = ms.render(auths)

    token = base64.b64encode(b"user:pass").decode()
    assert out.endswith(
        '  capabilities = ["pull"]\r\n'
        '  [host."https://mirror.example.com/redhat".header]\r\n'
        f'    authorization = "Basic {token}"\r\n'
    )


def test_merge_mirror_sets_unions_and_sorts() -> None:
    out = merge_mirror_sets(
        [
            MirrorSet(
                source=UBI,
                mirrors=[m("example.io/example/ubi-minimal"), m("example.com/example/ubi-minimal", True)],
            ),
            MirrorSet(
                source=UBI,
                mirrors=[m("mirror.example.net/image"), m("mirror.example.com/redhat", True)],
            ),
        ]
    )

    assert out == [
        MirrorSet(
            source=UBI,
            mirrors=[
                m("example.com/example/ubi-minimal", True),
                m("example.io/example/ubi-minimal"),
                m("mirror.example.com/redhat", True),
                m("mirror.example.net/image"),
            ],
        )
    ]


def test_merge_mirror_sets_never_contact_wins() -> None:
    out = merge_mirror_sets(
        [
            MirrorSet(source=UBI, mirror_source_policy=NEVER),
            MirrorSet(source=UBI, mirror_source_policy=ALLOW),
            MirrorSet(source=RELEASE, mirror_source_policy=ALLOW),
            MirrorSet(source=RELEASE, mirror_source_policy=ALLOW),
        ]
    )

    assert [(s.source, s.mirror_source_policy) for s in out] == [
        (RELEASE, ALLOW),
        (UBI, NEVER),
    ]


def test_merge_mirror_sets_tag_resolution_wins() -> None:
    out = merge_mirror_sets(
        [
            MirrorSet(source=UBI, mirrors=[m("mirror.example.net/image"), m("mirror.example.com/redhat")]),
            MirrorSet(source=UBI, mirrors=[m("mirror.example.net/image"), m("mirror.example.com/redhat", True)]),
        ]
    )

    assert out[0].mirrors == [m("mirror.example.com/redhat", True), m("mirror.example.net/image")]


@pytest.mark.parametrize(
    "a,b,expected",
    [
        ([], [], []),
        ([m("openshift.com")], [], [m("openshift.com")]),
        ([m("openshift.com")], [m("openshift.com")], [m("openshift.com")]),
        ([m("openshift.com")], [m("openshift.com", True)], [m("openshift.com", True)]),
        ([m("openshift.com", True)], [m("openshift.com")], [m("openshift.com", True)]),
        (
            [m("redhat.com")],
            [m("openshift.com", True)],
            [m("redhat.com"), m("openshift.com", True)],
        ),
    ],
)
def test_merge_mirrors(a, b, expected) -> None:
    assert merge_mirrors(a, b) == expected


@pytest.mark.parametrize(
    "source,mirror,expected",
    [
        (UBI, "example.io/example/ubi-minimal", "example.io/example"),
        (UBI, "mirror.example.com/redhat", "mirror.example.com/redhat"),
        ("registry.io/a/b", "registry.io/a/b", ""),
        (RELEASE, "mirror.registry.com:443/ocp/release", "mirror.registry.com:443/ocp/release"),
    ],
)
def test_extract_mirror_url(source, mirror, expected) -> None:
    assert extract_mirror_url(source, mirror) == expected


@pytest.mark.parametrize(
    "image,expected",
    [
        ("quay.io/org/repo", "quay.io"),
        ("mirror.registry.com:443/ocp/release", "mirror.registry.com:443"),
        ("https://mirror.example.com:5000/org", "mirror.example.com:5000"),
        ("localhost", "localhost"),
    ],
)
def test_extract_registry_hostname(image, expected) -> None:
    assert extract_registry_hostname(image) == expected


def test_build_config_from_declarations() -> None:
    digest = [
        MirrorDeclaration.model_validate(
            {"source": UBI, "mirrors": ["example.io/example/ubi-minimal"]}
        )
    ]
    tags = [
        MirrorDeclaration.model_validate(
            {
                "source": UBI,
                "mirrors": ["mirror.example.com/redhat"],
                "mirrorSourcePolicy": "NeverContactSource",
            }
        )
    ]

    out = build_config(digest, tags)

    assert out == [
        MirrorSet(
            source="registry.access.redhat.com",
            mirrors=[m("example.io/example"), m("mirror.example.com/redhat", True)],
            mirror_source_policy=NEVER,
        )
    ]


def test_build_config_groups_repositories_by_host() -> None:
    digest = [
        MirrorDeclaration.model_validate({"source": "registry.io/a/x", "mirrors": ["m1.io/a/x"]}),
        MirrorDeclaration.model_validate({"source": "registry.io/b/y", "mirrors": ["m2.io/b/y"]}),
        MirrorDeclaration.model_validate({"source": "other.io/c", "mirrors": ["m3.io/c"]}),
    ]

    out = build_config(digest, [])

    assert [(s.source, [mi.host for mi in s.mirrors]) for s in out] == [
        ("other.io", ["m3.io"]),
        ("registry.io", ["m1.io", "m2.io"]),
    ]


def test_declaration_empty_policy_means_allow() -> None:
    decl = MirrorDeclaration.model_validate({"source": UBI, "mirrorSourcePolicy": ""})
    assert decl.mirror_source_policy == ALLOW


def test_parse_auths() -> None:
    doc = {
        "auths": {
            "quay.io": {"auth": base64.b64encode(b"robot:s3cr:et").decode()},
            "mirror.example.com": {"username": "u", "password": "p"},
        }
    }

    auths = parse_auths(json.dumps(doc).encode())

    assert auths["quay.io"].username == "robot"
    assert auths["quay.io"].password == "s3cr:et"
    assert auths["mirror.example.com"].basic_token() == base64.b64encode(b"u:p").decode()
    with pytest.raises(ConfigurationError):
        parse_auths(b"{not json")


def test_parse_auths_rejects_malformed_auth() -> None:
    doc = {"auths": {"quay.io": {"auth": "not base64!"}}}

    with pytest.raises(ConfigurationError, match="quay.io"):
        parse_auths(json.dumps(doc).encode())

    doc = {"auths": {"quay.io": {"auth": base64.b64encode(b"\xff\xfe").decode()}}}
    with pytest.raises(ConfigurationError, match="quay.io"):
        parse_auths(json.dumps(doc).encode())


def test_generate_config_files() -> None:
    cluster = FakeCluster()
    cluster.add_secret(
        "openshift-config",
        "pull-secret",
        {".dockerconfigjson": json.dumps({"auths": {}}).encode()},
    )
    cluster.add(
        IDMS_KIND,
        {
            "metadata": {"name": "digest"},
            "spec": {
                "imageDigestMirrors": [
                    {"source": UBI, "mirrors": ["example.io/example/ubi-minimal"]},
                    {"source": "quay.io/openshift-release-dev/ocp-v4.0-art-dev", "mirrors": ["mirror.example.com/art"]},
                    {"source": "registry.io/empty"},
                ]
            },
        },
    )
    cluster.add(
        ITMS_KIND,
        {
            "metadata": {"name": "tags"},
            "spec": {"imageTagMirrors": [{"source": RELEASE, "mirrors": ["mirror.example.com/ocp"]}]},
        },
    )

    files = asyncio.run(generate_config_files(cluster))

    assert sorted(files) == ["quay.io/hosts.toml", "registry.access.redhat.com/hosts.toml"]
    quay = files["quay.io/hosts.toml"]
    assert quay.startswith(b'server = "https://quay.io"\r\n')
    assert b'[host."https://mirror.example.com/art"]\r\n  capabilities = ["pull"]\r\n' in quay
    assert b'[host."https://mirror.example.com/ocp"]\r\n  capabilities = ["pull", "resolve"]\r\n' in quay
