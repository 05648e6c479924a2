"""
nodewright/utils/registries.py

Builds the containerd mirror configuration for Windows nodes from the cluster's
ImageDigestMirrorSet and ImageTagMirrorSet resources.

build_config and merge_mirror_sets are pure; generate_config_files reads the mirror
declarations and the global pull secret from the cluster and returns the files to write,
keyed by their path relative to the registries directory.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List

from nodewright.models.registries import (
    AuthEntry,
    Mirror,
    MirrorDeclaration,
    MirrorSet,
    MirrorSourcePolicy,
    extract_registry_hostname,
    new_mirror,
)
from nodewright.utils.errors import ConfigurationError

if TYPE_CHECKING:
    from nodewright.deployment.interfaces import ClusterClient

logger = logging.getLogger(__name__)

GLOBAL_PULL_SECRET_NAMESPACE = "openshift-config"
GLOBAL_PULL_SECRET_NAME = "pull-secret"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"

IDMS_KIND = "imagedigestmirrorsets.config.openshift.io"
ITMS_KIND = "imagetagmirrorsets.config.openshift.io"


def new_mirror_set(declaration: MirrorDeclaration, resolve_tags: bool) -> MirrorSet:
    return MirrorSet(
        source=extract_registry_hostname(declaration.source),
        mirrors=[
            new_mirror(declaration.source, location, resolve_tags)
            for location in declaration.mirrors
        ],
        mirror_source_policy=declaration.mirror_source_policy,
    )


def merge_mirrors(existing: List[Mirror], incoming: List[Mirror]) -> List[Mirror]:
    """
    Union two mirror lists, one entry per host. When the same host appears with different
    resolve_tags values, the tag-resolving entry wins. Order follows first appearance.
    """
    unique: Dict[str, Mirror] = {}
    for m in list(existing) + list(incoming):
        current = unique.get(m.host)
        if current is None or (m.resolve_tags and not current.resolve_tags):
            unique[m.host] = m
    return list(unique.values())


def merge_mirror_sets(mirror_sets: Iterable[MirrorSet]) -> List[MirrorSet]:
    """
    Merge mirror sets sharing a source. A source is never contacted if any contributing
    set says so. The result is sorted by source, and each set's mirrors by host.
    """
    merged: Dict[str, MirrorSet] = {}
    for ms in mirror_sets:
        existing = merged.get(ms.source)
        if existing is None:
            merged[ms.source] = ms.model_copy(deep=True)
            continue
        existing.mirrors = merge_mirrors(existing.mirrors, ms.mirrors)
        if ms.mirror_source_policy == MirrorSourcePolicy.NEVER:
            existing.mirror_source_policy = MirrorSourcePolicy.NEVER

    return [
        MirrorSet(
            source=ms.source,
            mirrors=sorted(ms.mirrors, key=lambda m: m.host),
            mirror_source_policy=ms.mirror_source_policy,
        )
        for ms in sorted(merged.values(), key=lambda s: s.source)
    ]


def build_config(
    digest_entries: Iterable[MirrorDeclaration],
    tag_entries: Iterable[MirrorDeclaration],
) -> List[MirrorSet]:
    """
    Turn mirror declarations into merged, sorted mirror sets.

    Digest declarations contribute mirrors that may only be pulled from by digest; tag
    declarations contribute mirrors that may also resolve tags.
    """
    sets = [new_mirror_set(d, resolve_tags=False) for d in digest_entries]
    sets += [new_mirror_set(d, resolve_tags=True) for d in tag_entries]
    return merge_mirror_sets(sets)


def parse_auths(docker_config_json: bytes) -> Dict[str, AuthEntry]:
    """
    Parse the `auths` map of a docker config.json document. Entries that only carry an
    `auth` field are split into username and password.

    Raises:
        ConfigurationError: If the document is not valid JSON, or an `auth` field is not
            base64-encoded UTF-8.
    """
    try:
        parsed = json.loads(docker_config_json or b"{}")
    except ValueError as exc:
        raise ConfigurationError(f"error unmarshalling docker config JSON: {exc}") from exc

    def _entry(host: str, raw: Dict[str, Any]) -> AuthEntry:
        entry = AuthEntry.model_validate(raw)
        if not entry.username and entry.auth:
            try:
                decoded = base64.b64decode(entry.auth, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as exc:
                raise ConfigurationError(
                    f"invalid auth entry for registry {host}: {exc}"
                ) from exc
            user, _, password = decoded.partition(":")
            return AuthEntry(username=user, password=password, auth=entry.auth)
        return entry

    return {host: _entry(host, raw) for host, raw in parsed.get("auths", {}).items()}


def _declarations(items: List[Dict[str, Any]], field: str) -> List[MirrorDeclaration]:
    return [
        MirrorDeclaration.model_validate(entry)
        for item in items
        for entry in item.get("spec", {}).get(field, []) or []
    ]


async def get_pull_secret_auths(cluster: "ClusterClient") -> Dict[str, AuthEntry]:
    secret = await cluster.get(
        "secret", GLOBAL_PULL_SECRET_NAME, namespace=GLOBAL_PULL_SECRET_NAMESPACE
    )
    if secret is None:
        raise ConfigurationError(
            f"pull secret {GLOBAL_PULL_SECRET_NAMESPACE}/{GLOBAL_PULL_SECRET_NAME} not found"
        )
    raw = (secret.get("data") or {}).get(DOCKER_CONFIG_JSON_KEY, "")
    return parse_auths(base64.b64decode(raw))


async def generate_config_files(cluster: "ClusterClient") -> Dict[str, bytes]:
    """
    Read the cluster's mirror declarations and render one hosts.toml per source host.

    Returns:
        A dict of "<source host>/hosts.toml" -> file contents. Hosts without mirrors are
        omitted.
    """
    idms_items = await cluster.list(IDMS_KIND)
    itms_items = await cluster.list(ITMS_KIND)
    mirror_sets = build_config(
        _declarations(idms_items, "imageDigestMirrors"),
        _declarations(itms_items, "imageTagMirrors"),
    )
    auths = await get_pull_secret_auths(cluster)

    rendered = {ms.source: ms.render(auths) for ms in mirror_sets}
    files = {
        f"{source}/hosts.toml": content.encode("utf-8")
        for source, content in rendered.items()
        if content
    }
    logger.debug("Generated %d mirror configuration files", len(files))
    return files
