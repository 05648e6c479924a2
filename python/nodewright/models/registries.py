"""
nodewright/models/registries.py

Pydantic models for container image mirror configuration:
  - MirrorDeclaration: one source entry of an ImageDigestMirrorSet/ImageTagMirrorSet.
  - Mirror / MirrorSet: the merged, per-source view rendered into a containerd
    hosts.toml file.

Rendered files are destined for a Windows instance, so lines end with CRLF.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

IMAGE_PATH_SEPARATOR = "/"
CRLF = "\r\n"


class MirrorSourcePolicy(str, Enum):
    ALLOW = "AllowContactingSource"
    NEVER = "NeverContactSource"


class MirrorDeclaration(BaseModel):
    """A source image location and the locations it may be pulled from instead."""

    source: str
    mirrors: List[str] = Field(default_factory=list)
    mirror_source_policy: MirrorSourcePolicy = Field(
        default=MirrorSourcePolicy.ALLOW, alias="mirrorSourcePolicy"
    )

    class Config:
        populate_by_name = True

    @field_validator("mirror_source_policy", mode="before")
    @classmethod
    def default_empty_policy(cls, val: Optional[str]) -> str:
        # the API leaves the field unset (or empty) for "allow"
        return val or MirrorSourcePolicy.ALLOW.value


class Mirror(BaseModel):
    """A mirror host, truncated to the part not shared with its source."""

    host: str
    resolve_tags: bool = False

    class Config:
        frozen = True


class AuthEntry(BaseModel):
    """One registry entry of a docker config.json `auths` map."""

    username: str = ""
    password: str = ""
    auth: str = ""

    def basic_token(self) -> str:
        if self.username or self.password:
            return base64.b64encode(
                f"{self.username}:{self.password}".encode("utf-8")
            ).decode("ascii")
        return self.auth


class MirrorSet(BaseModel):
    """All mirrors configured for one source registry host."""

    source: str
    mirrors: List[Mirror] = Field(default_factory=list)
    mirror_source_policy: MirrorSourcePolicy = MirrorSourcePolicy.ALLOW

    def fallback_server(self) -> str:
        """
        The endpoint containerd falls back to: the source itself, or the first mirror when
        the source must never be contacted.
        """
        if self.mirror_source_policy == MirrorSourcePolicy.NEVER and self.mirrors:
            return self.mirrors[0].host
        return self.source

    def render(self, auths: Optional[Dict[str, AuthEntry]] = None) -> str:
        """
        Render the hosts.toml contents for this set.

        Args:
            auths: Optional registry hostname -> credentials map (from the global pull
                secret). Matching mirrors get an authorization header table.

        Returns:
            The file contents, or "" when the set has no mirrors.
        """
        if not self.mirrors:
            return ""

        lines = [f'server = "https://{self.fallback_server()}"', ""]
        for m in self.mirrors:
            capabilities = '["pull", "resolve"]' if m.resolve_tags else '["pull"]'
            lines.append(f'[host."https://{m.host}"]')
            lines.append(f"  capabilities = {capabilities}")

            entry = (auths or {}).get(extract_registry_hostname(m.host))
            if entry is not None:
                lines.append(f'  [host."https://{m.host}".header]')
                lines.append(f'    authorization = "Basic {entry.basic_token()}"')

        return "".join(line + CRLF for line in lines)


def extract_registry_hostname(image: str) -> str:
    """
    Return the registry host (with port, when present) of an image location such as
    "quay.io/org/repo" or "https://mirror.example.com:5000/org".
    """
    if "://" in image:
        parsed = urlparse(image)
        if parsed.hostname:
            if parsed.port is not None:
                return f"{parsed.hostname}:{parsed.port}"
            return parsed.hostname
    return image.split(IMAGE_PATH_SEPARATOR)[0]


def extract_mirror_url(source: str, mirror: str) -> str:
    """
    Strip from `mirror` the trailing path segments it shares with `source`; the pull path
    re-appends them when fetching from the mirror.

    Example:
        source "registry.io/ubi9/ubi-minimal", mirror "example.io/example/ubi-minimal"
        -> "example.io/example"
    """
    source_parts = source.split(IMAGE_PATH_SEPARATOR)
    mirror_parts = mirror.split(IMAGE_PATH_SEPARATOR)

    shared = 0
    for src_seg, mirror_seg in zip(reversed(source_parts), reversed(mirror_parts)):
        if src_seg != mirror_seg:
            break
        shared += 1

    return IMAGE_PATH_SEPARATOR.join(mirror_parts[: len(mirror_parts) - shared])


def new_mirror(source: str, location: str, resolve_tags: bool) -> Mirror:
    """Build a Mirror for `location`, truncated relative to `source`."""
    if source == location:
        host = extract_registry_hostname(location)
    else:
        host = extract_mirror_url(source, location)
    return Mirror(host=host, resolve_tags=resolve_tags)
