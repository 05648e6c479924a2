"""
nodewright/utils/metadata.py

Node label/annotation keys shared with the on-instance configuration daemon, and the
JSON patches (RFC 6902) used to set or clear them.

The key strings are a wire contract with the daemon and must not change.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

VERSION_ANNOTATION = "windowsmachineconfig.openshift.io/version"
DESIRED_VERSION_ANNOTATION = "windowsmachineconfig.openshift.io/desired-version"
REBOOT_ANNOTATION = "windowsmachineconfig.openshift.io/reboot-required"
PUB_KEY_HASH_ANNOTATION = "windowsmachineconfig.openshift.io/pub-key-hash"
UPGRADING_ANNOTATION = "windowsmachineconfig.openshift.io/upgrading"

WINDOWS_OS_LABEL_KEY = "node.openshift.io/os_id"
WINDOWS_OS_LABEL = f"{WINDOWS_OS_LABEL_KEY}=Windows"

JSONPatch = List[Dict[str, Any]]


def escape(key: str) -> str:
    """Escape a label/annotation key for use in a JSON pointer."""
    return key.replace("~", "~0").replace("/", "~1")


def _generate_patch(
    op: str,
    labels: Optional[Dict[str, str]],
    annotations: Optional[Dict[str, str]],
) -> JSONPatch:
    if not labels and not annotations:
        raise ValueError("labels and annotations empty")

    def _ops(section: str, values: Dict[str, str]) -> JSONPatch:
        return [
            {"op": op, "path": f"/metadata/{section}/{escape(k)}", "value": v}
            if op != "remove"
            else {"op": op, "path": f"/metadata/{section}/{escape(k)}"}
            for k, v in values.items()
        ]

    return _ops("labels", labels or {}) + _ops("annotations", annotations or {})


def generate_add_patch(
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> JSONPatch:
    """
    Build a patch adding (or overwriting) the given labels and annotations.

    Raises:
        ValueError: If both maps are empty.
    """
    return _generate_patch("add", labels, annotations)


def generate_remove_patch(
    labels: Optional[List[str]] = None,
    annotations: Optional[List[str]] = None,
) -> JSONPatch:
    """
    Build a patch removing the given label and annotation keys. JSON patch "remove" fails
    on a missing key, so callers only pass keys that are present.

    Raises:
        ValueError: If both lists are empty.
    """
    return _generate_patch(
        "remove",
        {k: "" for k in labels or []},
        {k: "" for k in annotations or []},
    )
