"""
tests/test_metadata.py
"""

from __future__ import annotations

import pytest

from nodewright.utils.metadata import (
    VERSION_ANNOTATION,
    escape,
    generate_add_patch,
    generate_remove_patch,
)


def test_escape() -> None:
    assert escape("windowsmachineconfig.openshift.io/version") == (
        "windowsmachineconfig.openshift.io~1version"
    )
    assert escape("a~b/c") == "a~0b~1c"


def test_add_patch() -> None:
    patch = generate_add_patch({"team": "win"}, {VERSION_ANNOTATION: "1.0"})
    assert patch == [
        {"op": "add", "path": "/metadata/labels/team", "value": "win"},
        {
            "op": "add",
            "path": "/metadata/annotations/windowsmachineconfig.openshift.io~1version",
            "value": "1.0",
        },
    ]


def test_remove_patch_has_no_values() -> None:
    patch = generate_remove_patch(annotations=[VERSION_ANNOTATION])
    assert patch == [
        {
            "op": "remove",
            "path": "/metadata/annotations/windowsmachineconfig.openshift.io~1version",
        }
    ]


def test_empty_patch_is_rejected() -> None:
    with pytest.raises(ValueError):
        generate_add_patch()
    with pytest.raises(ValueError):
        generate_remove_patch([], [])
