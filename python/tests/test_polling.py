"""
tests/test_polling.py
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest
from pydantic import ValidationError

from fakes import FAST_PROFILE
from nodewright.utils.polling import PollProfile, PollTimeoutError, poll_until, watch_for_value


def test_poll_returns_first_value() -> None:
    results: List[Optional[str]] = [None, None, "ready"]

    async def condition() -> Optional[str]:
        return results.pop(0)

    assert asyncio.run(poll_until(condition, FAST_PROFILE, "ready")) == "ready"
    assert results == []


def test_poll_treats_errors_as_transient() -> None:
    attempts = {"n": 0}

    async def condition() -> Optional[bool]:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("api server unavailable")
        return True

    assert asyncio.run(poll_until(condition, FAST_PROFILE, "api")) is True


def test_poll_times_out() -> None:
    async def condition() -> Optional[bool]:
        return None

    with pytest.raises(PollTimeoutError, match="never"):
        asyncio.run(poll_until(condition, FAST_PROFILE, "never"))


def test_poll_does_not_swallow_cancellation() -> None:
    async def condition() -> Optional[bool]:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(poll_until(condition, FAST_PROFILE, "cancelled"))


def test_profile_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        PollProfile(interval=0, timeout=1)


def test_watch_for_expected_value() -> None:
    states: List[Dict[str, str]] = [{}, {"k": "old"}, {"k": "new"}]

    async def getter() -> Optional[Dict[str, str]]:
        return states.pop(0) if len(states) > 1 else states[0]

    assert asyncio.run(watch_for_value(getter, "k", FAST_PROFILE, expected="new")) == "new"


def test_watch_for_absence() -> None:
    states: List[Optional[Dict[str, str]]] = [None, {"k": ""}, {}]

    async def getter() -> Optional[Dict[str, str]]:
        return states.pop(0) if len(states) > 1 else states[0]

    assert asyncio.run(watch_for_value(getter, "k", FAST_PROFILE, present=False)) is None
    assert states == [{}]


def test_watch_times_out_on_wrong_value() -> None:
    async def getter() -> Optional[Dict[str, str]]:
        return {"k": "old"}

    with pytest.raises(PollTimeoutError):
        asyncio.run(watch_for_value(getter, "k", FAST_PROFILE, expected="new"))
