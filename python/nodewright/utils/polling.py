"""
nodewright/utils/polling.py

Bounded polling, the single place where nodewright waits on cluster-side state:
  - PollProfile: an interval/timeout pair (DEFAULT and QUICK presets).
  - poll_until: evaluate an async condition until it yields a value or the bound expires.
  - watch_for_value: poll until a key appears (optionally with an expected value) in a
    mapping produced by a getter, e.g. node annotations written by the side-channel daemon.

Exceptions raised by a condition are treated as transient: logged at DEBUG and retried.
Cancellation is never swallowed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeoutError(TimeoutError):
    """Raised when a bounded poll exhausts its timeout."""


class PollProfile(BaseModel):
    """Fixed interval and overall timeout for a poll, in seconds."""

    interval: float = Field(..., gt=0)
    timeout: float = Field(..., gt=0)

    class Config:
        frozen = True


DEFAULT_PROFILE = PollProfile(interval=15.0, timeout=600.0)
QUICK_PROFILE = PollProfile(interval=10.0, timeout=30.0)


async def poll_until(
    condition: Callable[[], Awaitable[Optional[T]]],
    profile: PollProfile,
    description: str,
) -> T:
    """
    Evaluate `condition` immediately and then every `profile.interval` seconds until it
    returns something other than None.

    Args:
        condition: Coroutine factory; None means "not yet".
        profile: Interval and timeout.
        description: Human-readable description used in logs and the timeout error.

    Returns:
        The first non-None value returned by `condition`.

    Raises:
        PollTimeoutError: If no value was produced within `profile.timeout`.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + profile.timeout

    while True:
        try:
            result = await condition()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Transient error while waiting for %s: %s", description, exc)
            result = None

        if result is not None:
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollTimeoutError(
                f"timed out after {profile.timeout:g}s waiting for {description}"
            )
        await asyncio.sleep(min(profile.interval, remaining))


async def watch_for_value(
    getter: Callable[[], Awaitable[Optional[Dict[str, str]]]],
    key: str,
    profile: PollProfile,
    *,
    expected: Optional[str] = None,
    present: bool = True,
) -> Optional[str]:
    """
    Watch a string mapping for a key.

    With `present=True` (default) this waits until `key` exists, and, if `expected` is
    given, until its value equals `expected`; the value is returned. With `present=False`
    it waits until `key` is absent and returns None.

    Args:
        getter: Returns the current mapping, or None when the owning object is missing.
        key: The key to watch.
        profile: Interval and timeout.
        expected: Optional value the key must carry.
        present: Whether to wait for presence (True) or absence (False).

    Raises:
        PollTimeoutError: If the condition did not hold within the timeout.
    """

    async def _check() -> Optional[Any]:
        mapping = await getter()
        if mapping is None:
            return None
        if not present:
            return True if key not in mapping else None
        value = mapping.get(key)
        if value is None:
            return None
        if expected is not None and value != expected:
            return None
        return value

    if present:
        description = f"{key}={expected}" if expected is not None else f"{key} to be set"
    else:
        description = f"{key} to be cleared"

    result = await poll_until(_check, profile, description)
    return result if present else None
