"""
nodewright/utils/outcome.py

Step outcomes for node lifecycle operations. Every step is either REQUIRED (a failure
aborts the operation) or ADVISORY (a failure is logged and recorded, the operation
continues), and the result of each step is kept so callers and tests can inspect
which policy applied at which call site.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class StepPolicy(str, Enum):
    REQUIRED = "required"
    ADVISORY = "advisory"


class StepOutcome(BaseModel):
    """Result of one orchestrator step; `error` is None on success."""

    step: str
    policy: StepPolicy
    error: Optional[str] = None

    class Config:
        frozen = True

    @property
    def ok(self) -> bool:
        return self.error is None
