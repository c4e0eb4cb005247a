"""
Step Result — Uniform outcome of every FlowEngine entry point.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class StepStatus(str, Enum):
    OK = "ok"                  # the event was applied
    IGNORED = "ignored"        # nothing to do (no wait-state, not in a topic flow, ...)
    FAILED = "failed"          # configuration or runtime failure; state not advanced


class StepResult:
    """Outcome of applying an inbound event or command to an actor's flow."""

    def __init__(self, status: StepStatus, reason: str = "", flow: Optional[str] = None):
        self.status = status
        self.reason = reason
        self.flow = flow

    @classmethod
    def ok(cls, flow: Optional[str] = None) -> "StepResult":
        return cls(StepStatus.OK, flow=flow)

    @classmethod
    def ignored(cls, reason: str) -> "StepResult":
        return cls(StepStatus.IGNORED, reason)

    @classmethod
    def failed(cls, reason: str) -> "StepResult":
        return cls(StepStatus.FAILED, reason)

    @property
    def is_ok(self) -> bool:
        return self.status == StepStatus.OK

    @property
    def is_ignored(self) -> bool:
        return self.status == StepStatus.IGNORED

    @property
    def is_failed(self) -> bool:
        return self.status == StepStatus.FAILED

    def __bool__(self):
        return self.is_ok

    def __eq__(self, other):
        if not isinstance(other, StepResult):
            return NotImplemented
        return (self.status, self.reason) == (other.status, other.reason)

    def __repr__(self):
        if self.reason:
            return f"<StepResult {self.status.value}: {self.reason}>"
        return f"<StepResult {self.status.value}>"
