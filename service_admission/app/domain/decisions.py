"""
Decision and outcome types returned by the admission gate.

Rejections are data, not exceptions: callers branch on the decision type
(``ServeCached``, ``Reject``, ``Proceed``) and, for rejections, on the
machine-readable ``RejectReason``.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel


class OperationResult(BaseModel):
    """Outcome of a guarded operation. Both successes and failures are cached."""

    success: bool
    payload: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, payload: Any = None) -> "OperationResult":
        return cls(success=True, payload=payload)

    @classmethod
    def failed(cls, error: str, payload: Any = None) -> "OperationResult":
        return cls(success=False, payload=payload, error=error)


# (identity, params) -> OperationResult
Operation = Callable[[str, Dict[str, Any]], Awaitable[OperationResult]]


class RejectReason(str, Enum):
    """Why a call was not admitted."""
    RATE_LIMITED = "rate_limited"
    SAMPLED = "sampled"
    LOOP_DETECTED = "loop_detected"


REJECT_MESSAGES = {
    RejectReason.RATE_LIMITED: "Rate limit exceeded",
    RejectReason.SAMPLED: "Skipped due to sampling",
    RejectReason.LOOP_DETECTED: "Too many rapid calls detected",
}


class CacheSource(str, Enum):
    LOCAL = "local"
    DURABLE = "durable"


@dataclass(frozen=True)
class EvaluateOptions:
    """Per-call overrides.

    ``force`` skips the rate, sampling and loop checks and always refreshes.
    ``bypass_cache`` skips only the local cache and dedupe lookups.
    """
    force: bool = False
    bypass_cache: bool = False


@dataclass
class AdmissionToken:
    """Issued with ``Proceed``; handed back to ``AdmissionGate.record``."""
    identity: str
    key: str
    issued_at: float
    forced: bool = False
    token_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    recorded: bool = False


@dataclass(frozen=True)
class ServeCached:
    payload: OperationResult
    source: CacheSource
    age_ms: float


@dataclass(frozen=True)
class Reject:
    reason: RejectReason
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return REJECT_MESSAGES[self.reason]


@dataclass(frozen=True)
class Proceed:
    token: AdmissionToken


Decision = Union[ServeCached, Reject, Proceed]
