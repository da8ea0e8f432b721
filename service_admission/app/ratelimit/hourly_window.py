"""
Hourly window rate limiter for the admission gate.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from shared.logging import get_logger


HOUR_MS = 60 * 60 * 1000
GLOBAL_SCOPE = "global"
IDENTITY_SCOPE = "identity"

# (scope, identity or "", hour index)
BucketKey = Tuple[str, str, int]


@dataclass
class RateWindow:
    """Calls admitted in one hour bucket. ``count`` only ever grows."""

    bucket_key: BucketKey
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateCheck:
    """Result of a read-only limit check."""

    allowed: bool
    scope: Optional[str] = None
    count: int = 0
    limit: int = 0
    reset_at: Optional[float] = None

    def as_meta(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "current_count": self.count,
            "limit": self.limit,
            "reset_at": self.reset_at,
        }


class HourlyWindowRateLimiter:
    """Per-identity and global call ceilings over fixed hour buckets.

    ``check`` is read-only and ``record`` increments. Callers that act on an
    ``allowed`` check must record in the same synchronous step; an ``await``
    between the two lets concurrent calls overshoot the limit.
    """

    def __init__(self, per_identity_limit: int, global_limit: int):
        self.per_identity_limit = per_identity_limit
        self.global_limit = global_limit
        self.logger = get_logger("admission.rate_limiter")
        self._windows: Dict[BucketKey, RateWindow] = {}

    @staticmethod
    def hour_index(now: float) -> int:
        return int(now // HOUR_MS)

    def _keys(self, identity: str, now: float) -> Tuple[BucketKey, BucketKey]:
        hour = self.hour_index(now)
        return (GLOBAL_SCOPE, "", hour), (IDENTITY_SCOPE, identity, hour)

    def check(self, identity: str, now: float) -> RateCheck:
        """Return whether one more call for ``identity`` fits in the current hour."""
        global_key, identity_key = self._keys(identity, now)

        for bucket_key, limit in ((global_key, self.global_limit), (identity_key, self.per_identity_limit)):
            window = self._windows.get(bucket_key)
            if window is not None and window.count >= limit:
                return RateCheck(
                    allowed=False,
                    scope=bucket_key[0],
                    count=window.count,
                    limit=limit,
                    reset_at=window.reset_at,
                )

        return RateCheck(allowed=True)

    def record(self, identity: str, now: float) -> None:
        """Count one admitted call against the identity and global buckets."""
        for bucket_key in self._keys(identity, now):
            window = self._windows.get(bucket_key)
            if window is None:
                self._windows[bucket_key] = RateWindow(bucket_key=bucket_key, count=1, reset_at=now + HOUR_MS)
            else:
                window.count += 1

    def check_and_record(self, identity: str, now: float) -> RateCheck:
        """Check and, when allowed, record in one step."""
        result = self.check(identity, now)
        if result.allowed:
            self.record(identity, now)
        return result

    def current_count(self, identity: Optional[str], now: float) -> int:
        """Calls counted this hour for ``identity``, or globally when None."""
        global_key, identity_key = self._keys(identity or "", now)
        window = self._windows.get(global_key if identity is None else identity_key)
        return window.count if window else 0

    def purge_expired(self, now: float) -> int:
        """Drop windows whose reset time has passed. Returns the number removed."""
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "windows": len(self._windows),
            "per_identity_limit": self.per_identity_limit,
            "global_limit": self.global_limit,
        }
