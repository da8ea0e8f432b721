"""
Burst detector for retry storms and self-triggering handlers.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from shared.logging import get_logger


@dataclass
class BurstState:
    identity: str
    last_call_at: float
    consecutive_fast_calls: int


class LoopGuard:
    """Flags identities calling faster than ``fast_threshold_ms`` too many times in a row.

    Reacts within a handful of calls, well before an hourly limit would.
    """

    def __init__(self, fast_threshold_ms: int, max_calls: int, state_ttl_ms: int = 5 * 60 * 1000):
        self.fast_threshold_ms = fast_threshold_ms
        self.max_calls = max_calls
        self.state_ttl_ms = state_ttl_ms
        self.logger = get_logger("admission.loop_guard")
        self._states: Dict[str, BurstState] = {}

    def check(self, identity: str, now: float) -> bool:
        """Register a call and return True when it completes a loop-like burst.

        Always moves ``last_call_at`` to ``now``, whatever the verdict.
        """
        state = self._states.get(identity)
        if state is None:
            self._states[identity] = BurstState(identity=identity, last_call_at=now, consecutive_fast_calls=1)
            return False

        detected = False
        if now - state.last_call_at < self.fast_threshold_ms:
            state.consecutive_fast_calls += 1
            detected = state.consecutive_fast_calls > self.max_calls
        else:
            state.consecutive_fast_calls = 1
        state.last_call_at = now

        if detected:
            self.logger.warning(
                "Loop detected",
                identity=identity,
                consecutive_fast_calls=state.consecutive_fast_calls,
                max_calls=self.max_calls
            )
        return detected

    def state(self, identity: str) -> Optional[BurstState]:
        return self._states.get(identity)

    def purge_expired(self, now: float) -> int:
        """Forget identities idle for longer than ``state_ttl_ms``."""
        idle = [identity for identity, state in self._states.items()
                if now - state.last_call_at > self.state_ttl_ms]
        for identity in idle:
            del self._states[identity]
        return len(idle)

    def __len__(self) -> int:
        return len(self._states)
