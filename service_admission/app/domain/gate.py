"""
Admission gate: one decision pipeline in front of a guarded operation.

``evaluate`` runs the cheap in-memory checks first (rate window, sampler,
loop guard), then the local TTL cache, then the durable dedupe store, and
returns ``ServeCached``, ``Reject`` or ``Proceed``. On ``Proceed`` the caller
runs the operation and hands the outcome to ``record``.

A gate owns all of its in-process state. Nothing is module-global, so tests
and services can run as many isolated gates as they need.
"""

import asyncio
import random
import time
from collections import Counter
from typing import Any, Callable, Dict, Optional, Set

from shared.config import AdmissionConfig
from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..caching.dedupe_store import DedupeStore
from ..caching.ttl_cache import TTLCache
from ..ratelimit.hourly_window import HourlyWindowRateLimiter
from ..ratelimit.loop_guard import LoopGuard
from ..ratelimit.sampler import Sampler
from .decisions import (
    AdmissionToken,
    CacheSource,
    Decision,
    EvaluateOptions,
    OperationResult,
    Proceed,
    Reject,
    RejectReason,
    ServeCached,
)


MAX_IDENTIFIER_LENGTH = 512


def wall_clock_ms() -> float:
    return time.time() * 1000


class AdmissionGate:
    """Decides whether a call runs, is served from cache, or is rejected."""

    def __init__(
        self,
        config: AdmissionConfig,
        *,
        name: str = "default",
        dedupe_store: Optional[DedupeStore] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name
        self.config = config
        self.dedupe_store = dedupe_store
        self.metrics = metrics
        self.logger = get_logger("admission.gate")
        self._clock = clock or wall_clock_ms
        self._rng = rng or random.Random()

        self.ttl_cache = TTLCache(
            config.cache_ttl_ms,
            failure_ttl_ms=config.effective_cache_failure_ttl_ms,
            max_size=config.cache_max_size,
            eviction_fraction=config.cache_eviction_fraction,
        )
        self.rate_limiter = HourlyWindowRateLimiter(
            config.rate_limit_per_identity_per_hour,
            config.rate_limit_global_per_hour,
        )
        self.loop_guard = LoopGuard(
            config.burst_fast_threshold_ms,
            config.burst_max_calls,
            state_ttl_ms=config.burst_state_ttl_ms,
        )
        self.sampler = Sampler(self._rng)

        self._pending_writes: Set[asyncio.Task] = set()
        self._decisions: Counter = Counter()

    @staticmethod
    def _validate(identity: Any, key: Any) -> None:
        for field_name, value in (("identity", identity), ("key", key)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{field_name} must be a non-empty string", {"field": field_name})
            if len(value) > MAX_IDENTIFIER_LENGTH:
                raise ValidationError(
                    f"{field_name} exceeds {MAX_IDENTIFIER_LENGTH} characters",
                    {"field": field_name, "length": len(value)},
                )

    async def evaluate(self, identity: str, key: str, options: Optional[EvaluateOptions] = None) -> Decision:
        """Run the admission pipeline for one call."""
        options = options or EvaluateOptions()
        self._validate(identity, key)

        now = self._clock()
        if self._rng.random() < self.config.housekeeping_probability:
            self.sweep(now)

        if not options.force:
            rate = self.rate_limiter.check(identity, now)
            if not rate.allowed:
                return self._reject(RejectReason.RATE_LIMITED, identity, key, rate.as_meta())

            if not self.sampler.admit(self.config.sampling_rate):
                return self._reject(RejectReason.SAMPLED, identity, key, {"sampling_rate": self.config.sampling_rate})

            if self.loop_guard.check(identity, now):
                state = self.loop_guard.state(identity)
                return self._reject(RejectReason.LOOP_DETECTED, identity, key, {
                    "consecutive_fast_calls": state.consecutive_fast_calls if state else None,
                    "fast_threshold_ms": self.config.burst_fast_threshold_ms,
                    "max_calls": self.config.burst_max_calls,
                })

        if not (options.force or options.bypass_cache):
            entry = self.ttl_cache.get(key, now)
            if entry is not None:
                return self._serve(entry.payload, CacheSource.LOCAL, entry.age_ms(now), identity, key)

            if self.dedupe_store is not None:
                record = await self.dedupe_store.get(key, now)
                now = self._clock()
                if record is not None:
                    # Keep the durable timestamp so the local copy expires no later than the record
                    self.ttl_cache.put(key, record.payload, now, created_at=record.updated_at)
                    self._evict()
                    return self._serve(record.payload, CacheSource.DURABLE, record.age_ms(now), identity, key)

        # Reserve the rate slot: check and record with no suspension point in between
        if options.force:
            self.rate_limiter.record(identity, now)
        else:
            rate = self.rate_limiter.check_and_record(identity, now)
            if not rate.allowed:
                return self._reject(RejectReason.RATE_LIMITED, identity, key, rate.as_meta())

        token = AdmissionToken(identity=identity, key=key, issued_at=now, forced=options.force)
        self._count("proceed")
        self.logger.debug("Call admitted", gate=self.name, identity=identity, key=key, forced=options.force)
        return Proceed(token)

    async def record(self, token: AdmissionToken, result: OperationResult) -> None:
        """Store the outcome of an admitted call locally and in the dedupe store.

        The local cache is updated before the first suspension point. The
        durable write is shielded: if the caller is cancelled it still runs to
        completion in the background.
        """
        if token.recorded:
            self.logger.warning("Admission token already recorded", gate=self.name, token_id=token.token_id)
            return
        if not isinstance(result, OperationResult):
            result = OperationResult.model_validate(result)
        token.recorded = True

        now = self._clock()
        self.ttl_cache.put(token.key, result, now)
        self._evict()

        if self.dedupe_store is None:
            return

        task = asyncio.ensure_future(self.dedupe_store.set(token.key, result, now))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        await asyncio.shield(task)

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        """Drop expired cache entries, abandoned rate windows and idle burst states."""
        now = self._clock() if now is None else now
        removed = {
            "expired_entries": self.ttl_cache.purge_expired(now),
            "expired_windows": self.rate_limiter.purge_expired(now),
            "idle_burst_states": self.loop_guard.purge_expired(now),
            "evicted_entries": self._evict(),
        }
        self.logger.debug("Admission housekeeping", gate=self.name, **removed)
        return removed

    async def drain(self) -> None:
        """Wait for in-flight durable writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self.dedupe_store is not None:
            await self.dedupe_store.close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "gate": self.name,
            "cache": self.ttl_cache.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "burst_states": len(self.loop_guard),
            "decisions": dict(self._decisions),
            "pending_durable_writes": len(self._pending_writes),
            "dedupe_store": self.dedupe_store.get_stats() if self.dedupe_store else None,
        }

    def _evict(self) -> int:
        evicted = self.ttl_cache.evict()
        if self.metrics:
            self.metrics.record_cache_size(self.name, len(self.ttl_cache), evicted)
        return evicted

    def _reject(self, reason: RejectReason, identity: str, key: str, meta: Dict[str, Any]) -> Reject:
        self._count("reject", reason.value)
        self.logger.info("Call rejected", gate=self.name, identity=identity, key=key, reason=reason.value, **meta)
        return Reject(reason=reason, meta=meta)

    def _serve(self, payload: OperationResult, source: CacheSource, age_ms: float,
               identity: str, key: str) -> ServeCached:
        self._count("serve_cached", source.value)
        if self.metrics:
            self.metrics.record_cache_hit(self.name, source.value)
        self.logger.debug("Served from cache", gate=self.name, identity=identity, key=key,
                          source=source.value, age_ms=age_ms)
        return ServeCached(payload=payload, source=source, age_ms=age_ms)

    def _count(self, decision: str, reason: str = "") -> None:
        self._decisions[f"{decision}:{reason}" if reason else decision] += 1
        if self.metrics:
            self.metrics.record_decision(self.name, decision, reason)


def create_admission_gate(
    config: AdmissionConfig,
    *,
    name: str = "default",
    redis_url: Optional[str] = None,
    namespace: str = "admission",
    dedupe_store: Optional[DedupeStore] = None,
    clock: Optional[Callable[[], float]] = None,
    rng: Optional[random.Random] = None,
    metrics: Optional[MetricsCollector] = None,
) -> AdmissionGate:
    """Build a gate, wiring a Redis dedupe store when ``redis_url`` is given."""
    if dedupe_store is None and redis_url:
        dedupe_store = DedupeStore(
            redis_url,
            ttl_ms=config.dedupe_ttl_ms,
            failure_ttl_ms=config.effective_dedupe_failure_ttl_ms,
            namespace=namespace,
            metrics=metrics,
            gate_name=name,
        )
    if dedupe_store is None:
        get_logger("admission.gate").info("Admission gate running without a dedupe store", gate=name)

    return AdmissionGate(
        config,
        name=name,
        dedupe_store=dedupe_store,
        clock=clock,
        rng=rng,
        metrics=metrics,
    )
