"""
Durable cross-instance dedupe store backed by Redis.

Each key maps to one hash document ``{payload, updatedAt}``. Writes are
field-level upserts (last write wins); that is safe because every payload is
a complete outcome snapshot rather than a running counter.

Every failure here fails open: reads degrade to a miss and writes to a no-op,
so an unreachable store never blocks admission.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as redis

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.decisions import OperationResult


@dataclass(frozen=True)
class DedupeRecord:
    key: str
    payload: OperationResult
    updated_at: float

    def age_ms(self, now: float) -> float:
        return now - self.updated_at


class DedupeStore:
    """Redis lookaside cache shared by every instance of a gate."""

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_ms: int,
        failure_ttl_ms: Optional[int] = None,
        namespace: str = "admission",
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[MetricsCollector] = None,
        gate_name: str = "default",
    ):
        self.redis_url = redis_url
        self.ttl_ms = ttl_ms
        self.failure_ttl_ms = failure_ttl_ms or ttl_ms
        self.namespace = namespace
        self.gate_name = gate_name
        self.metrics = metrics
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=f"dedupe.{gate_name}")
        self.logger = get_logger("admission.dedupe_store")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _make_key(self, key: str) -> str:
        """Generate dedupe document key."""
        return f"{self.namespace}:dedupe:{key}"

    def _ttl_for(self, payload: OperationResult) -> int:
        return self.ttl_ms if payload.success else self.failure_ttl_ms

    async def _read(self, redis_key: str) -> Dict[str, Any]:
        redis_client = await self._get_redis()
        return await redis_client.hgetall(redis_key)

    async def _write(self, redis_key: str, document: Dict[str, str]) -> None:
        redis_client = await self._get_redis()
        # Document and expiry commit together or not at all
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.hset(redis_key, mapping=document)
            pipe.pexpire(redis_key, max(self.ttl_ms, self.failure_ttl_ms))
            await pipe.execute()

    def _parse(self, key: str, raw: Dict[Any, Any]) -> DedupeRecord:
        document = {
            (k.decode("utf-8") if isinstance(k, bytes) else k): (v.decode("utf-8") if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }
        try:
            payload = OperationResult.model_validate_json(document["payload"])
            updated_at = float(document["updatedAt"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError("read", "Malformed dedupe document", {"key": key, "error": str(exc)}) from exc
        return DedupeRecord(key=key, payload=payload, updated_at=updated_at)

    def _record_failure(self, operation: str, key: str, exc: Exception) -> None:
        self.logger.warning(
            "Dedupe store unavailable, failing open",
            operation=operation,
            key=key,
            error=str(exc),
            circuit_state=self.circuit_breaker.state.value
        )
        if self.metrics:
            self.metrics.record_store_error(self.gate_name, operation)

    async def get(self, key: str, now: float) -> Optional[DedupeRecord]:
        """Return the fresh durable record for ``key``, else None."""
        try:
            raw = await self.circuit_breaker.call(self._read, self._make_key(key))
            if not raw:
                return None
            record = self._parse(key, raw)
        except CircuitBreakerOpenException:
            self.logger.debug("Dedupe read skipped, circuit open", key=key)
            return None
        except Exception as exc:
            self._record_failure("read", key, exc)
            return None

        if record.age_ms(now) >= self._ttl_for(record.payload):
            return None
        return record

    async def set(self, key: str, payload: OperationResult, now: float) -> bool:
        """Upsert the durable record for ``key``. Returns False when the write was dropped."""
        document = {
            "payload": payload.model_dump_json(),
            "updatedAt": str(now),
        }
        try:
            await self.circuit_breaker.call(self._write, self._make_key(key), document)
        except CircuitBreakerOpenException:
            self.logger.debug("Dedupe write skipped, circuit open", key=key)
            return False
        except Exception as exc:
            self._record_failure("write", key, exc)
            return False

        self.logger.debug("Dedupe record written", key=key, success=payload.success)
        return True

    async def ping(self) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except Exception as exc:
            self.logger.warning("Dedupe store ping failed", error=str(exc))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "ttl_ms": self.ttl_ms,
            "failure_ttl_ms": self.failure_ttl_ms,
            "circuit_breaker": self.circuit_breaker.get_state(),
        }
