"""
Shared pytest fixtures for the admission layer test suites.
"""

import random
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shared.config import AdmissionConfig
from service_admission.app.caching.dedupe_store import DedupeStore
from service_admission.app.domain.gate import AdmissionGate


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class InMemoryPipeline:
    """Queued commands applied on ``execute`` only if every one of them can run, like MULTI/EXEC."""

    def __init__(self, client: "InMemoryRedis"):
        self._client = client
        self._commands: List[Tuple[str, tuple]] = []

    async def __aenter__(self) -> "InMemoryPipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._commands.clear()

    def hset(self, key: str, mapping: Optional[Dict[str, Any]] = None) -> "InMemoryPipeline":
        self._commands.append(("hset", (key, mapping)))
        return self

    def pexpire(self, key: str, ms: int) -> "InMemoryPipeline":
        self._commands.append(("pexpire", (key, ms)))
        return self

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        for command, _ in commands:
            self._client._check(command)
        return [getattr(self._client, f"_apply_{command}")(*args) for command, args in commands]


class InMemoryRedis:
    """Just enough of the redis.asyncio client for the dedupe store."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.expiries: Dict[str, int] = {}
        self.available = True
        self.failing_commands: Set[str] = set()
        self.reads = 0
        self.writes = 0

    def _check(self, command: str = ""):
        if not self.available or command in self.failing_commands:
            raise RedisConnectionError("Connection refused")

    def _apply_hset(self, key: str, mapping: Optional[Dict[str, Any]]) -> int:
        self.writes += 1
        document = self.hashes.setdefault(key, {})
        added = len(set(mapping or {}) - set(document))
        document.update({field: str(value) for field, value in (mapping or {}).items()})
        return added

    def _apply_pexpire(self, key: str, ms: int) -> bool:
        if key not in self.hashes:
            return False
        self.expiries[key] = ms
        return True

    def pipeline(self, transaction: bool = True) -> InMemoryPipeline:
        return InMemoryPipeline(self)

    async def hgetall(self, key: str) -> Dict[str, str]:
        self._check("hgetall")
        self.reads += 1
        return dict(self.hashes.get(key, {}))

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def aclose(self) -> None:
        return None


def build_dedupe_store(client: InMemoryRedis, config: AdmissionConfig, gate_name: str = "test") -> DedupeStore:
    store = DedupeStore(
        "redis://unused:6379/0",
        ttl_ms=config.dedupe_ttl_ms,
        failure_ttl_ms=config.effective_dedupe_failure_ttl_ms,
        gate_name=gate_name,
    )
    store._redis = client
    return store


@pytest.fixture
def clock():
    return ManualClock(start=1_000_000.0)


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def admission_config():
    """Quiet, deterministic tuning: no sampling loss, no random sweeps."""
    return AdmissionConfig(
        cache_ttl_ms=60_000,
        cache_max_size=100,
        rate_limit_per_identity_per_hour=100,
        rate_limit_global_per_hour=1000,
        burst_fast_threshold_ms=1000,
        burst_max_calls=5,
        sampling_rate=1.0,
        dedupe_ttl_ms=120_000,
        housekeeping_probability=0.0,
        batch_pause_ms=0,
    )


@pytest.fixture
def dedupe_store_factory(fake_redis):
    """Build dedupe stores wired to the in-memory Redis (shared unless told otherwise)."""
    def _build(config: AdmissionConfig, gate_name: str = "test", client: Optional[InMemoryRedis] = None) -> DedupeStore:
        return build_dedupe_store(client or fake_redis, config, gate_name)
    return _build


@pytest.fixture
def gate_factory(admission_config, clock):
    """Build gates on the manual clock, with config overrides."""
    def _build(dedupe_store=None, metrics=None, name="test", **overrides) -> AdmissionGate:
        config = admission_config.model_copy(update=overrides)
        return AdmissionGate(config, name=name, dedupe_store=dedupe_store, clock=clock,
                             rng=random.Random(1), metrics=metrics)
    return _build
