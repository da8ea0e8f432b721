"""
Admission service for the CRM admission layer.

Hosts one admission gate per registered guarded operation and exposes the
guarded calls, batch calls and gate housekeeping over HTTP.
"""

import random
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import AdmissionConfig, ServiceConfig
from shared.errors import NotFoundError
from .caching.dedupe_store import DedupeStore
from .domain.decisions import Operation
from .domain.gate import create_admission_gate
from .domain.guarded import BatchItem, BatchResponse, GuardedEndpoint, GuardedResponse
from .domain.profiles import AdmissionProfiles


class GuardedRequest(BaseModel):
    identity: str
    params: Dict[str, Any] = Field(default_factory=dict)
    force: bool = False
    bypass_cache: bool = False


class BatchRequest(BaseModel):
    requests: List[BatchItem] = Field(default_factory=list)
    force: bool = False
    bypass_cache: bool = False


class AdmissionService(BaseService):
    """Admission service implementation."""

    def __init__(
        self,
        operations: Optional[Dict[str, Operation]] = None,
        *,
        config: Optional[ServiceConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        rng_factory: Callable[[], random.Random] = random.Random,
    ):
        super().__init__("admission", 8020, config=config)
        self.profiles = AdmissionProfiles(self.config.profiles_file)
        self.endpoints: Dict[str, GuardedEndpoint] = {}
        # Profile-tuned endpoints and the dedupe store each was given, if any
        self._profile_backed: Dict[str, Optional[DedupeStore]] = {}
        self._clock = clock
        self._rng_factory = rng_factory

        for name, operation in (operations or {}).items():
            self.register_operation(name, operation)

        @self.app.on_event("shutdown")
        async def _shutdown():
            for endpoint in self.endpoints.values():
                await endpoint.gate.close()

        self._setup_admission_routes()

    def register_operation(
        self,
        name: str,
        operation: Operation,
        *,
        config: Optional[AdmissionConfig] = None,
        dedupe_store: Optional[DedupeStore] = None,
    ) -> GuardedEndpoint:
        """Put ``operation`` behind a new gate tuned by the profile called ``name``."""
        gate = create_admission_gate(
            config or self.profiles.get(name),
            name=name,
            redis_url=self.config.redis_url,
            namespace=self.config.dedupe_namespace,
            dedupe_store=dedupe_store,
            clock=self._clock,
            rng=self._rng_factory(),
            metrics=self.metrics,
        )
        endpoint = GuardedEndpoint(name, gate, operation, metrics=self.metrics)
        self.endpoints[name] = endpoint
        if config is None:
            self._profile_backed[name] = dedupe_store
        else:
            self._profile_backed.pop(name, None)
        self.logger.info("Registered guarded operation", endpoint=name,
                         durable=gate.dedupe_store is not None)
        return endpoint

    async def refresh_profiles(self) -> List[str]:
        """Reload the profiles file and rebuild the gates whose tuning changed.

        A rebuilt gate starts with an empty local cache and fresh rate
        counters. The old gate finishes its durable writes first; its dedupe
        store is closed unless the caller supplied it.
        """
        self.profiles.refresh()
        rebuilt = []
        for name, dedupe_store in list(self._profile_backed.items()):
            previous = self.endpoints[name]
            if self.profiles.get(name) == previous.gate.config:
                continue
            self.register_operation(name, previous.operation, dedupe_store=dedupe_store)
            if dedupe_store is None:
                await previous.gate.close()
            else:
                await previous.gate.drain()
            rebuilt.append(name)

        self.logger.info("Admission profiles refreshed", rebuilt=rebuilt)
        return rebuilt

    def _get_endpoint(self, name: str) -> GuardedEndpoint:
        endpoint = self.endpoints.get(name)
        if endpoint is None:
            raise NotFoundError(f"Unknown guarded endpoint: {name}", {"endpoint": name})
        return endpoint

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report dedupe store reachability. A down store degrades, it does not fail."""
        stores = [endpoint.gate.dedupe_store for endpoint in self.endpoints.values()
                  if endpoint.gate.dedupe_store is not None]
        if not stores:
            return {}
        reachable = all([await store.ping() for store in stores])
        return {"redis": "ok" if reachable else "unavailable"}

    def _setup_admission_routes(self):
        """Set up admission routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "admission",
                "message": "CRM admission layer - Admission Gate",
                "endpoints": sorted(self.endpoints),
            }

        @self.app.get("/api/v1/admission/endpoints")
        async def list_endpoints():
            """Registered guarded endpoints and their effective tuning."""
            return {
                "endpoints": [
                    {"name": name, "config": endpoint.gate.config.model_dump()}
                    for name, endpoint in sorted(self.endpoints.items())
                ],
                "count": len(self.endpoints),
            }

        @self.app.get("/api/v1/admission/profiles")
        async def list_profiles():
            return {"profiles": self.profiles.names()}

        @self.app.post("/api/v1/admission/profiles/refresh")
        async def refresh_profiles():
            """Reload profile overrides and rebuild the affected gates."""
            rebuilt = await self.refresh_profiles()
            return {"profiles": self.profiles.names(), "rebuilt": rebuilt}

        @self.app.post("/api/v1/guarded/{name}", response_model=GuardedResponse)
        async def invoke_guarded(name: str, request: GuardedRequest):
            """Run one guarded call."""
            endpoint = self._get_endpoint(name)
            return await endpoint.invoke(
                request.identity,
                request.params,
                force=request.force,
                bypass_cache=request.bypass_cache,
            )

        @self.app.post("/api/v1/guarded/{name}/batch", response_model=BatchResponse)
        async def invoke_guarded_batch(name: str, request: BatchRequest):
            """Run a batch of guarded calls."""
            endpoint = self._get_endpoint(name)
            return await endpoint.invoke_batch(
                request.requests,
                force=request.force,
                bypass_cache=request.bypass_cache,
            )

        @self.app.get("/api/v1/admission/{name}/stats")
        async def get_gate_stats(name: str):
            """Gate statistics."""
            return self._get_endpoint(name).gate.get_stats()

        @self.app.post("/api/v1/admission/{name}/sweep")
        async def sweep_gate(name: str):
            """Run housekeeping on a gate now."""
            removed = self._get_endpoint(name).gate.sweep()
            return {"gate": name, "removed": removed}


def create_app(operations: Optional[Dict[str, Operation]] = None):
    """Create FastAPI application."""
    service = AdmissionService(operations)
    return service.app


if __name__ == "__main__":
    service = AdmissionService()
    service.run()
