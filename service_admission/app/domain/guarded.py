"""
Guarded endpoints: an operation wired to an admission gate.

A guarded handler only supplies an identity, a key (derived from the
operation name, identity and params), a gate configured for it, and the
operation itself. ``invoke`` does the evaluate -> run -> record dance and
turns the decision into a response the calling layer can branch on.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from shared.errors import OperationError, ValidationError
from shared.logging import bind_admission_context, get_logger
from shared.metrics import MetricsCollector
from .decisions import (
    EvaluateOptions,
    Operation,
    OperationResult,
    Reject,
    ServeCached,
)
from .fingerprint import make_fingerprint
from .gate import AdmissionGate


KeyBuilder = Callable[[str, str, Dict[str, Any]], str]


class GuardedResponse(BaseModel):
    """Outcome of one guarded call as seen by the calling layer."""

    status: str  # executed | cached | rejected | error
    success: bool
    identity: Optional[str] = None
    payload: Any = None
    error: Optional[str] = None
    cached: bool = False
    cache_source: Optional[str] = None
    cache_age_ms: Optional[float] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class BatchItem(BaseModel):
    identity: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BatchResponse(BaseModel):
    success: bool = True
    message: str
    results: List[GuardedResponse]
    summary: BatchSummary


class GuardedEndpoint:
    """Runs ``operation`` behind ``gate``."""

    def __init__(
        self,
        name: str,
        gate: AdmissionGate,
        operation: Operation,
        *,
        key_builder: Optional[KeyBuilder] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name
        self.gate = gate
        self.operation = operation
        self.key_builder = key_builder or make_fingerprint
        self.metrics = metrics
        self.logger = get_logger("admission.guarded")

    async def invoke(
        self,
        identity: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        force: bool = False,
        bypass_cache: bool = False,
    ) -> GuardedResponse:
        """Evaluate, run on admission, record, and describe what happened."""
        params = params or {}
        if not isinstance(identity, str):
            raise ValidationError("identity must be a non-empty string", {"field": "identity"})
        bind_admission_context(identity=identity, gate=self.name)

        key = self.key_builder(self.name, identity, params)
        decision = await self.gate.evaluate(identity, key, EvaluateOptions(force=force, bypass_cache=bypass_cache))

        if isinstance(decision, Reject):
            return GuardedResponse(
                status="rejected",
                success=False,
                identity=identity,
                reason=decision.reason.value,
                message=decision.message,
                meta=decision.meta,
            )

        if isinstance(decision, ServeCached):
            return GuardedResponse(
                status="cached",
                success=decision.payload.success,
                identity=identity,
                payload=decision.payload.payload,
                error=decision.payload.error,
                cached=True,
                cache_source=decision.source.value,
                cache_age_ms=decision.age_ms,
                message="Served from cache",
            )

        result = await self._run(identity, params)
        await self.gate.record(decision.token, result)

        self.logger.info(
            "Guarded operation executed",
            endpoint=self.name,
            identity=identity,
            success=result.success,
            forced=force
        )
        return GuardedResponse(
            status="executed",
            success=result.success,
            identity=identity,
            payload=result.payload,
            error=result.error,
            message="Operation executed" if result.success else "Operation failed",
        )

    async def _run(self, identity: str, params: Dict[str, Any]) -> OperationResult:
        try:
            if self.metrics:
                with self.metrics.time_operation("admission_operation_duration_seconds", endpoint=self.name):
                    result = await self.operation(identity, params)
            else:
                result = await self.operation(identity, params)
        except OperationError as exc:
            self.logger.warning(
                "Guarded operation failed",
                endpoint=self.name,
                identity=identity,
                error=exc.message
            )
            return OperationResult.failed(exc.message, payload=exc.details or None)

        if not isinstance(result, OperationResult):
            result = OperationResult.model_validate(result)
        return result

    async def invoke_batch(
        self,
        items: List[BatchItem],
        *,
        force: bool = False,
        bypass_cache: bool = False,
    ) -> BatchResponse:
        """Invoke for many identities, a chunk at a time."""
        config = self.gate.config
        if not items:
            raise ValidationError("Batch requests array is required")
        if len(items) > config.batch_max_items:
            raise ValidationError(
                f"Maximum {config.batch_max_items} requests per batch",
                {"requested": len(items)},
            )

        results: List[GuardedResponse] = []
        chunk_size = config.batch_concurrency
        for start in range(0, len(items), chunk_size):
            chunk = items[start:start + chunk_size]
            results.extend(await asyncio.gather(
                *(self._invoke_item(item, force, bypass_cache) for item in chunk)
            ))

            if start + chunk_size < len(items) and config.batch_pause_ms:
                await asyncio.sleep(config.batch_pause_ms / 1000)

        successful = sum(1 for result in results if result.success)
        failed = len(results) - successful
        self.logger.info(
            "Batch completed",
            endpoint=self.name,
            total=len(results),
            successful=successful,
            failed=failed
        )
        return BatchResponse(
            message=f"Batch {self.name} completed: {successful} successful, {failed} failed",
            results=results,
            summary=BatchSummary(total=len(results), successful=successful, failed=failed),
        )

    async def _invoke_item(self, item: BatchItem, force: bool, bypass_cache: bool) -> GuardedResponse:
        if not item.identity:
            return GuardedResponse(
                status="error",
                success=False,
                identity=item.identity,
                reason="missing_identity",
                message="Missing identity",
            )

        try:
            return await self.invoke(item.identity, item.params, force=force, bypass_cache=bypass_cache)
        except ValidationError as exc:
            return GuardedResponse(
                status="error",
                success=False,
                identity=item.identity,
                reason="invalid_request",
                message=exc.message,
            )
        except Exception as exc:
            self.logger.error(
                "Batch item failed",
                endpoint=self.name,
                identity=item.identity,
                error=str(exc),
                exc_info=True
            )
            return GuardedResponse(
                status="error",
                success=False,
                identity=item.identity,
                reason="error",
                message=f"Error: {exc}",
            )
