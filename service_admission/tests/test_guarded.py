"""
Unit tests for guarded endpoints and batch invocation.
"""

import pytest
from unittest.mock import AsyncMock, patch

from shared.errors import OperationError, ValidationError
from shared.metrics import MetricsCollector
from service_admission.app.domain.decisions import OperationResult
from service_admission.app.domain.fingerprint import make_fingerprint
from service_admission.app.domain.guarded import BatchItem, GuardedEndpoint


class CountingOperation:
    """Operation double that remembers every call."""

    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result if result is not None else OperationResult.ok({"taskId": "t-1"})
        self.error = error

    async def __call__(self, identity, params):
        self.calls.append((identity, params))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def operation():
    return CountingOperation()


@pytest.fixture
def endpoint(gate_factory, operation):
    """Guarded create_task endpoint over a quiet gate."""
    return GuardedEndpoint("create_task", gate_factory(name="create_task"), operation)


class TestFingerprint:
    """Test cases for key derivation."""

    def test_without_params(self):
        assert make_fingerprint("gmail_status", "u1") == "gmail_status:u1"
        assert make_fingerprint("gmail_status", "u1", {}) == "gmail_status:u1"

    def test_param_order_does_not_matter(self):
        first = make_fingerprint("create_task", "u1", {"title": "Call", "due": "2026-01-01"})
        second = make_fingerprint("create_task", "u1", {"due": "2026-01-01", "title": "Call"})

        assert first == second
        assert first.startswith("create_task:u1:")

    def test_params_change_the_key(self):
        assert make_fingerprint("create_task", "u1", {"title": "a"}) != \
            make_fingerprint("create_task", "u1", {"title": "b"})


class TestGuardedEndpoint:
    """Test cases for GuardedEndpoint.invoke."""

    @pytest.mark.asyncio
    async def test_first_call_executes(self, endpoint, operation):
        response = await endpoint.invoke("u1", {"title": "Follow up"})

        assert response.status == "executed"
        assert response.success is True
        assert response.payload == {"taskId": "t-1"}
        assert response.cached is False
        assert operation.calls == [("u1", {"title": "Follow up"})]

    @pytest.mark.asyncio
    async def test_repeat_call_served_from_cache(self, endpoint, operation):
        await endpoint.invoke("u1", {"title": "Follow up"})
        response = await endpoint.invoke("u1", {"title": "Follow up"})

        assert response.status == "cached"
        assert response.cached is True
        assert response.cache_source == "local"
        assert response.payload == {"taskId": "t-1"}
        assert len(operation.calls) == 1

    @pytest.mark.asyncio
    async def test_different_params_execute_again(self, endpoint, operation):
        await endpoint.invoke("u1", {"title": "a"})
        await endpoint.invoke("u1", {"title": "b"})

        assert len(operation.calls) == 2

    @pytest.mark.asyncio
    async def test_operation_error_is_cached(self, gate_factory):
        """A failing operation is not re-run while its failure is fresh."""
        operation = CountingOperation(error=OperationError("Calendar API unavailable"))
        endpoint = GuardedEndpoint("calendar_status", gate_factory(), operation)

        first = await endpoint.invoke("u1")
        second = await endpoint.invoke("u1")

        assert first.status == "executed"
        assert first.success is False
        assert first.error == "Calendar API unavailable"
        assert second.status == "cached"
        assert second.success is False
        assert second.error == "Calendar API unavailable"
        assert len(operation.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, gate_factory):
        operation = CountingOperation(error=RuntimeError("bug"))
        endpoint = GuardedEndpoint("create_task", gate_factory(), operation)

        with pytest.raises(RuntimeError):
            await endpoint.invoke("u1")

    @pytest.mark.asyncio
    async def test_plain_dict_result_accepted(self, gate_factory):
        operation = CountingOperation(result={"success": True, "payload": [1, 2]})
        endpoint = GuardedEndpoint("create_task", gate_factory(), operation)

        response = await endpoint.invoke("u1")

        assert response.success is True
        assert response.payload == [1, 2]

    @pytest.mark.asyncio
    async def test_rejection_described(self, gate_factory, operation):
        endpoint = GuardedEndpoint("gmail_status", gate_factory(sampling_rate=0.0), operation)

        response = await endpoint.invoke("u1")

        assert response.status == "rejected"
        assert response.success is False
        assert response.reason == "sampled"
        assert response.message == "Skipped due to sampling"
        assert response.meta == {"sampling_rate": 0.0}
        assert operation.calls == []

    @pytest.mark.asyncio
    async def test_force_runs_despite_sampling(self, gate_factory, operation):
        endpoint = GuardedEndpoint("gmail_status", gate_factory(sampling_rate=0.0), operation)

        response = await endpoint.invoke("u1", force=True)

        assert response.status == "executed"
        assert len(operation.calls) == 1

    @pytest.mark.asyncio
    async def test_bypass_cache_runs_again(self, endpoint, operation):
        await endpoint.invoke("u1")
        response = await endpoint.invoke("u1", bypass_cache=True)

        assert response.status == "executed"
        assert len(operation.calls) == 2

    @pytest.mark.asyncio
    async def test_non_string_identity_rejected(self, endpoint):
        with pytest.raises(ValidationError):
            await endpoint.invoke(123)

    @pytest.mark.asyncio
    async def test_operation_duration_recorded(self, gate_factory, operation):
        metrics = MetricsCollector("admission")
        endpoint = GuardedEndpoint("create_task", gate_factory(), operation, metrics=metrics)

        await endpoint.invoke("u1")

        assert metrics.registry.get_sample_value(
            "admission_operation_duration_seconds_count", {"endpoint": "create_task"}) == 1

    @pytest.mark.asyncio
    async def test_custom_key_builder(self, gate_factory, operation):
        """A key builder that ignores params makes every call share one result."""
        endpoint = GuardedEndpoint(
            "gmail_status",
            gate_factory(),
            operation,
            key_builder=lambda name, identity, params: f"{name}:{identity}",
        )

        await endpoint.invoke("u1", {"page": 1})
        response = await endpoint.invoke("u1", {"page": 2})

        assert response.status == "cached"
        assert len(operation.calls) == 1


class TestBatchInvocation:
    """Test cases for GuardedEndpoint.invoke_batch."""

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, endpoint):
        with pytest.raises(ValidationError) as exc_info:
            await endpoint.invoke_batch([])

        assert exc_info.value.message == "Batch requests array is required"

    @pytest.mark.asyncio
    async def test_oversize_batch_rejected(self, endpoint, operation):
        items = [BatchItem(identity=f"u{i}") for i in range(21)]

        with pytest.raises(ValidationError) as exc_info:
            await endpoint.invoke_batch(items)

        assert exc_info.value.message == "Maximum 20 requests per batch"
        assert operation.calls == []

    @pytest.mark.asyncio
    async def test_results_in_request_order(self, endpoint):
        items = [BatchItem(identity=f"u{i}", params={"n": i}) for i in range(15)]

        response = await endpoint.invoke_batch(items)

        assert [result.identity for result in response.results] == [f"u{i}" for i in range(15)]
        assert response.summary.total == 15
        assert response.summary.successful == 15
        assert response.message == "Batch create_task completed: 15 successful, 0 failed"

    @pytest.mark.asyncio
    async def test_item_errors_reported_not_raised(self, gate_factory):
        async def flaky(identity, params):
            if identity == "boom":
                raise RuntimeError("connection reset")
            return OperationResult.ok(identity)

        endpoint = GuardedEndpoint("create_task", gate_factory(), flaky)
        items = [
            BatchItem(identity="u1"),
            BatchItem(identity=None),
            BatchItem(identity="x" * 600),
            BatchItem(identity="boom"),
        ]

        response = await endpoint.invoke_batch(items)
        results = response.results

        assert results[0].status == "executed"
        assert results[1].reason == "missing_identity"
        assert results[2].reason == "invalid_request"
        assert results[3].reason == "error"
        assert results[3].message == "Error: connection reset"
        assert response.summary.successful == 1
        assert response.summary.failed == 3

    @pytest.mark.asyncio
    async def test_pause_between_chunks(self, gate_factory, operation):
        endpoint = GuardedEndpoint("create_task", gate_factory(batch_pause_ms=100), operation)
        items = [BatchItem(identity=f"u{i}") for i in range(20)]

        with patch("service_admission.app.domain.guarded.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            response = await endpoint.invoke_batch(items)

        mock_sleep.assert_awaited_once_with(0.1)
        assert response.summary.total == 20

    @pytest.mark.asyncio
    async def test_batch_honours_force(self, gate_factory, operation):
        endpoint = GuardedEndpoint("gmail_status", gate_factory(sampling_rate=0.0), operation)
        items = [BatchItem(identity=f"u{i}") for i in range(3)]

        rejected = await endpoint.invoke_batch(items)
        forced = await endpoint.invoke_batch(items, force=True)

        assert all(result.status == "rejected" for result in rejected.results)
        assert all(result.status == "executed" for result in forced.results)
