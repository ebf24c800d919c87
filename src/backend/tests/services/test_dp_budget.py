"""
Tests for the differential privacy budget tracker.

Tests:
- Query caching within a window (no re-charging)
- Budget and query-count exhaustion
- Lazy window rotation with a fake clock
- Failed computations
- Concurrency of the budget check
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from core.exceptions import BudgetExhaustedError, InputError, StoreError
from services.dp_budget import (
    DPBudgetConfig,
    DPBudgetTracker,
    DPQueryRequest,
    compute_query_id,
)


def _request(query_type: str = "teacher_summary", **parameters) -> DPQueryRequest:
    return DPQueryRequest(query_type=query_type, parameters=parameters)


@pytest.mark.unit
class TestQueryId:
    def test_parameter_order_does_not_matter(self):
        assert compute_query_id("q", {"a": 1, "b": 2}) == compute_query_id("q", {"b": 2, "a": 1})

    def test_type_and_parameters_distinguish_queries(self):
        assert compute_query_id("q", {"a": 1}) != compute_query_id("q", {"a": 2})
        assert compute_query_id("q", {"a": 1}) != compute_query_id("r", {"a": 1})


@pytest.mark.unit
class TestCaching:
    async def test_identical_query_is_cached_and_charged_once(self, tracker):
        compute = MagicMock(side_effect=lambda eps: {"mean": 4.2})

        first = await tracker.execute_query(_request(teacher_id="t1"), compute)
        second = await tracker.execute_query(_request(teacher_id="t1"), compute)

        assert (first.success, first.cached) == (True, False)
        assert (second.success, second.cached) == (True, True)
        assert first.result == second.result
        assert compute.call_count == 1
        assert second.budget_status.queries_used == 1
        assert second.budget_status.remaining_budget == pytest.approx(0.9)

    async def test_mutating_a_result_does_not_change_the_replay(self, tracker):
        first = await tracker.execute_query(_request(teacher_id="t1"), lambda eps: {"mean": 4.2})
        first.result["mean"] = 1.0

        second = await tracker.execute_query(_request(teacher_id="t1"), lambda eps: {"mean": 0.0})
        second.result["mean"] = 2.0
        third = await tracker.execute_query(_request(teacher_id="t1"), lambda eps: {"mean": 0.0})

        assert third.cached is True
        assert third.result == {"mean": 4.2}

    async def test_async_compute_function(self, tracker):
        async def compute(eps):
            await asyncio.sleep(0)
            return eps * 10

        result = await tracker.execute_query(_request(), compute)
        assert result.result == pytest.approx(1.0)

    async def test_compute_receives_request_epsilon(self, tracker):
        request = DPQueryRequest(query_type="q", parameters={}, epsilon=0.25)
        result = await tracker.execute_query(request, lambda eps: eps)

        assert result.result == 0.25
        assert result.budget_status.remaining_budget == pytest.approx(0.75)

    async def test_history_lists_current_window(self, tracker):
        await tracker.execute_query(_request(teacher_id="t1"), lambda eps: 1)
        await tracker.execute_query(_request(teacher_id="t2"), lambda eps: 2)

        history = tracker.get_query_history()
        assert [entry.result for entry in history] == [1, 2]
        assert all(entry.epsilon_cost == 0.1 for entry in history)


@pytest.mark.unit
class TestExhaustion:
    async def test_ten_queries_spend_the_whole_budget(self, tracker):
        for i in range(10):
            result = await tracker.execute_query(_request(teacher_id=f"t{i}"), lambda eps: i)
            assert result.success is True

        status = tracker.get_budget_status()
        assert status.remaining_budget == 0
        assert status.budget_exhausted is True

    async def test_refused_query_does_not_mutate_budget(self, tracker):
        for i in range(10):
            await tracker.execute_query(_request(teacher_id=f"t{i}"), lambda eps: i)

        compute = MagicMock(return_value=99)
        refused = await tracker.execute_query(_request(teacher_id="t-new"), compute)

        assert refused.success is False
        assert refused.cached is False
        assert refused.error
        compute.assert_not_called()
        assert tracker.get_budget_status().queries_used == 10

    async def test_cached_query_still_answers_when_exhausted(self, tracker):
        for i in range(10):
            await tracker.execute_query(_request(teacher_id=f"t{i}"), lambda eps: i)

        replay = await tracker.execute_query(_request(teacher_id="t3"), lambda eps: -1)
        assert replay.success is True
        assert replay.cached is True
        assert replay.result == 3

    async def test_max_queries_limit(self, clock):
        tracker = DPBudgetTracker(DPBudgetConfig(total_budget=10.0, max_queries=2), clock=clock)
        await tracker.execute_query(_request(teacher_id="a"), lambda eps: 1)
        await tracker.execute_query(_request(teacher_id="b"), lambda eps: 2)

        refused = await tracker.execute_query(_request(teacher_id="c"), lambda eps: 3)
        assert refused.success is False
        assert refused.budget_status.budget_exhausted is True

    async def test_query_larger_than_remaining_budget_refused(self, tracker):
        await tracker.execute_query(DPQueryRequest(query_type="big", epsilon=0.95), lambda eps: 1)

        refused = await tracker.execute_query(_request(teacher_id="t1"), lambda eps: 2)
        assert refused.success is False
        assert "Insufficient" in refused.error
        assert tracker.get_budget_status().remaining_budget == pytest.approx(0.05)

    async def test_raise_for_refusal(self, tracker):
        await tracker.execute_query(DPQueryRequest(query_type="all", epsilon=1.0), lambda eps: 1)
        refused = await tracker.execute_query(_request(), lambda eps: 2)

        assert refused.refused is True
        with pytest.raises(BudgetExhaustedError):
            refused.raise_for_refusal()

    async def test_non_positive_epsilon_rejected(self, tracker):
        with pytest.raises(InputError):
            await tracker.execute_query(DPQueryRequest(query_type="q", epsilon=0), lambda eps: 1)


@pytest.mark.unit
class TestFailedCompute:
    async def test_failure_charges_nothing(self, tracker):
        def boom(eps):
            raise RuntimeError("store offline")

        result = await tracker.execute_query(_request(), boom)

        assert result.success is False
        assert result.error == "Query execution failed"
        assert result.budget_status.queries_used == 0
        assert result.budget_status.remaining_budget == pytest.approx(1.0)

    async def test_failure_raises_store_error_not_budget_exhausted(self, tracker):
        def boom(eps):
            raise RuntimeError("store offline")

        result = await tracker.execute_query(_request(), boom)

        assert result.refused is False
        with pytest.raises(StoreError):
            result.raise_for_refusal()

    async def test_failed_query_can_be_retried(self, tracker):
        async def boom(eps):
            raise RuntimeError("store offline")

        await tracker.execute_query(_request(), boom)
        retry = await tracker.execute_query(_request(), lambda eps: "ok")

        assert retry.success is True
        assert retry.cached is False


@pytest.mark.unit
class TestWindowRotation:
    def test_window_aligned_to_epoch_multiples(self, tracker):
        status = tracker.get_budget_status()
        assert status.window_start == datetime(2024, 5, 17, 10, tzinfo=timezone.utc)
        assert status.window_end == datetime(2024, 5, 17, 11, tzinfo=timezone.utc)

    async def test_rotation_resets_budget_and_cache(self, tracker, clock):
        await tracker.execute_query(_request(teacher_id="t1"), lambda eps: "old")
        clock.advance(hours=1)

        result = await tracker.execute_query(_request(teacher_id="t1"), lambda eps: "new")

        assert result.cached is False
        assert result.result == "new"
        assert result.budget_status.queries_used == 1
        assert result.budget_status.remaining_budget == pytest.approx(0.9)

    async def test_rotation_during_in_flight_query_charges_admitting_window(self, tracker, clock):
        release = asyncio.Event()

        async def compute(eps):
            await release.wait()
            return "late"

        query = asyncio.create_task(tracker.execute_query(_request(teacher_id="t1"), compute))
        await asyncio.sleep(0)
        clock.advance(hours=1)
        rotated = tracker.get_budget_status()
        release.set()
        result = await query

        status = tracker.get_budget_status()
        assert rotated.window_start == datetime(2024, 5, 17, 11, tzinfo=timezone.utc)
        assert status.window_start == rotated.window_start
        assert status.queries_used == 0
        assert status.remaining_budget == 1.0
        assert result.budget_status.window_start == datetime(2024, 5, 17, 10, tzinfo=timezone.utc)
        assert [entry.result for entry in tracker.get_query_history(include_previous=True)] == ["late"]
        assert tracker.get_query_history() == []

    async def test_no_rotation_before_window_end(self, tracker, clock):
        await tracker.execute_query(_request(teacher_id="t1"), lambda eps: "old")
        clock.now = datetime(2024, 5, 17, 10, 59, 59, tzinfo=timezone.utc)

        result = await tracker.execute_query(_request(teacher_id="t1"), lambda eps: "new")
        assert result.cached is True

    async def test_status_rotates_lazily(self, tracker, clock):
        for i in range(10):
            await tracker.execute_query(_request(teacher_id=f"t{i}"), lambda eps: i)
        assert tracker.get_budget_status().budget_exhausted is True

        clock.advance(minutes=55)
        status = tracker.get_budget_status()
        assert status.budget_exhausted is False
        assert status.remaining_budget == 1.0
        assert status.queries_used == 0

    async def test_history_keeps_last_three_windows(self, tracker, clock):
        for hour in range(5):
            await tracker.execute_query(_request(hour=hour), lambda eps, hour=hour: hour)
            clock.advance(hours=1)
        await tracker.execute_query(_request(hour=5), lambda eps: 5)

        results = [entry.result for entry in tracker.get_query_history(include_previous=True)]
        assert results == [3, 4, 5]
        assert [entry.result for entry in tracker.get_query_history()] == [5]


@pytest.mark.unit
class TestResetAndConfig:
    async def test_reset_restores_full_budget(self, tracker):
        for i in range(10):
            await tracker.execute_query(_request(teacher_id=f"t{i}"), lambda eps: i)

        status = await tracker.reset_budget()

        assert status.remaining_budget == 1.0
        assert status.queries_used == 0
        assert tracker.get_query_history(include_previous=True) == []

    async def test_reset_is_logged_as_warning(self, tracker):
        from unittest.mock import patch

        with patch("services.dp_budget.logger") as mock_logger:
            await tracker.reset_budget()
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "dp_budget_reset"

    async def test_update_config(self, tracker):
        config = await tracker.update_config(max_queries=3)
        assert config.max_queries == 3
        assert tracker.get_budget_status().max_queries == 3

    def test_invalid_config_rejected(self):
        with pytest.raises(InputError):
            DPBudgetConfig(total_budget=0)
        with pytest.raises(InputError):
            DPBudgetConfig(window_minutes=-5)


@pytest.mark.unit
class TestConcurrency:
    async def test_concurrent_queries_cannot_overspend(self, clock):
        tracker = DPBudgetTracker(DPBudgetConfig(total_budget=0.5, max_queries=100), clock=clock)

        async def compute(eps):
            await asyncio.sleep(0)
            return eps

        results = await asyncio.gather(
            *(tracker.execute_query(_request(teacher_id=f"t{i}"), compute) for i in range(20))
        )

        assert sum(1 for result in results if result.success) == 5
        assert tracker.get_budget_status().remaining_budget == 0

    async def test_concurrent_identical_queries_compute_once(self, tracker):
        calls = 0

        async def compute(eps):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return "answer"

        results = await asyncio.gather(*(tracker.execute_query(_request(teacher_id="t1"), compute) for _ in range(5)))

        assert calls == 1
        assert sum(1 for result in results if result.cached) == 4
        assert tracker.get_budget_status().queries_used == 1
