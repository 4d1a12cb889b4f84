"""
Cost Governor Unit Tests
========================
Accounting, pricing, the suspend / continue / stop lifecycle and
thread safety of the limit crossing.
"""
import asyncio
import threading

import pytest

from soc2_agent.errors import CostGovernorError
from soc2_agent.models import TokenUsage
from soc2_agent.tools.cost_governor import (
    DEFAULT_PRICING,
    MODEL_PRICING,
    CostGovernor,
    GovernorState,
    ModelPricing,
    pricing_for,
)

from conftest import FLAT_PRICING


def _usage(input_tokens=0, output_tokens=0, cache_read=0, cache_write=0):
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
    )


class TestPricing:

    def test_cost_per_million(self):
        pricing = ModelPricing(input=3.0, output=15.0, cache_read=0.3, cache_write=3.75)
        assert pricing.cost(1_000_000, 0) == pytest.approx(3.0)
        assert pricing.cost(0, 1_000_000) == pytest.approx(15.0)
        assert pricing.cost(0, 0, 1_000_000, 1_000_000) == pytest.approx(4.05)

    def test_known_model(self):
        assert pricing_for("claude-haiku-4-5") is MODEL_PRICING["claude-haiku-4-5"]

    def test_unknown_model_uses_default(self):
        assert pricing_for("qwen3:4b") is DEFAULT_PRICING
        assert pricing_for(None) is DEFAULT_PRICING

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError):
            CostGovernor(cost_limit_usd=-1)


class TestAccounting:

    def test_starts_at_zero(self, governor):
        cost = governor.snapshot()
        assert cost.total_cost_usd == 0
        assert cost.input_tokens == cost.output_tokens == 0
        assert governor.can_dispatch()

    def test_record_usage_accumulates(self, governor):
        governor.record_usage(_usage(100_000, 50_000, 10_000, 5_000))
        cost = governor.record_usage(_usage(100_000))
        assert cost.input_tokens == 200_000
        assert cost.output_tokens == 50_000
        assert cost.cache_read_tokens == 10_000
        assert cost.cache_write_tokens == 5_000
        assert cost.total_cost_usd == pytest.approx(0.265)

    def test_snapshot_is_a_copy(self, governor):
        snap = governor.snapshot()
        snap.input_tokens = 999
        assert governor.snapshot().input_tokens == 0

    def test_under_limit(self, governor):
        governor.record_usage(_usage(500_000))
        assert governor.check_limit() is False
        assert governor.state == GovernorState.ACTIVE


class TestLifecycle:

    def test_crossing_suspends_and_notifies_once(self):
        events = []
        governor = CostGovernor(1.0, pricing=FLAT_PRICING, on_limit_reached=events.append, total_files=4)
        governor.set_progress(2, 4)
        governor.record_usage(_usage(1_200_000))

        assert governor.check_limit() is True
        assert governor.check_limit() is True
        assert governor.state == GovernorState.SUSPENDED
        assert not governor.can_dispatch()
        assert len(events) == 1
        event = events[0]
        assert event.current_cost_usd == pytest.approx(1.2)
        assert event.cost_limit_usd == pytest.approx(1.0)
        assert event.files_analyzed == 2
        assert event.total_files == 4

    def test_exactly_at_limit_counts_as_crossed(self):
        governor = CostGovernor(1.0, pricing=FLAT_PRICING)
        assert governor.record_and_check(_usage(1_000_000)) is True
        assert governor.state == GovernorState.SUSPENDED

    def test_continue_raises_ceiling_by_increment(self):
        events = []
        governor = CostGovernor(1.0, pricing=FLAT_PRICING, limit_increment_usd=0.5, on_limit_reached=events.append)
        governor.record_and_check(_usage(1_100_000))
        governor.respond_to_cost_limit(True)

        assert governor.state == GovernorState.ACTIVE
        assert governor.can_dispatch()
        assert governor.effective_limit_usd == pytest.approx(1.5)

        assert governor.record_and_check(_usage(300_000)) is False
        assert governor.record_and_check(_usage(200_000)) is True
        assert len(events) == 2
        assert events[1].cost_limit_usd == pytest.approx(1.5)

    def test_increment_defaults_to_original_limit(self):
        governor = CostGovernor(2.0, pricing=FLAT_PRICING)
        governor.record_and_check(_usage(2_000_000))
        governor.respond_to_cost_limit(True)
        assert governor.effective_limit_usd == pytest.approx(4.0)

    def test_stop_is_permanent(self):
        governor = CostGovernor(1.0, pricing=FLAT_PRICING)
        governor.record_and_check(_usage(1_000_000))
        governor.respond_to_cost_limit(False)
        assert governor.state == GovernorState.STOPPED
        assert not governor.can_dispatch()
        with pytest.raises(CostGovernorError):
            governor.respond_to_cost_limit(True)

    def test_respond_without_pending_decision(self, governor):
        with pytest.raises(CostGovernorError):
            governor.respond_to_cost_limit(True)

    def test_mark_file_analyzed_feeds_event(self):
        events = []
        governor = CostGovernor(1.0, pricing=FLAT_PRICING, on_limit_reached=events.append)
        governor.set_progress(0, 3)
        governor.mark_file_analyzed()
        governor.mark_file_analyzed()
        governor.record_and_check(_usage(1_000_000))
        assert events[0].files_analyzed == 2

    def test_callback_may_respond_immediately(self):
        governor = CostGovernor(1.0, pricing=FLAT_PRICING)
        governor.on_limit_reached = lambda event: governor.respond_to_cost_limit(False)
        governor.record_and_check(_usage(1_000_000))
        assert governor.state == GovernorState.STOPPED

    async def test_wait_for_decision(self):
        governor = CostGovernor(1.0, pricing=FLAT_PRICING)
        governor.record_and_check(_usage(1_000_000))

        async def decide():
            await asyncio.sleep(0.05)
            governor.respond_to_cost_limit(True)

        task = asyncio.create_task(decide())
        state = await asyncio.wait_for(governor.wait_for_decision(), timeout=5)
        await task
        assert state == GovernorState.ACTIVE

    async def test_wait_for_decision_returns_when_nothing_pending(self, governor):
        assert await asyncio.wait_for(governor.wait_for_decision(), timeout=5) == GovernorState.ACTIVE


class TestConcurrency:

    def test_concurrent_usage_is_counted_exactly_once(self):
        events = []
        governor = CostGovernor(1.0, pricing=FLAT_PRICING, on_limit_reached=events.append)
        barrier = threading.Barrier(16)

        def spend():
            barrier.wait()
            for _ in range(100):
                governor.record_and_check(_usage(1_000))

        threads = [threading.Thread(target=spend) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert governor.snapshot().input_tokens == 1_600_000
        assert governor.snapshot().total_cost_usd == pytest.approx(1.6)
        # only the first crossing fires the event
        assert len(events) == 1
        assert governor.state == GovernorState.SUSPENDED
