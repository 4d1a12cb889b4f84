# soc2_agent/tools/cost_governor.py

"""
Cost Governor
=============
Tracks token spend for one scan and gates further semantic calls once the
per-scan ceiling is crossed.

Lifecycle:
    ACTIVE     - semantic calls may be dispatched
    SUSPENDED  - ceiling crossed; no new calls until the host responds
    STOPPED    - host declined to continue; no semantic calls for the rest of the scan

respond_to_cost_limit(True) resumes by raising the effective ceiling by
limit_increment_usd (the original limit unless configured otherwise).

All counter updates and the limit check happen under one lock; the lock is
never held while a model call is in flight.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from soc2_agent.errors import CostGovernorError
from soc2_agent.models import CostLimitEvent, ScanCost, TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float
    cache_read: float = 0.0
    cache_write: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int, cache_read_tokens: int = 0, cache_write_tokens: int = 0) -> float:
        return (
            input_tokens * self.input
            + output_tokens * self.output
            + cache_read_tokens * self.cache_read
            + cache_write_tokens * self.cache_write
        ) / 1_000_000


# Unpriced models (e.g. local Ollama models) are billed at this rate
DEFAULT_PRICING = ModelPricing(input=1.00, output=5.00, cache_read=0.10, cache_write=1.25)

MODEL_PRICING: Dict[str, ModelPricing] = {
    "claude-haiku-4-5": ModelPricing(input=1.00, output=5.00, cache_read=0.10, cache_write=1.25),
    "claude-3-5-haiku-latest": ModelPricing(input=0.80, output=4.00, cache_read=0.08, cache_write=1.00),
    "claude-sonnet-4-5": ModelPricing(input=3.00, output=15.00, cache_read=0.30, cache_write=3.75),
    "grok-code-fast-1": ModelPricing(input=0.20, output=1.50, cache_read=0.02),
    "gpt-4o-mini": ModelPricing(input=0.15, output=0.60, cache_read=0.075),
}


def pricing_for(model_name: Optional[str]) -> ModelPricing:
    if model_name and model_name in MODEL_PRICING:
        return MODEL_PRICING[model_name]
    return DEFAULT_PRICING


class GovernorState(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    STOPPED = "stopped"


class CostGovernor:
    def __init__(
        self,
        cost_limit_usd: float,
        model_name: Optional[str] = None,
        pricing: Optional[ModelPricing] = None,
        limit_increment_usd: Optional[float] = None,
        on_limit_reached: Optional[Callable[[CostLimitEvent], None]] = None,
        total_files: int = 0,
    ):
        if cost_limit_usd < 0:
            raise ValueError("cost_limit_usd must be non-negative")
        self.cost_limit_usd = float(cost_limit_usd)
        self.limit_increment_usd = float(
            cost_limit_usd if limit_increment_usd is None else limit_increment_usd
        )
        self.pricing = pricing or pricing_for(model_name)
        self.on_limit_reached = on_limit_reached

        self._lock = threading.Lock()
        self._decided = threading.Event()
        self._decided.set()
        self._cost = ScanCost()
        self._effective_limit = self.cost_limit_usd
        self._state = GovernorState.ACTIVE
        self._files_analyzed = 0
        self._total_files = total_files

    # --- read-only views ---

    @property
    def state(self) -> GovernorState:
        with self._lock:
            return self._state

    @property
    def effective_limit_usd(self) -> float:
        with self._lock:
            return self._effective_limit

    def snapshot(self) -> ScanCost:
        with self._lock:
            return self._cost.model_copy()

    def can_dispatch(self) -> bool:
        with self._lock:
            return self._state == GovernorState.ACTIVE

    # --- progress ---

    def set_progress(self, files_analyzed: int, total_files: int):
        with self._lock:
            self._files_analyzed = files_analyzed
            self._total_files = total_files

    def mark_file_analyzed(self):
        with self._lock:
            self._files_analyzed += 1

    # --- accounting ---

    def _apply(self, usage: TokenUsage):
        cost = self._cost
        cost.input_tokens += usage.input_tokens
        cost.output_tokens += usage.output_tokens
        cost.cache_read_tokens += usage.cache_read_tokens
        cost.cache_write_tokens += usage.cache_write_tokens
        cost.total_cost_usd = self.pricing.cost(
            cost.input_tokens,
            cost.output_tokens,
            cost.cache_read_tokens,
            cost.cache_write_tokens,
        )

    def _crossing_event(self) -> Optional[CostLimitEvent]:
        # caller holds the lock
        if self._cost.total_cost_usd < self._effective_limit or self._state != GovernorState.ACTIVE:
            return None
        self._state = GovernorState.SUSPENDED
        self._decided.clear()
        return CostLimitEvent(
            current_cost_usd=self._cost.total_cost_usd,
            cost_limit_usd=self._effective_limit,
            files_analyzed=self._files_analyzed,
            total_files=self._total_files,
        )

    def _notify(self, event: Optional[CostLimitEvent]):
        if event is None:
            return
        logger.warning(
            "Cost limit reached: $%.4f of $%.2f after %d/%d file(s); semantic analysis suspended",
            event.current_cost_usd,
            event.cost_limit_usd,
            event.files_analyzed,
            event.total_files,
        )
        if self.on_limit_reached is not None:
            self.on_limit_reached(event)

    def record_usage(self, usage: TokenUsage) -> ScanCost:
        """Adds one invocation's tokens and returns the updated totals."""
        with self._lock:
            self._apply(usage)
            return self._cost.model_copy()

    def check_limit(self) -> bool:
        """
        True when spend has reached the effective ceiling.

        The first crossing suspends the governor and fires on_limit_reached
        (outside the lock).
        """
        with self._lock:
            crossed = self._cost.total_cost_usd >= self._effective_limit
            event = self._crossing_event()
        self._notify(event)
        return crossed

    def record_and_check(self, usage: TokenUsage) -> bool:
        """record_usage and check_limit as one atomic step."""
        with self._lock:
            self._apply(usage)
            crossed = self._cost.total_cost_usd >= self._effective_limit
            event = self._crossing_event()
        self._notify(event)
        return crossed

    # --- host decision ---

    def respond_to_cost_limit(self, continue_scan: bool):
        with self._lock:
            if self._state != GovernorState.SUSPENDED:
                raise CostGovernorError(
                    f"No cost-limit decision pending (governor is {self._state.value})"
                )
            if continue_scan:
                self._effective_limit += self.limit_increment_usd
                # Still over the raised ceiling: the next check suspends again
                self._state = GovernorState.ACTIVE
                logger.info("Scan continues; cost ceiling raised to $%.2f", self._effective_limit)
            else:
                self._state = GovernorState.STOPPED
                logger.info("Scan stopped at cost limit; semantic analysis disabled")
            self._decided.set()

    def stop(self):
        """Disables semantic calls for the rest of the scan without a pending limit event."""
        with self._lock:
            self._state = GovernorState.STOPPED
            self._decided.set()

    async def wait_for_decision(self, timeout: Optional[float] = None) -> GovernorState:
        """Waits (without blocking the event loop) until no decision is pending."""
        await asyncio.to_thread(self._decided.wait, timeout)
        return self.state
