"""
Differential Privacy Budget Tracker.

Every statistical read over evaluation data is routed through
DPBudgetTracker.execute_query, which:
- caches each distinct query (type + parameters) for the current window,
  so repeating a question replays the same noised answer instead of
  drawing fresh noise that could be averaged away
- charges epsilon once per distinct query against a per-window budget
- refuses queries once the budget or the query count is spent

Windows are aligned to multiples of window_minutes since the Unix epoch and
rotate lazily: the first operation after window_end starts a fresh window.
There is no background timer.
"""

import asyncio
import copy
import hashlib
import inspect
import json
import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import BudgetExhaustedError, InputError, StoreError

logger = structlog.get_logger(__name__)

# Remaining budget below this counts as spent
BUDGET_EPSILON = 1e-9
HISTORY_WINDOWS = 3

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Configuration and Models
# =============================================================================


@dataclass(frozen=True)
class DPBudgetConfig:
    total_budget: float = 1.0
    window_minutes: int = 60
    max_queries: int = 10
    query_epsilon: float = 0.1

    def __post_init__(self) -> None:
        if self.total_budget <= 0:
            raise InputError("total_budget must be positive")
        if self.window_minutes <= 0:
            raise InputError("window_minutes must be positive")
        if self.max_queries <= 0:
            raise InputError("max_queries must be positive")
        if self.query_epsilon <= 0:
            raise InputError("query_epsilon must be positive")

    @classmethod
    def from_settings(cls) -> "DPBudgetConfig":
        return cls(
            total_budget=settings.DP_TOTAL_BUDGET,
            window_minutes=settings.DP_WINDOW_MINUTES,
            max_queries=settings.DP_MAX_QUERIES,
            query_epsilon=settings.DP_QUERY_EPSILON,
        )


@dataclass
class DPQueryLedgerEntry:
    query_id: str
    timestamp: datetime
    epsilon_cost: float
    result: Any
    query_type: str


@dataclass
class DPBudgetWindow:
    """One accounting epoch and its query ledger."""

    window_start: datetime
    window_end: datetime
    ledger: dict[str, DPQueryLedgerEntry] = field(default_factory=dict)

    @property
    def window_id(self) -> str:
        return self.window_start.isoformat()

    @property
    def query_count(self) -> int:
        return len(self.ledger)

    def spent(self) -> float:
        return math.fsum(entry.epsilon_cost for entry in self.ledger.values())


class DPQueryRequest(BaseModel):
    query_type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    epsilon: Optional[float] = None


class DPBudgetStatus(BaseModel):
    remaining_budget: float
    queries_used: int
    window_start: datetime
    window_end: datetime
    budget_exhausted: bool
    max_queries: int
    total_budget: float


class DPQueryResult(BaseModel):
    success: bool
    cached: bool = False
    result: Any = None
    budget_status: DPBudgetStatus
    error: Optional[str] = None
    # True only when the budget check turned the query away
    refused: bool = False

    def raise_for_refusal(self) -> "DPQueryResult":
        """
        Raise if the query produced no answer.

        A budget refusal raises BudgetExhaustedError; a failed computation
        raises StoreError and leaves the budget untouched.
        """
        if self.refused:
            raise BudgetExhaustedError(self.error or BudgetExhaustedError().message)
        if not self.success:
            raise StoreError(self.error or StoreError().message)
        return self


def compute_query_id(query_type: str, parameters: dict[str, Any]) -> str:
    """Deterministic id for a query: sha256 of canonical JSON."""
    canonical = json.dumps(
        {"type": query_type, "params": parameters},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Tracker
# =============================================================================


class DPBudgetTracker:
    """
    Per-window epsilon accounting with a query result cache.

    All mutating async operations hold one asyncio.Lock, including window
    rotation, so two concurrent queries cannot both pass the budget check.
    """

    def __init__(
        self,
        config: Optional[DPBudgetConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or DPBudgetConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._window = self._new_window(self._clock())
        self._history: deque[DPBudgetWindow] = deque(maxlen=HISTORY_WINDOWS - 1)

    def _new_window(self, now: datetime) -> DPBudgetWindow:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        window_seconds = self.config.window_minutes * 60
        elapsed = math.floor((now - _EPOCH).total_seconds())
        start = _EPOCH + timedelta(seconds=elapsed - elapsed % window_seconds)
        return DPBudgetWindow(window_start=start, window_end=start + timedelta(seconds=window_seconds))

    def _rotate_if_expired(self) -> None:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if now >= self._window.window_end:
            logger.info(
                "dp_budget_window_rotated",
                previous_window=self._window.window_id,
                queries_used=self._window.query_count,
            )
            self._history.append(self._window)
            self._window = self._new_window(now)

    def _remaining_budget(self, window: Optional[DPBudgetWindow] = None) -> float:
        if window is None:
            window = self._window
        remaining = self.config.total_budget - window.spent()
        return 0.0 if remaining < BUDGET_EPSILON else remaining

    def _status(self, window: Optional[DPBudgetWindow] = None) -> DPBudgetStatus:
        if window is None:
            window = self._window
        remaining = self._remaining_budget(window)
        queries_used = window.query_count
        return DPBudgetStatus(
            remaining_budget=remaining,
            queries_used=queries_used,
            window_start=window.window_start,
            window_end=window.window_end,
            budget_exhausted=remaining <= 0 or queries_used >= self.config.max_queries,
            max_queries=self.config.max_queries,
            total_budget=self.config.total_budget,
        )

    def get_budget_status(self) -> DPBudgetStatus:
        """
        Current window's budget.

        Rotates without the lock. A query already holding the lock keeps
        charging the window it was admitted in.
        """
        self._rotate_if_expired()
        return self._status()

    async def execute_query(
        self,
        request: DPQueryRequest,
        compute_fn: Callable[[float], Any],
    ) -> DPQueryResult:
        """
        Run a noised query under the budget.

        compute_fn receives the epsilon to spend and may be sync or async.
        A failing compute_fn charges nothing. The charge lands in the window
        the query was admitted in, even if a status read rotates the window
        while compute_fn is awaited. Cached answers are returned as copies.
        """
        epsilon = request.epsilon if request.epsilon is not None else self.config.query_epsilon
        if epsilon <= 0:
            raise InputError("epsilon must be positive")

        async with self._lock:
            self._rotate_if_expired()
            window = self._window
            query_id = compute_query_id(request.query_type, request.parameters)

            cached_entry = window.ledger.get(query_id)
            if cached_entry is not None:
                logger.info("dp_query_cache_hit", query_type=request.query_type)
                return DPQueryResult(
                    success=True,
                    cached=True,
                    result=copy.deepcopy(cached_entry.result),
                    budget_status=self._status(window),
                )

            status = self._status(window)
            if status.budget_exhausted:
                error = "Privacy budget exhausted. Please try again later."
            elif status.remaining_budget + BUDGET_EPSILON < epsilon:
                error = (
                    f"Insufficient privacy budget: query needs {epsilon}, "
                    f"{status.remaining_budget:.4f} remaining in this window."
                )
            else:
                error = None

            if error is not None:
                logger.warning(
                    "dp_query_refused",
                    query_type=request.query_type,
                    remaining_budget=status.remaining_budget,
                    queries_used=status.queries_used,
                )
                return DPQueryResult(
                    success=False,
                    cached=False,
                    budget_status=status,
                    error=error,
                    refused=True,
                )

            try:
                result = compute_fn(epsilon)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception("dp_query_failed", query_type=request.query_type)
                return DPQueryResult(
                    success=False,
                    cached=False,
                    budget_status=self._status(window),
                    error="Query execution failed",
                )

            window.ledger[query_id] = DPQueryLedgerEntry(
                query_id=query_id,
                timestamp=self._clock(),
                epsilon_cost=epsilon,
                result=copy.deepcopy(result),
                query_type=request.query_type,
            )
            status = self._status(window)
            logger.info(
                "dp_query_executed",
                query_type=request.query_type,
                epsilon=epsilon,
                remaining_budget=status.remaining_budget,
            )
            return DPQueryResult(success=True, cached=False, result=result, budget_status=status)

    async def reset_budget(self) -> DPBudgetStatus:
        """
        Discard every ledger and start a full-budget window.

        Emergency use only: cached answers are lost, so repeated queries can
        draw fresh noise again.
        """
        async with self._lock:
            logger.warning(
                "dp_budget_reset",
                window=self._window.window_id,
                queries_discarded=self._window.query_count,
            )
            self._history.clear()
            self._window = self._new_window(self._clock())
            return self._status()

    def get_query_history(self, include_previous: bool = False) -> list[DPQueryLedgerEntry]:
        """Ledger entries of the current window (optionally the previous ones too)."""
        self._rotate_if_expired()
        windows = [*self._history, self._window] if include_previous else [self._window]
        return [entry for window in windows for entry in window.ledger.values()]

    async def update_config(self, **changes: Any) -> DPBudgetConfig:
        """Replace config values at runtime. Applies from the next check."""
        async with self._lock:
            self.config = replace(self.config, **changes)
            logger.warning("dp_budget_config_updated", **changes)
            return self.config


@lru_cache()
def get_dp_budget_tracker() -> DPBudgetTracker:
    """Get the process-wide tracker built from settings."""
    return DPBudgetTracker(DPBudgetConfig.from_settings())
