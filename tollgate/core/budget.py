"""Per-user daily spend ledger and threshold classification."""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

import redis.asyncio as aioredis

from tollgate.core.store import DEFAULT_STORE_TIMEOUT_S, bounded
from tollgate.metrics.prometheus import budget_alerts_total

logger = logging.getLogger(__name__)

# Keep yesterday readable for reporting after the UTC day rolls over
BUDGET_TTL_S = 60 * 60 * 48
NEAR_LIMIT_RATIO = 0.90


@dataclass(frozen=True)
class BudgetStatus:
    """Spend against a daily limit."""

    spend: float
    limit: float
    remaining: float
    pct: float
    over_budget: bool
    near_limit: bool


def classify(spend: float, limit: float) -> BudgetStatus:
    """Classify spend against a limit.

    over_budget when spend >= limit; near_limit when spend / limit >= 0.90.
    A zero limit is always over budget.
    """
    if limit > 0:
        ratio = spend / limit
    else:
        ratio = 1.0
    return BudgetStatus(
        spend=spend,
        limit=limit,
        remaining=max(0.0, limit - spend),
        pct=ratio * 100,
        over_budget=spend >= limit,
        near_limit=ratio >= NEAR_LIMIT_RATIO,
    )


class BudgetLedger:
    """Accumulates attributed spend per user per UTC day.

    Spend is added with INCRBYFLOAT so concurrent writers for the same user
    never overwrite each other's contribution. Store errors propagate; the
    pipeline decides how to degrade.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "tollgate",
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        alerts_enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.timeout_s = timeout_s
        self.alerts_enabled = alerts_enabled
        self.clock = clock

    def _today(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def make_key(self, user_id: str, day: Optional[datetime] = None) -> str:
        day = day or self._today()
        return f"{self.key_prefix}:budget:{user_id}:{day.strftime('%Y-%m-%d')}"

    async def current_spend(self, user_id: str, day: Optional[datetime] = None) -> float:
        value = await bounded(self.client.get(self.make_key(user_id, day)), self.timeout_s, "GET")
        return float(value) if value else 0.0

    async def add_spend(self, user_id: str, usd: float) -> float:
        """Add cost to today's total and return the new total."""
        key = self.make_key(user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.incrbyfloat(key, usd)
        pipe.expire(key, BUDGET_TTL_S)
        new_total, _ = await bounded(pipe.execute(), self.timeout_s, "INCRBYFLOAT")
        logger.debug(f"Budget updated: user={user_id} added={usd} total={new_total}")
        return float(new_total)

    async def status(self, user_id: str, limit: float) -> BudgetStatus:
        return classify(await self.current_spend(user_id), limit)

    async def would_exceed(self, user_id: str, limit: float, estimated_cost: float) -> bool:
        """True if the user is over budget or the estimate would take them past it."""
        current = await self.status(user_id, limit)
        if current.over_budget:
            return True
        return current.spend + estimated_cost > limit

    async def track(self, user_id: str, usd: float, limit: float) -> BudgetStatus:
        """Record spend and alert when this request crosses a threshold.

        At most one alert per call; "exceeded" wins over "warning".
        """
        new_total = await self.add_spend(user_id, usd)
        before = classify(new_total - usd, limit)
        after = classify(new_total, limit)

        if after.over_budget and not before.over_budget:
            self._alert(user_id, after, "exceeded")
        elif after.near_limit and not before.near_limit and not after.over_budget:
            self._alert(user_id, after, "warning")

        return after

    def _alert(self, user_id: str, status: BudgetStatus, alert_type: str) -> None:
        if not self.alerts_enabled:
            return

        if alert_type == "warning":
            message = (
                f"Budget warning: {status.pct:.1f}% of daily budget used "
                f"(${status.spend:.2f} / ${status.limit:.2f})"
            )
        else:
            message = f"Budget exceeded: spent ${status.spend:.2f} of ${status.limit:.2f} daily limit"

        budget_alerts_total.labels(alert_type=alert_type).inc()
        logger.warning(f"{message} user={user_id} alert_type={alert_type}")

    async def spending_history(self, user_id: str, days: int = 7) -> List[Tuple[str, float]]:
        """(date, spend) for the last `days` UTC days, oldest first.

        Only the last two days survive the key TTL; older days read as 0.
        """
        today = self._today()
        history = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            history.append((day.strftime("%Y-%m-%d"), await self.current_spend(user_id, day)))
        return history
