"""Tollgate Core - metering primitives for the proxy pipeline."""

from tollgate.core.budget import BudgetLedger
from tollgate.core.cache import ResponseCache
from tollgate.core.cost_model import CostModel
from tollgate.core.forwarder import BackendForwarder
from tollgate.core.pricing import PricingTable
from tollgate.core.rate_limiter import BurstLimiter, FixedWindowRateLimiter

__all__ = [
    "BackendForwarder",
    "BudgetLedger",
    "BurstLimiter",
    "CostModel",
    "FixedWindowRateLimiter",
    "PricingTable",
    "ResponseCache",
]
