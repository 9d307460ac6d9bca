"""
Plan and credit collaborator.

The dispatcher needs a per-user concurrency limit; job creation needs to
check, deduct and (on failure) refund research credits. AutumnPlanClient
talks to the Autumn billing API; StaticPlanClient is used when billing is
disabled. Lookups degrade: concurrency falls back to the default and credit
checks deny.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from prospect_research.core.config import BillingConfig

logger = logging.getLogger(__name__)

KNOWN_PLANS = ("scale", "pro", "growth")


@dataclass
class CreditCheck:
    allowed: bool
    balance: Optional[float] = None
    shortfall: int = 0
    unlimited: bool = False


class PlanClient(Protocol):
    async def resolve_concurrency_limit(self, user_id: str) -> int: ...

    async def check_and_deduct_credits(self, user_id: str, count: int) -> CreditCheck: ...

    async def refund_credits(self, user_id: str, count: int) -> bool: ...


def normalize_plan_id(product_id: Optional[str]) -> Optional[str]:
    """Map billing product ids like 'pro-monthly' or 'growth_plan_yearly' to a plan tier."""
    if not product_id:
        return None
    lowered = product_id.lower()
    for plan in KNOWN_PLANS:
        if lowered == plan or re.search(rf"(^|[-_]){plan}([-_]|$)", lowered):
            return plan
    return None


class StaticPlanClient:
    """Billing disabled: everyone gets the default limit and unlimited credits."""

    def __init__(self, default_concurrency: int = 3):
        self.default_concurrency = default_concurrency

    async def resolve_concurrency_limit(self, user_id: str) -> int:
        return self.default_concurrency

    async def check_and_deduct_credits(self, user_id: str, count: int) -> CreditCheck:
        return CreditCheck(allowed=True, unlimited=True)

    async def refund_credits(self, user_id: str, count: int) -> bool:
        return True


class AutumnPlanClient:
    def __init__(self, config: BillingConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client
        self.base_url = config.base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        if self.client is not None:
            resp = await self.client.request(
                method, url, json=body, headers=self._headers(), timeout=self.config.timeout_seconds
            )
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                resp = await client.request(method, url, json=body, headers=self._headers())
        resp.raise_for_status()
        payload = resp.json()
        return payload if isinstance(payload, dict) else {}

    async def get_plan(self, user_id: str) -> Optional[str]:
        """Active or trialing plan tier, or None. Raises on transport/HTTP failure."""
        customer = await self._request("GET", f"/customers/{user_id}")
        for product in customer.get("products") or []:
            if not isinstance(product, dict):
                continue
            if product.get("status") not in ("active", "trialing"):
                continue
            plan = normalize_plan_id(product.get("id"))
            if plan:
                return plan
        return None

    async def resolve_concurrency_limit(self, user_id: str) -> int:
        if not self.config.api_key:
            return self.config.default_concurrency
        try:
            plan = await self.get_plan(user_id)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Plan lookup failed for %s; using default concurrency: %s", user_id, exc)
            return self.config.default_concurrency
        return self.config.plan_concurrency.get(plan or "", self.config.default_concurrency)

    async def check_and_deduct_credits(self, user_id: str, count: int) -> CreditCheck:
        if not self.config.api_key:
            logger.warning("Billing enabled without AUTUMN_API_KEY; denying credits")
            return CreditCheck(allowed=False, shortfall=count)
        try:
            plan = await self.get_plan(user_id)
            if plan in self.config.unlimited_plans:
                return CreditCheck(allowed=True, unlimited=True)

            check = await self._request(
                "POST", "/check", {"customer_id": user_id, "feature_id": self.config.feature_id}
            )
            balance = float(check.get("balance") or 0)
            if not check.get("allowed", True) or balance < count:
                return CreditCheck(allowed=False, balance=balance, shortfall=max(0, count - int(balance)))

            await self._request(
                "POST",
                "/track",
                {"customer_id": user_id, "feature_id": self.config.feature_id, "value": count},
            )
            return CreditCheck(allowed=True, balance=balance - count)
        except (httpx.HTTPError, ValueError, TypeError) as exc:
            logger.warning("Credit check failed for %s; denying: %s", user_id, exc)
            return CreditCheck(allowed=False, shortfall=count)

    async def refund_credits(self, user_id: str, count: int) -> bool:
        if not self.config.api_key or count <= 0:
            return False
        try:
            await self._request(
                "POST",
                "/track",
                {"customer_id": user_id, "feature_id": self.config.feature_id, "value": -count},
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Credit refund of %s failed for %s: %s", count, user_id, exc)
            return False
        logger.info("Refunded %s credits to %s", count, user_id)
        return True


def build_plan_client(config: BillingConfig, client: Optional[httpx.AsyncClient] = None) -> PlanClient:
    if not config.enabled:
        return StaticPlanClient(config.default_concurrency)
    return AutumnPlanClient(config, client=client)
