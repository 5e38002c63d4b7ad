"""Per-shop monthly usage accounting against the tier catalog.

Usage is bucketed by calendar month in the billing timezone. The bucket key is
derived from the clock on every read and write, so a new month starts at zero
without any reset job and old months stay untouched.

The ledger is a stateless logic layer over a repository exposing
`get_usage_count`, `get_usage_counts`, `increment_usage` and `add_usage_event`
(the `phoenix.db` module by default). Repository failures surface as
`InfrastructureError` and are never turned into an allow or a deny.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from phoenix import db, tiers
from phoenix.config import BILLING_TIMEZONE
from phoenix.errors import QuotaDenied

log = logging.getLogger(__name__)

NOT_ENTITLED = "NOT_ENTITLED"
QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"

# Resolves a shop's current tier name; swap to move the billing source of truth
TierResolver = Callable[[str], str]


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    category: str
    tier: str
    used: int = 0
    limit: int = 0
    reason: Optional[str] = None

    @property
    def message(self) -> str:
        if self.allowed:
            return "allowed"
        if self.reason == NOT_ENTITLED:
            return f"Your {self.tier} plan does not include {self.category.replace('_', ' ')}. Upgrade to unlock it."
        return f"Monthly limit reached for {self.category.replace('_', ' ')} ({self.used}/{self.limit}). Upgrade for more."


def month_start(now: datetime, tz_name: str = "UTC") -> date:
    """First day of the calendar month containing `now` in `tz_name`."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz_name or "UTC"))
    return local.date().replace(day=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    def __init__(self, repo=None, *, clock: Callable[[], datetime] | None = None, tz_name: str | None = None):
        self.repo = repo if repo is not None else db
        self.clock = clock or _utcnow
        self.tz_name = tz_name or BILLING_TIMEZONE

    def period_start(self) -> date:
        return month_start(self.clock(), self.tz_name)

    def can_perform(self, shop: str, tier: str, category: str) -> UsageDecision:
        if not tiers.is_entitled(tier, category):
            return UsageDecision(False, category, tier, reason=NOT_ENTITLED)
        limit = tiers.quota_for(tier, category)
        used = self.repo.get_usage_count(shop, category, self.period_start())
        if limit == tiers.UNLIMITED:
            return UsageDecision(True, category, tier, used=used, limit=limit)
        if used >= limit:
            log.info("[usage] denied shop=%s category=%s used=%s limit=%s tier=%s", shop, category, used, limit, tier)
            return UsageDecision(False, category, tier, used=used, limit=limit, reason=QUOTA_EXHAUSTED)
        return UsageDecision(True, category, tier, used=used, limit=limit)

    def require(self, shop: str, tier: str, category: str) -> UsageDecision:
        decision = self.can_perform(shop, tier, category)
        if not decision.allowed:
            raise QuotaDenied(
                decision.message,
                category=category,
                reason=decision.reason or QUOTA_EXHAUSTED,
                used=decision.used,
                limit=decision.limit,
                tier=tier,
            )
        return decision

    def remaining(self, shop: str, tier: str, category: str) -> Optional[int]:
        """Units left this period; None means unlimited, 0 covers not-entitled too."""
        decision = self.can_perform(shop, tier, category)
        if decision.reason == NOT_ENTITLED:
            return 0
        if decision.limit == tiers.UNLIMITED:
            return None
        return max(0, decision.limit - decision.used)

    def record_usage(self, shop: str, category: str, metadata: Dict[str, Any] | None = None, amount: int = 1) -> int:
        """Add `amount` to this period's counter. Call once per completed action."""
        period = self.period_start()
        count = self.repo.increment_usage(shop, category, period, amount)
        self.repo.add_usage_event(shop, category, period, amount, metadata)
        log.info("[usage] recorded shop=%s category=%s amount=%s total=%s", shop, category, amount, count)
        return count

    def summary(self, shop: str, tier: str) -> Dict[str, Any]:
        period = self.period_start()
        counts = self.repo.get_usage_counts(shop, period)
        out: Dict[str, Any] = {"tier": tier, "period_start": period.isoformat(), "categories": {}}
        for category in tiers.CATEGORIES:
            used = counts.get(category, 0)
            limit = tiers.quota_for(tier, category)
            overage, cost = tiers.calculate_overage(tier, category, used)
            out["categories"][category] = {
                "used": used,
                "limit": limit,
                "unlimited": limit == tiers.UNLIMITED and tiers.lookup(tier) is not None,
                "entitled": tiers.is_entitled(tier, category),
                "overage": overage,
                "overage_cost": cost,
            }
        return out


def stored_tier(shop: str) -> str:
    """Default TierResolver: the tier saved on the shop's configuration row."""
    return db.get_shop_tier(shop)
