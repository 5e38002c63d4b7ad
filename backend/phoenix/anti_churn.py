"""Trial-abuse lockout: a shop that uninstalled recently cannot get trial-only paths again."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from phoenix import db
from phoenix.config import ANTI_CHURN_LOCKOUT_DAYS
from phoenix.errors import LockedAccount

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AntiChurnGuard:
    def __init__(self, repo=None, *, clock: Callable[[], datetime] | None = None, lockout_days: int | None = None):
        self.repo = repo if repo is not None else db
        self.clock = clock or _utcnow
        self.window = timedelta(days=ANTI_CHURN_LOCKOUT_DAYS if lockout_days is None else lockout_days)

    def on_uninstall(self, shop: str) -> None:
        now = self.clock()
        self.repo.upsert_anti_churn(shop, now, True)
        log.info("[anti-churn] shop=%s uninstalled at %s, trial marked used", shop, now.isoformat())

    def is_locked(self, shop: str) -> bool:
        rec = self.repo.get_anti_churn(shop)
        if not rec or not rec.get("last_uninstalled"):
            return False
        last = rec["last_uninstalled"]
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return last >= self.clock() - self.window

    def has_used_trial(self, shop: str) -> bool:
        rec = self.repo.get_anti_churn(shop)
        return bool(rec and rec.get("trial_used"))

    def require_unlocked(self, shop: str) -> None:
        if self.is_locked(shop):
            raise LockedAccount(
                f"Trial already used; {shop} was uninstalled within the last {self.window.days} days."
            )
