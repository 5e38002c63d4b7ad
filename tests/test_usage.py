import asyncio
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import Clock, FakeRepo
from phoenix import db, tiers
from phoenix.errors import InfrastructureError, QuotaDenied
from phoenix.usage import NOT_ENTITLED, QUOTA_EXHAUSTED, UsageLedger, month_start

SHOP = "demo.myshopify.com"


def _ledger(repo, clock=None, tz="UTC"):
    return UsageLedger(repo, clock=clock or Clock(), tz_name=tz)


def test_month_start_uses_billing_timezone():
    now = datetime(2024, 2, 1, 3, 0, tzinfo=timezone.utc)
    assert month_start(now, "UTC") == date(2024, 2, 1)
    # Still January 31st in New York
    assert month_start(now, "America/New_York") == date(2024, 1, 1)


def test_free_descriptions_boundary(repo):
    ledger = _ledger(repo)
    for _ in range(9):
        ledger.record_usage(SHOP, tiers.DESCRIPTIONS)
    decision = ledger.can_perform(SHOP, "free", tiers.DESCRIPTIONS)
    assert decision.allowed and decision.used == 9 and decision.limit == 10

    ledger.record_usage(SHOP, tiers.DESCRIPTIONS)
    decision = ledger.can_perform(SHOP, "free", tiers.DESCRIPTIONS)
    assert not decision.allowed
    assert decision.reason == QUOTA_EXHAUSTED
    assert decision.used == 10


def test_starter_ads_29_then_30(repo):
    ledger = _ledger(repo)
    repo.counts[(SHOP, tiers.ADS, ledger.period_start())] = 29
    assert ledger.can_perform(SHOP, "starter", tiers.ADS).allowed
    assert ledger.record_usage(SHOP, tiers.ADS, {"type": "product_ad"}) == 30
    with pytest.raises(QuotaDenied) as exc:
        ledger.require(SHOP, "starter", tiers.ADS)
    assert exc.value.reason == QUOTA_EXHAUSTED
    assert exc.value.used == 30 and exc.value.limit == 30
    assert exc.value.status_code == 403


def test_not_entitled_is_denied_without_reading_usage(repo):
    decision = _ledger(repo).can_perform(SHOP, "free", tiers.ADS)
    assert not decision.allowed
    assert decision.reason == NOT_ENTITLED
    assert "does not include ads" in decision.message


def test_unknown_tier_is_most_restrictive(repo):
    decision = _ledger(repo).can_perform(SHOP, "diamond", tiers.DESCRIPTIONS)
    assert not decision.allowed
    assert decision.reason == NOT_ENTITLED


def test_unlimited_tier_always_allowed(repo):
    ledger = _ledger(repo)
    repo.counts[(SHOP, tiers.MUSIC_VIDEOS, ledger.period_start())] = 10_000
    assert ledger.can_perform(SHOP, "enterprise", tiers.MUSIC_VIDEOS).allowed
    assert ledger.remaining(SHOP, "enterprise", tiers.MUSIC_VIDEOS) is None


def test_remaining(repo):
    ledger = _ledger(repo)
    repo.counts[(SHOP, tiers.DESCRIPTIONS, ledger.period_start())] = 7
    assert ledger.remaining(SHOP, "free", tiers.DESCRIPTIONS) == 3
    assert ledger.remaining(SHOP, "free", tiers.ADS) == 0


def test_new_period_starts_at_zero(repo):
    clock = Clock(datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc))
    ledger = _ledger(repo, clock)
    for _ in range(10):
        ledger.record_usage(SHOP, tiers.DESCRIPTIONS)
    assert not ledger.can_perform(SHOP, "free", tiers.DESCRIPTIONS).allowed

    clock.now = datetime(2024, 2, 1, 0, 30, tzinfo=timezone.utc)
    decision = ledger.can_perform(SHOP, "free", tiers.DESCRIPTIONS)
    assert decision.allowed and decision.used == 0
    # January's row is untouched
    assert repo.counts[(SHOP, tiers.DESCRIPTIONS, date(2024, 1, 1))] == 10


def test_record_usage_writes_event_with_metadata(repo):
    ledger = _ledger(repo)
    ledger.record_usage(SHOP, tiers.ADS, {"type": "product_ad"})
    assert repo.events == [(SHOP, tiers.ADS, date(2024, 3, 1), 1, {"type": "product_ad"})]


def _hammer(ledger, n):
    async def burst():
        await asyncio.gather(*(asyncio.to_thread(ledger.record_usage, SHOP, tiers.DESCRIPTIONS) for _ in range(n)))

    asyncio.run(burst())


def test_concurrent_increments_are_not_lost_on_file_store(tmp_path, monkeypatch):
    engine = db._make_engine(f"sqlite:///{tmp_path / 'usage.db'}")
    db.Base.metadata.create_all(engine)
    monkeypatch.setattr(db, "SessionLocal", sessionmaker(bind=engine, expire_on_commit=False, autoflush=False))
    ledger = UsageLedger(clock=Clock())

    _hammer(ledger, 60)
    assert db.get_usage_count(SHOP, tiers.DESCRIPTIONS, ledger.period_start()) == 60
    assert len(db.list_usage_events(SHOP)) == 60


def test_concurrent_increments_are_not_lost_on_memory_store():
    ledger = UsageLedger(clock=Clock())
    _hammer(ledger, 40)
    assert db.get_usage_count(SHOP, tiers.DESCRIPTIONS, ledger.period_start()) == 40


def test_store_failure_is_not_an_allow_or_deny(repo):
    def down(*args, **kwargs):
        raise InfrastructureError("store unavailable")

    repo.get_usage_count = down
    with pytest.raises(InfrastructureError):
        _ledger(repo).can_perform(SHOP, "free", tiers.DESCRIPTIONS)


def test_summary_reports_overage(repo):
    ledger = _ledger(repo)
    repo.counts[(SHOP, tiers.DESCRIPTIONS, ledger.period_start())] = 12
    out = ledger.summary(SHOP, "free")
    assert out["period_start"] == "2024-03-01"
    desc = out["categories"][tiers.DESCRIPTIONS]
    assert desc["used"] == 12 and desc["limit"] == 10
    assert desc["overage"] == 2 and desc["overage_cost"] == 0.2
    assert out["categories"][tiers.ADS]["entitled"] is False
