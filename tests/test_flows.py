import asyncio

import pytest

from conftest import FakeAdmin, fake_gemini, product
from phoenix import db, tiers
from phoenix.anti_churn import AntiChurnGuard
from phoenix.batch import BatchOrchestrator
from phoenix.errors import CommitError, GenerationError, LockedAccount, QuotaDenied
from phoenix.flows import BURST_TAG, DESCRIPTION_TAG, MEDIA_TAG, OPTIMIZER_TAG, PhoenixFlows, content_category, with_json_ld
from phoenix.usage import NOT_ENTITLED, QUOTA_EXHAUSTED, UsageLedger

SHOP = "demo.myshopify.com"


def _flows(admin, tier="free", gemini=None):
    return PhoenixFlows(
        SHOP, admin, tier=tier, gemini=gemini or fake_gemini(),
        orchestrator=BatchOrchestrator(concurrency=1, backoff_seconds=0),
    )


def _used(category=tiers.DESCRIPTIONS):
    ledger = UsageLedger()
    return db.get_usage_count(SHOP, category, ledger.period_start())


def test_burst_optimizes_tags_and_charges_once():
    admin = FakeAdmin([product(1), product(2), product(3), product(4, tags=[BURST_TAG])])

    def flaky(p):
        if p["id"].endswith("/2"):
            raise GenerationError("bad json")
        return {"title": p["title"] + " Pro", "descriptionHtml": "<p>new</p>"}

    report = asyncio.run(_flows(admin, gemini=fake_gemini(optimize_product=flaky)).executive_burst())
    assert admin.searches == [f"-tag:{BURST_TAG}"]
    assert report.counts() == {"optimized": 2, "failed": 1, "skipped": 0, "pending": 0}
    assert sorted(gid for gid, _ in admin.tags) == ["gid://shopify/Product/1", "gid://shopify/Product/3"]
    assert _used() == 1
    assert db.count_optimization_history(SHOP) == 2


def test_burst_with_nothing_optimized_is_not_charged():
    admin = FakeAdmin([product(1)], fail_commit={"gid://shopify/Product/1"})
    report = asyncio.run(_flows(admin).executive_burst())
    assert report.failed == 1
    assert _used() == 0


def test_burst_denied_before_touching_shopify():
    db.increment_usage(SHOP, tiers.DESCRIPTIONS, UsageLedger().period_start(), 10)
    admin = FakeAdmin([product(1)])
    with pytest.raises(QuotaDenied):
        asyncio.run(_flows(admin).executive_burst())
    assert admin.searches == []
    assert admin.updates == []


def test_media_optimizer_brands_only_unbranded_images():
    p = product(1, media={"nodes": [
        {"id": "gid://shopify/MediaImage/1", "alt": ""},
        {"id": "gid://shopify/MediaImage/2", "alt": "Iron Phoenix: already done"},
    ]})
    admin = FakeAdmin([p, product(2)])
    report = asyncio.run(_flows(admin).media_optimizer())
    assert report.optimized == 2
    assert admin.alt_updates == [{"id": "gid://shopify/MediaImage/1", "alt": "Iron Phoenix: Product 1 on a white background"}]
    assert ("gid://shopify/Product/2", [MEDIA_TAG]) in admin.tags


def test_bulk_descriptions_trims_to_remaining_quota_and_charges_per_unit():
    db.upsert_configuration(SHOP, brand_name="Acme")
    db.increment_usage(SHOP, tiers.DESCRIPTIONS, UsageLedger().period_start(), 8)
    admin = FakeAdmin()
    products = [product(i) for i in range(1, 5)]
    report = asyncio.run(_flows(admin).bulk_descriptions(products))
    assert report.counts() == {"optimized": 2, "failed": 0, "skipped": 2, "pending": 0}
    assert _used() == 10
    assert "<p>Product 1 by Acme</p>" in [u["descriptionHtml"] for u in admin.updates]


def test_bulk_descriptions_failed_commit_not_charged():
    admin = FakeAdmin(fail_commit={"gid://shopify/Product/2"})
    report = asyncio.run(_flows(admin, tier="starter").bulk_descriptions([product(1), product(2)]))
    assert report.optimized == 1 and report.failed == 1
    assert _used() == 1


@pytest.mark.parametrize("content_type,category", [
    ("music_video", tiers.MUSIC_VIDEOS),
    ("product_ad", tiers.ADS),
    ("song_showcase", tiers.DESCRIPTIONS),
    ("general", tiers.DESCRIPTIONS),
])
def test_content_category(content_type, category):
    assert content_category(content_type) == category


def test_generate_content_charges_mapped_category():
    out = _flows(FakeAdmin(), tier="starter").generate_content("product_ad", product_details="Mug")
    assert out["category"] == tiers.ADS
    assert len(out["content"]) == 2
    assert _used(tiers.ADS) == 1
    assert _used(tiers.DESCRIPTIONS) == 0


def test_generate_content_not_entitled():
    with pytest.raises(QuotaDenied) as exc:
        _flows(FakeAdmin(), tier="starter").generate_content("music_video", song_title="Rise")
    assert exc.value.reason == NOT_ENTITLED
    assert _used(tiers.MUSIC_VIDEOS) == 0


def test_locked_shop_cannot_analyze():
    AntiChurnGuard().on_uninstall(SHOP)
    with pytest.raises(LockedAccount):
        _flows(FakeAdmin(), tier="starter").analyze([product(1)])


def test_analyze_records_history_and_isolates_failures():
    def analyze(p, ctx=None):
        if p["id"].endswith("/2"):
            raise GenerationError("timeout")
        return {"optimized_title": "T", "seoScore": 7}

    results = _flows(FakeAdmin(), tier="starter", gemini=fake_gemini(analyze_product_data=analyze)).analyze([product(1), product(2)])
    assert [r["status"] for r in results] == ["analyzed", "failed"]
    assert db.count_optimization_history(SHOP) == 2


def test_analyze_requires_bulk_analyzer():
    with pytest.raises(QuotaDenied):
        _flows(FakeAdmin(), tier="free").analyze([product(1)])


def test_apply_writes_json_ld_and_marks_history():
    db.add_optimization_history(SHOP, "gid://shopify/Product/1", "Product 1", "ANALYSIS", {"seoScore": 3})
    admin = FakeAdmin()
    item = {"id": "gid://shopify/Product/1", "optimized_title": "Better", "optimized_html_description": "<p>d</p>", "json_ld_schema": '{"@type":"Product"}'}
    report = asyncio.run(_flows(admin, tier="starter").apply_optimizations([item, {"id": "gid://shopify/Product/2"}]))
    assert report.optimized == 1 and report.failed == 1
    assert admin.updates[0]["descriptionHtml"] == with_json_ld("<p>d</p>", '{"@type":"Product"}')
    assert '<script type="application/ld+json">' in admin.updates[0]["descriptionHtml"]
    assert _used() == 1


def test_inventory_sync_archives_dropship_and_floors_pod():
    admin = FakeAdmin([
        {"id": "p1", "title": "CJ Lamp", "vendor": "CJ Dropshipping", "variants": {"nodes": [
            {"id": "v1", "inventoryQuantity": 0, "inventoryItem": {"id": "i1"}},
        ]}},
        {"id": "p2", "title": "Tee", "vendor": "Printful", "variants": {"nodes": [
            {"id": "v2", "inventoryQuantity": 1, "inventoryItem": {"id": "i2"}},
            {"id": "v3", "inventoryQuantity": 9, "inventoryItem": {"id": "i3"}},
        ]}},
        {"id": "p3", "title": "Mug", "vendor": "Acme", "variants": {"nodes": [
            {"id": "v4", "inventoryQuantity": 0, "inventoryItem": {"id": "i4"}},
        ]}},
    ])
    out = _flows(admin).inventory_sync()
    assert [r["action"] for r in out["report"]] == ["ARCHIVED", "FLOOR_SET_3"]
    assert admin.updates == [{"id": "p1", "title": None, "descriptionHtml": None, "status": "ARCHIVED"}]
    assert admin.inventory == [{"inventoryItemId": "i2", "locationId": "gid://shopify/Location/1", "quantity": 3}]


def test_inventory_sync_reports_failed_products():
    admin = FakeAdmin([{"id": "p1", "vendor": "dropshipping co", "variants": {"nodes": [{"inventoryQuantity": 0}]}}], fail_commit={"p1"})
    out = _flows(admin).inventory_sync()
    assert out["report"][0]["action"] == "FAILED"


def test_health_triage_scores_and_sorts():
    admin = FakeAdmin([
        product(1, descriptionHtml="<p>" + "long enough copy " * 5 + "</p>", seo={"description": "SEO"}),
        product(2, descriptionHtml="<p>short</p>", seo={"description": ""}),
        product(3, descriptionHtml="<p>short</p>", seo={"description": "SEO"}),
    ])
    out = _flows(admin).health_triage()
    assert [r["health"] for r in out["worst"]] == [30, 60, 100]
    assert out["worst"][0]["issues"] == ["Thin description", "Missing SEO description"]


def test_compliance_audit_score():
    admin = FakeAdmin()
    admin.vitals = {
        "name": "Demo",
        "email": "owner@example.com",
        "primaryDomain": {"url": "https://demo.myshopify.com"},
        "shopAddress": {"address1": "1 Main", "city": "Austin", "country": "US"},
        "privacyPolicy": {"body": "p" * 150},
        "refundPolicy": {"body": "too short"},
        "shippingPolicy": {"body": "s" * 101},
        "termsOfService": None,
    }
    out = _flows(admin).compliance_audit()
    assert out["missing"] == ["Refund", "ToS", "Custom Domain"]
    assert out["score"] == 57
    assert out["status"] == "Attention Required"


def test_system_status_survives_heartbeat_failure():
    admin = FakeAdmin()
    admin.heartbeat_error = CommitError("GraphQL errors")
    db.upsert_configuration(SHOP, brand_name="Acme")
    out = _flows(admin).system_status()
    assert out["heartbeat"]["online"] is False
    assert out["configuration"]["brand_name"] == "Acme"
    assert out["anti_churn"] == {"locked": False, "trial_used": False, "last_uninstalled": None}


def test_copilot_passes_context():
    assert _flows(FakeAdmin()).copilot("help", "Pricing") == "advice for Pricing"


def test_media_optimizer_spends_one_description_per_batch():
    admin = FakeAdmin([product(1, media={"nodes": [{"id": "gid://shopify/MediaImage/1", "alt": ""}]}), product(2)])
    asyncio.run(_flows(admin).media_optimizer())
    assert _used() == 1


def test_media_optimizer_denied_when_descriptions_exhausted():
    db.increment_usage(SHOP, tiers.DESCRIPTIONS, UsageLedger().period_start(), 10)
    admin = FakeAdmin([product(1)])
    with pytest.raises(QuotaDenied) as exc:
        asyncio.run(_flows(admin).media_optimizer())
    assert exc.value.reason == QUOTA_EXHAUSTED
    assert admin.searches == []


def test_bulk_descriptions_skips_already_described_products():
    admin = FakeAdmin()
    products = [product(1, tags=[DESCRIPTION_TAG]), product(2, tags="sale, phoenix-description"), product(3)]
    report = asyncio.run(_flows(admin, tier="starter").bulk_descriptions(products))
    assert report.counts() == {"optimized": 1, "failed": 0, "skipped": 2, "pending": 0}
    assert [u["id"] for u in admin.updates] == ["gid://shopify/Product/3"]
    assert _used() == 1


def test_apply_skips_items_already_optimized():
    admin = FakeAdmin()
    items = [
        {"id": "gid://shopify/Product/1", "optimized_html_description": "<p>d</p>", "tags": [OPTIMIZER_TAG]},
        {"id": "gid://shopify/Product/2", "optimized_html_description": "<p>d</p>"},
    ]
    report = asyncio.run(_flows(admin, tier="starter").apply_optimizations(items))
    assert report.get("gid://shopify/Product/1").outcome.value == "skipped"
    assert [u["id"] for u in admin.updates] == ["gid://shopify/Product/2"]


def test_tier_comes_from_injected_resolver():
    seen = []

    def billing(shop):
        seen.append(shop)
        return "starter"

    flows = PhoenixFlows(SHOP, FakeAdmin(), tier_resolver=billing, gemini=fake_gemini())
    out = flows.generate_content("product_ad", product_details="Mug")
    assert out["category"] == tiers.ADS
    assert seen == [SHOP]
    # The stored configuration row still says free; only the resolver decides
    assert db.get_shop_tier(SHOP) == "free"
