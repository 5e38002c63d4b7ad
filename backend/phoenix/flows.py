"""Merchant-facing flows: each one gates on tier/quota, drives Shopify + Gemini, and bills on success.

Batch flows select with `-tag:<tag>` so products finished by an earlier run are
never picked up again, then hand the work to `BatchOrchestrator`.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from phoenix import db, tiers
from phoenix.anti_churn import AntiChurnGuard
from phoenix.batch import BatchOrchestrator, BatchReport, Outcome
from phoenix.config import BURST_SIZE
from phoenix.errors import GenerationError, InfrastructureError, PhoenixError, QuotaDenied, RateLimitError
from phoenix.integrations import gemini_client
from phoenix.usage import NOT_ENTITLED, TierResolver, UsageDecision, UsageLedger, stored_tier

log = logging.getLogger(__name__)

BURST_TAG = "content-locked"
MEDIA_TAG = "visual-locked"
OPTIMIZER_TAG = "phoenix-batch-optimized"
DESCRIPTION_TAG = "phoenix-description"

ALT_BRAND = "Iron Phoenix"
MAX_SUPPLIED_PRODUCTS = 5
TRIAGE_SCAN = 50
TRIAGE_WORST = 15
INVENTORY_SCAN = 50
POD_FLOOR = 3
POLICY_MIN_CHARS = 100

DROPSHIP_VENDORS = ("cj", "dropshipping")
POD_VENDORS = ("printify", "printful", "teelaunch", "anywherepod")

# Content type -> usage category it spends
CONTENT_CATEGORIES = {
    "music_video": tiers.MUSIC_VIDEOS,
    "product_ad": tiers.ADS,
}

_TAG_RE = re.compile(r"<[^>]+>")


def content_category(content_type: str) -> str:
    return CONTENT_CATEGORIES.get((content_type or "").strip().lower(), tiers.DESCRIPTIONS)


def _plain_text(html: str | None) -> str:
    return " ".join(_TAG_RE.sub(" ", html or "").split())


def with_json_ld(description_html: str, json_ld: str | None) -> str:
    if not json_ld:
        return description_html
    return f'{description_html}\n<script type="application/ld+json">{json_ld}</script>'


def _has_tag(entity: Dict[str, Any], tag: str) -> bool:
    tags = entity.get("tags") or []
    if isinstance(tags, str):
        tags = tags.split(",")
    return tag in (t.strip() for t in tags)


def split_done(entities: List[Dict[str, Any]], tag: str) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Partition caller-supplied products into (to process, ids already carrying `tag`)."""
    todo, done = [], []
    for e in entities:
        if _has_tag(e, tag):
            done.append(str(e.get("id")))
        else:
            todo.append(e)
    return todo, done


class PhoenixFlows:
    """Flows for one authenticated shop.

    `admin` is a `ShopifyAdmin` (or anything with the same methods), `repo` the
    persistence module, `gemini` the generation module. `tier_resolver` maps the
    shop to its billed tier name.
    """

    def __init__(self, shop: str, admin, *, tier: str | None = None, tier_resolver: TierResolver | None = None,
                 repo=None, gemini=None, ledger: UsageLedger | None = None, guard: AntiChurnGuard | None = None,
                 orchestrator: BatchOrchestrator | None = None):
        self.shop = shop
        self.admin = admin
        self.repo = repo if repo is not None else db
        self.gemini = gemini if gemini is not None else gemini_client
        self.tier_resolver = tier_resolver or stored_tier
        self.ledger = ledger or UsageLedger(self.repo)
        self.guard = guard or AntiChurnGuard(self.repo)
        self.orchestrator = orchestrator or BatchOrchestrator()
        self._tier = tier

    @property
    def tier(self) -> str:
        if self._tier is None:
            self._tier = self.tier_resolver(self.shop)
        return self._tier

    async def check_quota(self, category: str, *, unlocked: bool = False) -> UsageDecision:
        """Resolve the tier and gate `category` off the event loop; raises on deny."""
        tier = await asyncio.to_thread(lambda: self.tier)
        if unlocked:
            await asyncio.to_thread(self.guard.require_unlocked, self.shop)
        return await asyncio.to_thread(self.ledger.require, self.shop, tier, category)

    def _require_feature(self, feature: str):
        if not tiers.has_feature(self.tier, feature):
            raise QuotaDenied(
                f"Your {self.tier} plan does not include {feature.replace('_', ' ')}. Upgrade to unlock it.",
                category=feature,
                reason=NOT_ENTITLED,
                tier=self.tier,
            )

    def _apply_tag(self, gid: str, tag: str):
        self.admin.add_tags(gid, [tag])

    async def _record_batch(self, category: str, flow: str, report: BatchReport):
        # One charge per batch, only when something actually landed
        if report.optimized <= 0:
            return
        await asyncio.to_thread(
            self.ledger.record_usage, self.shop, category, {"type": flow, "count": report.optimized},
        )

    # ---------------- Executive burst ----------------
    def _optimize(self, product: Dict[str, Any]) -> Dict[str, str]:
        return self.gemini.optimize_product(product)

    def _commit_content(self, gid: str, patch: Dict[str, Any]):
        self.admin.update_product(gid, title=patch.get("title"), description_html=patch.get("descriptionHtml"))

    async def executive_burst(self, limit: int | None = None) -> BatchReport:
        """Rewrite title + description for the next untagged products, then tag them content-locked."""
        await self.check_quota(tiers.DESCRIPTIONS)
        products = await asyncio.to_thread(self.admin.list_products, f"-tag:{BURST_TAG}", limit or BURST_SIZE)
        log.info("[burst] shop=%s selected=%s", self.shop, len(products))
        report = await self.orchestrator.run(
            products, self._optimize, BURST_TAG,
            commit=self._commit_content,
            apply_tag=self._apply_tag,
            summarize=lambda p: {"title": p.get("title")},
        )
        await self._record_batch(tiers.DESCRIPTIONS, "executive_burst", report)
        for item in report.items:
            if item.outcome == Outcome.OPTIMIZED:
                await asyncio.to_thread(
                    self.repo.add_optimization_history, self.shop, item.entity_id,
                    item.snapshot.get("title"), "EXECUTIVE_BURST", item.patch_summary,
                )
        return report

    # ---------------- Media optimizer ----------------
    def _alt_patch(self, product: Dict[str, Any]) -> Dict[str, Any]:
        media = [
            m for m in ((product.get("media") or {}).get("nodes") or [])
            if m and m.get("id") and ALT_BRAND not in (m.get("alt") or "")
        ]
        if not media:
            return {"files": []}
        alt = f"{ALT_BRAND}: {self.gemini.generate_alt_text(product.get('title') or 'product')}"
        alt = alt[:gemini_client.ALT_TEXT_MAX]
        return {"files": [{"id": m["id"], "alt": alt} for m in media]}

    def _commit_alt(self, gid: str, patch: Dict[str, Any]):
        self.admin.update_media_alt(patch.get("files") or [])

    async def media_optimizer(self, limit: int | None = None) -> BatchReport:
        """Brand alt text on untagged products' images; spends one description per batch."""
        await asyncio.to_thread(lambda: self.tier)
        self._require_feature("alt_text")
        await self.check_quota(tiers.DESCRIPTIONS)
        products = await asyncio.to_thread(self.admin.list_products_with_media, f"-tag:{MEDIA_TAG}", limit or BURST_SIZE)
        report = await self.orchestrator.run(
            products, self._alt_patch, MEDIA_TAG,
            commit=self._commit_alt,
            apply_tag=self._apply_tag,
            summarize=lambda p: {"images": len(p.get("files") or [])},
        )
        await self._record_batch(tiers.DESCRIPTIONS, "media_optimizer", report)
        return report

    # ---------------- Optimizer analyze / apply ----------------
    def analyze(self, products: List[Dict[str, Any]], user_context: str | None = None) -> List[Dict[str, Any]]:
        """Score up to five supplied products and record each analysis in history."""
        self.guard.require_unlocked(self.shop)
        self._require_feature("bulk_analyzer")
        results = []
        for product in (products or [])[:MAX_SUPPLIED_PRODUCTS]:
            pid = str(product.get("id") or "")
            try:
                analysis = self.gemini.analyze_product_data(product, user_context)
            except (GenerationError, RateLimitError) as e:
                log.warning("[optimizer] analysis failed for %s: %s", pid, e)
                self.repo.add_optimization_history(self.shop, pid, product.get("title"), "ANALYSIS", None, status="failed")
                results.append({"id": pid, "status": "failed", "error": e.message})
                continue
            self.repo.add_optimization_history(self.shop, pid, product.get("title"), "ANALYSIS", analysis)
            results.append({"id": pid, "status": "analyzed", "analysis": analysis})
        return results

    def _commit_optimized(self, gid: str, patch: Dict[str, Any]):
        self.admin.update_product(
            gid,
            title=patch.get("optimized_title") or None,
            description_html=with_json_ld(patch.get("optimized_html_description") or "", patch.get("json_ld_schema")),
        )

    async def apply_optimizations(self, items: List[Dict[str, Any]]) -> BatchReport:
        """items: [{"id", "optimized_title", "optimized_html_description", "json_ld_schema"}]"""
        await self.check_quota(tiers.DESCRIPTIONS, unlocked=True)
        items, skipped = split_done((items or [])[:MAX_SUPPLIED_PRODUCTS], OPTIMIZER_TAG)

        def _patch(item):
            if not item.get("optimized_html_description"):
                return {}
            return {k: item.get(k) for k in ("optimized_title", "optimized_html_description", "json_ld_schema")}

        report = await self.orchestrator.run(
            items, _patch, OPTIMIZER_TAG,
            commit=self._commit_optimized,
            apply_tag=self._apply_tag,
            skipped=skipped,
            summarize=lambda p: {"title": p.get("optimized_title"), "json_ld": bool(p.get("json_ld_schema"))},
        )
        for item in report.items:
            if item.outcome == Outcome.OPTIMIZED:
                await asyncio.to_thread(self.repo.mark_history_applied, self.shop, item.entity_id)
        await self._record_batch(tiers.DESCRIPTIONS, "optimizer_apply", report)
        return report

    # ---------------- Bulk description generator (per-unit billing) ----------------
    async def bulk_descriptions(self, products: List[Dict[str, Any]], user_context: str | None = None) -> BatchReport:
        """Describe each supplied product; every committed product is charged one description."""
        decision = await self.check_quota(tiers.DESCRIPTIONS)
        products, skipped = split_done((products or [])[:MAX_SUPPLIED_PRODUCTS], DESCRIPTION_TAG)
        if decision.limit != tiers.UNLIMITED:
            room = max(0, decision.limit - decision.used)
            skipped += [str(p.get("id")) for p in products[room:]]
            products = products[:room]
        brand = await asyncio.to_thread(self.repo.get_configuration, self.shop) or {}

        def _describe(product):
            return {"descriptionHtml": self.gemini.generate_product_description(product, user_context=user_context, brand=brand)}

        def _charge(item):
            self.ledger.record_usage(self.shop, tiers.DESCRIPTIONS, {"type": "bulk_description", "product_id": item.entity_id})

        return await self.orchestrator.run(
            products, _describe, DESCRIPTION_TAG,
            commit=self._commit_content,
            apply_tag=self._apply_tag,
            charge=_charge,
            skipped=skipped,
            summarize=lambda p: {"chars": len(p.get("descriptionHtml") or "")},
        )

    # ---------------- Content generation ----------------
    def generate_content(self, content_type: str, **kwargs) -> Dict[str, Any]:
        category = content_category(content_type)
        self.ledger.require(self.shop, self.tier, category)
        content = self.gemini.generate_ai_content(content_type, **kwargs)
        self.ledger.record_usage(self.shop, category, {"type": content_type, "items": len(content)})
        return {"content_type": content_type, "category": category, "content": content}

    def phoenix_content(self, product_name: str, features: List[str]) -> Dict[str, Any]:
        self.guard.require_unlocked(self.shop)
        self.ledger.require(self.shop, self.tier, tiers.DESCRIPTIONS)
        html = self.gemini.generate_phoenix_content(product_name, features)
        self.ledger.record_usage(self.shop, tiers.DESCRIPTIONS, {"type": "phoenix_content", "product": product_name})
        return {"html": html}

    def copilot(self, prompt: str, context: str | None = None) -> str:
        self.guard.require_unlocked(self.shop)
        return self.gemini.ignite_phoenix(prompt, context or "General Strategy")

    # ---------------- Inventory sync ----------------
    def inventory_sync(self) -> Dict[str, Any]:
        location_id = self.admin.primary_location_id()
        if not location_id:
            raise PhoenixError("No active Shopify location found.")
        products = self.admin.list_products_with_inventory(limit=INVENTORY_SCAN)
        report = []
        for product in products:
            vendor = (product.get("vendor") or "").lower()
            variants = (product.get("variants") or {}).get("nodes") or []
            try:
                if any(v in vendor for v in DROPSHIP_VENDORS) and any((v.get("inventoryQuantity") or 0) <= 0 for v in variants):
                    self.admin.update_product(product["id"], status="ARCHIVED")
                    report.append({"id": product["id"], "title": product.get("title"), "action": "ARCHIVED"})
                    continue
                if any(v in vendor for v in POD_VENDORS):
                    quantities = [
                        {"inventoryItemId": v["inventoryItem"]["id"], "locationId": location_id, "quantity": POD_FLOOR}
                        for v in variants
                        if (v.get("inventoryQuantity") or 0) < POD_FLOOR and (v.get("inventoryItem") or {}).get("id")
                    ]
                    if quantities:
                        self.admin.set_inventory_quantities(quantities)
                        report.append({"id": product["id"], "title": product.get("title"), "action": f"FLOOR_SET_{POD_FLOOR}"})
            except InfrastructureError:
                raise
            except PhoenixError as e:
                log.warning("[inventory] shop=%s product=%s failed: %s", self.shop, product.get("id"), e)
                report.append({"id": product.get("id"), "title": product.get("title"), "action": "FAILED", "error": e.message})
        log.info("[inventory] shop=%s scanned=%s actions=%s", self.shop, len(products), len(report))
        return {"status": "SYNCED", "scanned": len(products), "report": report}

    # ---------------- Health triage ----------------
    def health_triage(self) -> Dict[str, Any]:
        products = self.admin.list_products(limit=TRIAGE_SCAN)
        scored = []
        for p in products:
            score = 100
            issues = []
            if len(_plain_text(p.get("descriptionHtml"))) < 50:
                score -= 40
                issues.append("Thin description")
            if not ((p.get("seo") or {}).get("description") or "").strip():
                score -= 30
                issues.append("Missing SEO description")
            scored.append({"id": p.get("id"), "title": p.get("title"), "health": score, "issues": issues})
        scored.sort(key=lambda r: r["health"])
        avg = round(sum(r["health"] for r in scored) / len(scored)) if scored else 100
        return {"scanned": len(scored), "average_health": avg, "worst": scored[:TRIAGE_WORST]}

    # ---------------- Compliance ----------------
    def compliance_audit(self) -> Dict[str, Any]:
        shop = self.admin.shop_vitals()
        checks = {}
        for key, label in (("privacyPolicy", "Privacy"), ("refundPolicy", "Refund"),
                           ("shippingPolicy", "Shipping"), ("termsOfService", "ToS")):
            body = ((shop.get(key) or {}).get("body") or "").strip()
            checks[label] = len(body) > POLICY_MIN_CHARS
        addr = shop.get("shopAddress") or {}
        checks["Address"] = bool(addr.get("address1") and addr.get("city") and addr.get("country"))
        checks["Email"] = bool((shop.get("email") or "").strip())
        domain = ((shop.get("primaryDomain") or {}).get("url") or "").lower()
        checks["Custom Domain"] = bool(domain) and "myshopify.com" not in domain
        missing = [k for k, ok in checks.items() if not ok]
        score = round(100 * (len(checks) - len(missing)) / len(checks))
        return {
            "status": "Healthy" if not missing else "Attention Required",
            "score": score,
            "checks": checks,
            "missing": missing,
            "shopName": shop.get("name"),
        }

    def audit_export(self) -> Dict[str, Any]:
        self._require_feature("pdf_report")
        return {
            "shop": self.shop,
            "generated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "tier": self.tier,
            "compliance": self.compliance_audit(),
            "triage": self.health_triage(),
            "usage": self.ledger.summary(self.shop, self.tier),
        }

    # ---------------- System status ----------------
    def system_status(self) -> Dict[str, Any]:
        churn = self.repo.get_anti_churn(self.shop)
        try:
            shop = self.admin.heartbeat()
            heartbeat: Dict[str, Any] = {"online": True, "name": shop.get("name"), "plan": (shop.get("plan") or {}).get("displayName")}
        except PhoenixError as e:
            log.warning("[status] shop=%s heartbeat failed: %s", self.shop, e)
            heartbeat = {"online": False, "error": str(e)}
        return {
            "shop": self.shop,
            "tier": self.tier,
            "configuration": self.repo.get_configuration(self.shop),
            "optimizations": self.repo.count_optimization_history(self.shop),
            "anti_churn": {
                "locked": self.guard.is_locked(self.shop),
                "trial_used": bool(churn and churn.get("trial_used")),
                "last_uninstalled": churn["last_uninstalled"].isoformat() if churn and churn.get("last_uninstalled") else None,
            },
            "heartbeat": heartbeat,
        }

