import logging
import secrets
import threading
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import RedirectResponse

from phoenix import db, tiers
from phoenix.anti_churn import AntiChurnGuard
from phoenix.config import USE_CELERY
from phoenix.errors import AuthenticationFailure, PhoenixError, QuotaDenied
from phoenix.flows import PhoenixFlows
from phoenix.shopify_auth import (
    AdminContext, abs_base_url, authenticate_admin, authorize_url, complete_oauth, current_shop,
    extract_shop_domain, verify_webhook_hmac,
)
from phoenix.tasks import executive_burst as executive_burst_task, run_burst_sync
from phoenix.usage import TierResolver, UsageLedger, stored_tier

app = FastAPI(title="Phoenix Flow", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Basic logger for diagnostics (stdout captured by the container runtime)
logger = logging.getLogger("phoenix")
if not logger.handlers:
    logger.addHandler(logging.StreamHandler())
logger.setLevel(logging.INFO)


@app.exception_handler(PhoenixError)
async def phoenix_error_handler(request: Request, exc: PhoenixError):
    body: Dict[str, Any] = {"error": exc.code, "message": exc.message}
    if isinstance(exc, QuotaDenied):
        body.update({
            "category": exc.category,
            "reason": exc.reason,
            "used": exc.used,
            "limit": exc.limit,
            "tier": exc.tier,
        })
    if exc.status_code >= 500:
        logger.warning("[api] %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


def get_tier_resolver() -> TierResolver:
    """Billing source of truth for a shop's tier; override to plug in another one."""
    return stored_tier


def get_flows(
    ctx: AdminContext = Depends(authenticate_admin),
    tier_resolver: TierResolver = Depends(get_tier_resolver),
) -> PhoenixFlows:
    return PhoenixFlows(ctx.shop, ctx.admin, tier_resolver=tier_resolver)


@app.get("/health")
async def health():
    return {"ok": True}


# ---------------- Shopify OAuth & webhooks ----------------
@app.get("/api/shopify/oauth/start")
async def api_shopify_oauth_start(request: Request, shop: str):
    """Redirect to the Shopify install screen for the given shop."""
    domain = extract_shop_domain(shop)
    if not domain:
        raise AuthenticationFailure("invalid_shop_domain")
    redirect_uri = f"{abs_base_url(request)}/api/shopify/oauth/callback"
    url = authorize_url(domain, redirect_uri, nonce=secrets.token_urlsafe(16))
    return RedirectResponse(url=url, status_code=302)


@app.get("/api/shopify/oauth/callback")
def api_shopify_oauth_callback(request: Request):
    """OAuth callback endpoint. Shopify redirects here with code/shop/hmac/state."""
    rec = complete_oauth(request.url.query or "")
    return RedirectResponse(url=f"/?shop={rec['shop']}&connected=1", status_code=302)


@app.post("/webhooks/app/uninstalled")
async def webhook_app_uninstalled(request: Request):
    body = await request.body()
    if not verify_webhook_hmac(body, request.headers.get("x-shopify-hmac-sha256")):
        raise AuthenticationFailure("invalid webhook signature")
    shop = extract_shop_domain(request.headers.get("x-shopify-shop-domain"))
    if not shop:
        raise AuthenticationFailure("missing shop domain header")
    AntiChurnGuard().on_uninstall(shop)
    removed = db.delete_shop_sessions(shop)
    logger.info("[webhook] app/uninstalled shop=%s sessions_removed=%s", shop, removed)
    return {"ok": True}


# ---------------- Configuration, tiers & usage ----------------
class ConfigurationUpdate(BaseModel):
    """Merchant-editable brand identity. The tier is owned by billing and is not accepted here."""

    brand_name: Optional[str] = None
    identity_summary: Optional[str] = None
    target_audience: Optional[str] = None
    usp: Optional[str] = None


@app.get("/api/configuration")
def api_get_configuration(shop: str = Depends(current_shop), tier_resolver: TierResolver = Depends(get_tier_resolver)):
    config = db.get_configuration(shop) or {"shop": shop}
    return {"data": {**config, "tier": tier_resolver(shop)}}


@app.post("/api/configuration")
def api_upsert_configuration(req: ConfigurationUpdate, shop: str = Depends(current_shop)):
    return {"data": db.upsert_configuration(shop, **req.model_dump(exclude_none=True))}


@app.get("/api/tiers")
async def api_tiers():
    return {"data": [
        {
            "name": t.name,
            "display_name": t.display_name,
            "price": t.price,
            "products_per_scan": t.products_per_scan,
            "features": sorted(t.features),
            "quotas": dict(t.quotas),
            "limits": tiers.format_tier_limits(t),
        }
        for t in tiers.TIERS.values()
    ]}


@app.get("/api/usage")
def api_usage(shop: str = Depends(current_shop), tier_resolver: TierResolver = Depends(get_tier_resolver)):
    return {"data": UsageLedger().summary(shop, tier_resolver(shop))}


# ---------------- Batch flows ----------------
class BurstRequest(BaseModel):
    background: bool = False
    limit: Optional[int] = None


@app.post("/api/executive-burst")
async def api_executive_burst(req: BurstRequest, flows: PhoenixFlows = Depends(get_flows)):
    if not req.background:
        report = await flows.executive_burst(req.limit)
        return {"data": report.to_dict()}
    # Fail fast on quota before handing off
    await flows.check_quota(tiers.DESCRIPTIONS)
    if not USE_CELERY:
        threading.Thread(target=run_burst_sync, args=(flows.shop, flows.tier_resolver), daemon=True).start()
    else:
        try:
            executive_burst_task.delay(flows.shop)
        except Exception as e:
            # If enqueue fails (e.g., no broker), fall back to an inline thread
            logger.warning("[burst] enqueue failed for %s, running inline: %s", flows.shop, e)
            threading.Thread(target=run_burst_sync, args=(flows.shop, flows.tier_resolver), daemon=True).start()
    return {"data": {"status": "queued", "shop": flows.shop}}


@app.post("/api/media-optimizer")
async def api_media_optimizer(flows: PhoenixFlows = Depends(get_flows)):
    report = await flows.media_optimizer()
    return {"data": report.to_dict()}


class AnalyzeRequest(BaseModel):
    products: List[Dict[str, Any]]
    user_context: Optional[str] = None


@app.post("/api/optimizer/analyze")
def api_optimizer_analyze(req: AnalyzeRequest, flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.analyze(req.products, req.user_context)}


class ApplyRequest(BaseModel):
    items: List[Dict[str, Any]]


@app.post("/api/optimizer/apply")
async def api_optimizer_apply(req: ApplyRequest, flows: PhoenixFlows = Depends(get_flows)):
    report = await flows.apply_optimizations(req.items)
    return {"data": report.to_dict()}


class DescriptionRequest(BaseModel):
    products: List[Dict[str, Any]]
    user_context: Optional[str] = None


@app.post("/api/generate-description")
async def api_generate_description(req: DescriptionRequest, flows: PhoenixFlows = Depends(get_flows)):
    report = await flows.bulk_descriptions(req.products, req.user_context)
    return {"data": report.to_dict()}


# ---------------- Generation ----------------
class ContentRequest(BaseModel):
    content_type: str = "general"
    song_title: Optional[str] = None
    product_details: Optional[str] = None
    target_audience: Optional[str] = None
    brand_context: Optional[str] = None


@app.post("/api/generate-content")
def api_generate_content(req: ContentRequest, flows: PhoenixFlows = Depends(get_flows)):
    kwargs = req.model_dump(exclude={"content_type"})
    return {"data": flows.generate_content(req.content_type, **kwargs)}


class PhoenixContentRequest(BaseModel):
    product_name: str
    features: List[str] = []


@app.post("/api/phoenix/content")
def api_phoenix_content(req: PhoenixContentRequest, flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.phoenix_content(req.product_name, req.features)}


class CopilotRequest(BaseModel):
    prompt: str
    context: Optional[str] = None


@app.post("/api/phoenix/copilot")
def api_phoenix_copilot(req: CopilotRequest, flows: PhoenixFlows = Depends(get_flows)):
    return {"data": {"reply": flows.copilot(req.prompt, req.context)}}


# ---------------- Store vitals ----------------
@app.post("/api/inventory-sync")
def api_inventory_sync(flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.inventory_sync()}


@app.get("/api/health-triage")
def api_health_triage(flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.health_triage()}


@app.get("/api/compliance-audit")
def api_compliance_audit(flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.compliance_audit()}


@app.get("/api/audit-export")
def api_audit_export(flows: PhoenixFlows = Depends(get_flows)):
    data = flows.audit_export()
    return JSONResponse(
        content=data,
        headers={"Content-Disposition": f'attachment; filename="phoenix-audit-{flows.shop}.json"'},
    )


@app.get("/api/locations")
def api_locations(flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.admin.list_locations()}


@app.get("/api/system-status")
def api_system_status(flows: PhoenixFlows = Depends(get_flows)):
    return {"data": flows.system_status()}
