import asyncio
import logging

from celery import Celery

from phoenix import db
from phoenix.config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND
from phoenix.errors import AuthenticationFailure
from phoenix.flows import PhoenixFlows
from phoenix.integrations.shopify_client import ShopifyAdmin
from phoenix.usage import TierResolver

log = logging.getLogger(__name__)

celery = Celery(__name__, broker=CELERY_BROKER_URL, backend=CELERY_RESULT_BACKEND)


def run_burst_sync(shop: str, tier_resolver: TierResolver | None = None) -> dict:
    """Runs the executive burst inline (no Celery). Safe fallback when broker/worker is unavailable."""
    session = db.get_shop_session(shop)
    if not session:
        raise AuthenticationFailure(f"{shop} has not installed the app")
    flows = PhoenixFlows(shop, ShopifyAdmin(shop, session["access_token"]), tier_resolver=tier_resolver)
    report = asyncio.run(flows.executive_burst())
    log.info("[burst] background run shop=%s counts=%s aborted=%s", shop, report.counts(), report.aborted)
    return report.to_dict()


@celery.task(name="executive_burst")
def executive_burst(shop: str):
    # Delegate to the shared sync implementation so both paths stay identical
    return run_burst_sync(shop)
