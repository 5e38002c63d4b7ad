import os
import threading
from datetime import datetime, timezone
from types import SimpleNamespace

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SHOPIFY_CLIENT_ID"] = "test-client-id"
os.environ["SHOPIFY_CLIENT_SECRET"] = "test-client-secret"
os.environ["OAUTH_STATE_SECRET"] = "test-state-secret"
os.environ["GEMINI_API_KEY"] = "test-gemini-key"
os.environ["BILLING_TIMEZONE"] = "UTC"
os.environ["BATCH_BACKOFF_SECONDS"] = "0"

import pytest

from phoenix import db
from phoenix.errors import CommitError


@pytest.fixture(autouse=True)
def clean_db():
    yield
    with db.SessionLocal() as session:
        for table in reversed(db.Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()


class FakeRepo:
    """In-memory stand-in for the phoenix.db functions the gates call."""

    def __init__(self, tier="free"):
        self.tier = tier
        self.counts = {}
        self.events = []
        self.churn = {}
        self.history = []
        self.config = {}
        self._lock = threading.Lock()

    def get_usage_count(self, shop, category, period_start):
        return self.counts.get((shop, category, period_start), 0)

    def get_usage_counts(self, shop, period_start):
        return {c: n for (s, c, p), n in self.counts.items() if s == shop and p == period_start}

    def increment_usage(self, shop, category, period_start, amount=1):
        with self._lock:
            key = (shop, category, period_start)
            self.counts[key] = self.counts.get(key, 0) + amount
            return self.counts[key]

    def add_usage_event(self, shop, category, period_start, amount=1, metadata=None):
        self.events.append((shop, category, period_start, amount, metadata))

    def get_anti_churn(self, shop):
        return self.churn.get(shop)

    def upsert_anti_churn(self, shop, last_uninstalled, trial_used=True):
        prev = self.churn.get(shop) or {}
        self.churn[shop] = {
            "shop": shop,
            "last_uninstalled": last_uninstalled,
            "trial_used": bool(prev.get("trial_used")) or trial_used,
        }

    def get_shop_tier(self, shop):
        return self.tier

    def get_configuration(self, shop):
        return self.config.get(shop)

    def add_optimization_history(self, shop, product_id, product_name, optimization_type, content=None, status="success"):
        self.history.append({"shop": shop, "product_id": product_id, "type": optimization_type, "status": status})

    def mark_history_applied(self, shop, product_id):
        n = 0
        for h in self.history:
            if h["shop"] == shop and h["product_id"] == product_id and h["status"] == "success":
                h["type"] = "APPLIED_TO_SHOPIFY"
                n += 1
        return n

    def count_optimization_history(self, shop):
        return sum(1 for h in self.history if h["shop"] == shop)


class FakeAdmin:
    """Records Shopify mutations; `fail_commit`/`fail_tag` hold gids whose mutation raises."""

    def __init__(self, products=None, *, fail_commit=(), fail_tag=(), shop="demo.myshopify.com"):
        self.shop = shop
        self.products = list(products or [])
        self.fail_commit = set(fail_commit)
        self.fail_tag = set(fail_tag)
        self.searches = []
        self.updates = []
        self.tags = []
        self.alt_updates = []
        self.inventory = []
        self.vitals = {}
        self.heartbeat_error = None

    def _select(self, search, limit):
        self.searches.append(search)
        out = self.products
        if search and search.startswith("-tag:"):
            tag = search[len("-tag:"):]
            out = [p for p in out if tag not in (p.get("tags") or [])]
        return [dict(p) for p in out[:limit]]

    def list_products(self, search=None, limit=50):
        return self._select(search, limit)

    def list_products_with_media(self, search=None, limit=5):
        return self._select(search, limit)

    def list_products_with_inventory(self, search=None, limit=50):
        return self._select(search, limit)

    def update_product(self, gid, *, title=None, description_html=None, status=None, tags=None):
        if gid in self.fail_commit:
            raise CommitError(f"productUpdate rejected {gid}")
        self.updates.append({"id": gid, "title": title, "descriptionHtml": description_html, "status": status})
        return {"id": gid}

    def add_tags(self, gid, tags):
        if gid in self.fail_tag:
            raise CommitError(f"tagsAdd rejected {gid}")
        self.tags.append((gid, list(tags)))
        for p in self.products:
            if p.get("id") == gid:
                p.setdefault("tags", []).extend(tags)

    def update_media_alt(self, files):
        self.alt_updates.extend(files)
        return files

    def list_locations(self, first=5):
        return [{"id": "gid://shopify/Location/1", "name": "Main", "isActive": True}]

    def primary_location_id(self):
        return "gid://shopify/Location/1"

    def set_inventory_quantities(self, quantities, *, reason="correction"):
        self.inventory.extend(quantities)

    def shop_vitals(self):
        return self.vitals

    def heartbeat(self):
        if self.heartbeat_error:
            raise self.heartbeat_error
        return {"name": "Demo", "plan": {"displayName": "Basic"}}


def product(n, **extra):
    p = {"id": f"gid://shopify/Product/{n}", "title": f"Product {n}", "descriptionHtml": "<p>old</p>", "tags": []}
    p.update(extra)
    return p


class Clock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def repo():
    return FakeRepo()


@pytest.fixture
def clock():
    return Clock()


def fake_gemini(**overrides):
    funcs = {
        "optimize_product": lambda p: {"title": p["title"] + " Pro", "descriptionHtml": "<p>new</p>"},
        "generate_alt_text": lambda name: f"{name} on a white background",
        "generate_product_description": lambda p, user_context=None, brand=None: f"<p>{p.get('title')} by {(brand or {}).get('brand_name')}</p>",
        "generate_ai_content": lambda content_type, **kw: [{"idea": 1}, {"idea": 2}],
        "generate_phoenix_content": lambda name, features: f"<h2>{name}</h2>",
        "analyze_product_data": lambda p, ctx=None: {"optimized_title": "T", "optimized_html_description": "<p>d</p>", "json_ld_schema": "{}", "seoScore": 6},
        "ignite_phoenix": lambda prompt, context: f"advice for {context}",
    }
    funcs.update(overrides)
    return SimpleNamespace(**funcs)
