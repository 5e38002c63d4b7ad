import logging
import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from phoenix.config import SHOPIFY_API_VERSION
from phoenix.errors import AuthenticationFailure, CommitError, RateLimitError

log = logging.getLogger(__name__)


def _normalize_shop_domain(val: str) -> str:
    v = (val or "").strip()
    # remove protocol if provided and any stray whitespace or slashes
    if v.lower().startswith("https://"):
        v = v[8:]
    elif v.lower().startswith("http://"):
        v = v[7:]
    v = v.strip().strip("/\t\n\r ")
    return v.lower()


PRODUCT_FIELDS = """
      id
      title
      handle
      vendor
      status
      tags
      descriptionHtml
      seo { description }
"""

PRODUCTS_QUERY = """
query Products($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    nodes {%s}
    pageInfo { hasNextPage endCursor }
  }
}
""" % PRODUCT_FIELDS

PRODUCTS_MEDIA_QUERY = """
query ProductsMedia($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    nodes {
      id
      title
      media(first: 5) {
        nodes {
          ... on MediaImage { id alt image { url } }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

PRODUCTS_INVENTORY_QUERY = """
query ProductsInventory($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    nodes {
      id
      title
      vendor
      variants(first: 10) {
        nodes { id inventoryQuantity inventoryItem { id } }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

PRODUCT_UPDATE = """
mutation UpdateProduct($input: ProductInput!) {
  productUpdate(input: $input) {
    product { id handle title status }
    userErrors { field message }
  }
}
"""

TAGS_ADD = """
mutation AddTags($id: ID!, $tags: [String!]!) {
  tagsAdd(id: $id, tags: $tags) {
    node { id }
    userErrors { field message }
  }
}
"""

FILE_UPDATE = """
mutation FileUpdate($files: [FileUpdateInput!]!) {
  fileUpdate(files: $files) {
    files { id alt }
    userErrors { field message }
  }
}
"""

LOCATIONS_QUERY = """
query Locations($first: Int!) {
  locations(first: $first) {
    nodes { id name isActive }
  }
}
"""

INVENTORY_SET_QUANTITIES = """
mutation SetQuantities($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    userErrors { field message }
  }
}
"""

SHOP_VITALS_QUERY = """
query ShopVitals {
  shop {
    name
    email
    myshopifyDomain
    plan { displayName }
    primaryDomain { url }
    shopAddress { address1 city province country zip }
    privacyPolicy { title body }
    refundPolicy { title body }
    shippingPolicy { title body }
    termsOfService { title body }
  }
}
"""

HEARTBEAT_QUERY = """
query Heartbeat {
  shop { name plan { displayName } }
}
"""


def _is_throttled(errors) -> bool:
    for err in errors or []:
        try:
            if ((err or {}).get("extensions") or {}).get("code") == "THROTTLED":
                return True
        except AttributeError:
            continue
    return False


def _user_errors(data: dict) -> list:
    """Collect userErrors from any mutation payload in the response."""
    out = []
    for payload in (data or {}).values():
        if isinstance(payload, dict):
            out.extend(payload.get("userErrors") or [])
    return out


class ShopifyAdmin:
    """Admin GraphQL client scoped to one shop and its offline access token."""

    def __init__(self, shop: str, access_token: str, api_version: str | None = None, *, timeout: int = 60):
        self.shop = _normalize_shop_domain(shop)
        if not self.shop:
            raise AuthenticationFailure("shop domain is missing")
        if not access_token:
            raise AuthenticationFailure(f"no access token for {self.shop}")
        self.access_token = access_token
        self.api_version = api_version or SHOPIFY_API_VERSION
        self.timeout = timeout
        self.gql_url = f"https://{self.shop}/admin/api/{self.api_version}/graphql.json"
        self.headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=8),
        retry=retry_if_exception_type(requests.exceptions.RequestException),
        reraise=True,
    )
    def _post(self, query: str, variables: dict | None) -> requests.Response:
        r = requests.post(self.gql_url, headers=self.headers, json={"query": query, "variables": variables or {}}, timeout=self.timeout)
        if r.status_code == 429:
            raise RateLimitError(f"Shopify throttled {self.shop} (HTTP 429)")
        if r.status_code in (401, 403):
            raise AuthenticationFailure(f"Shopify rejected the access token for {self.shop} (HTTP {r.status_code})")
        r.raise_for_status()
        return r

    def graphql(self, query: str, variables: dict | None = None) -> dict:
        try:
            r = self._post(query, variables)
        except requests.exceptions.RequestException as e:
            log.warning("[shopify] %s unreachable after retries: %s", self.shop, e)
            raise CommitError(f"Shopify request failed for {self.shop}: {e}") from e
        j = r.json()
        if j.get("errors"):
            if _is_throttled(j["errors"]):
                raise RateLimitError(f"Shopify throttled {self.shop}: {j['errors']}")
            raise CommitError(f"GraphQL errors: {j['errors']}")
        data = j.get("data") or {}
        ue = _user_errors(data)
        if ue:
            raise CommitError(f"GraphQL userErrors: {ue}")
        return data

    def _paginate(self, query: str, *, search: str | None, limit: int, page_size: int = 50) -> list[dict]:
        out: list[dict] = []
        after = None
        while len(out) < limit:
            first = min(page_size, limit - len(out))
            data = self.graphql(query, {"first": first, "after": after, "query": search})
            conn = data.get("products") or {}
            out.extend(conn.get("nodes") or [])
            info = conn.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                break
            after = info.get("endCursor")
        return out[:limit]

    def list_products(self, search: str | None = None, limit: int = 50) -> list[dict]:
        return self._paginate(PRODUCTS_QUERY, search=search, limit=limit)

    def list_products_with_media(self, search: str | None = None, limit: int = 5) -> list[dict]:
        return self._paginate(PRODUCTS_MEDIA_QUERY, search=search, limit=limit)

    def list_products_with_inventory(self, search: str | None = None, limit: int = 50) -> list[dict]:
        return self._paginate(PRODUCTS_INVENTORY_QUERY, search=search, limit=limit)

    def update_product(self, product_gid: str, *, title: str | None = None, description_html: str | None = None, status: str | None = None, tags: list[str] | None = None) -> dict:
        inp: dict = {"id": product_gid}
        if title is not None:
            inp["title"] = title
        if description_html is not None:
            inp["descriptionHtml"] = description_html
        if status is not None:
            inp["status"] = status
        if tags is not None:
            inp["tags"] = tags
        data = self.graphql(PRODUCT_UPDATE, {"input": inp})
        return (data.get("productUpdate") or {}).get("product") or {}

    def add_tags(self, gid: str, tags: list[str] | str) -> None:
        if isinstance(tags, str):
            tags = [tags]
        self.graphql(TAGS_ADD, {"id": gid, "tags": list(tags)})

    def update_media_alt(self, files: list[dict]) -> list[dict]:
        """files: [{"id": MediaImage gid, "alt": str}]"""
        if not files:
            return []
        data = self.graphql(FILE_UPDATE, {"files": files})
        return (data.get("fileUpdate") or {}).get("files") or []

    def list_locations(self, first: int = 5) -> list[dict]:
        data = self.graphql(LOCATIONS_QUERY, {"first": first})
        return (data.get("locations") or {}).get("nodes") or []

    def primary_location_id(self) -> str | None:
        locs = self.list_locations(first=5)
        for loc in locs:
            if loc.get("isActive", True):
                return loc.get("id")
        # Fallback to first location if none marked active
        return locs[0].get("id") if locs else None

    def set_inventory_quantities(self, quantities: list[dict], *, reason: str = "correction") -> None:
        """quantities: [{"inventoryItemId", "locationId", "quantity"}] applied to `available`."""
        if not quantities:
            return
        self.graphql(INVENTORY_SET_QUANTITIES, {"input": {
            "name": "available",
            "reason": reason,
            "ignoreCompareQuantity": True,
            "quantities": quantities,
        }})

    def shop_vitals(self) -> dict:
        return self.graphql(SHOP_VITALS_QUERY).get("shop") or {}

    def heartbeat(self) -> dict:
        return self.graphql(HEARTBEAT_QUERY).get("shop") or {}
