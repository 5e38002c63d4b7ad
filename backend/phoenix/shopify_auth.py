import base64
import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode

import jwt  # PyJWT
import requests
from fastapi import Depends, Header, Request

from phoenix import db
from phoenix.config import BASE_URL, OAUTH_STATE_SECRET, SHOPIFY_CLIENT_ID, SHOPIFY_CLIENT_SECRET, SHOPIFY_OAUTH_SCOPES
from phoenix.errors import AuthenticationFailure
from phoenix.integrations.shopify_client import ShopifyAdmin

log = logging.getLogger(__name__)

_SHOP_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")
STATE_TTL_SECONDS = 10 * 60


def extract_shop_domain(raw: str | None) -> str | None:
    """Extract a valid shop domain from user input.

    Accepts inputs like:
      - my-shop.myshopify.com
      - https://my-shop.myshopify.com/admin
    """
    s = (raw or "").strip().lower()
    if not s:
        return None
    # strip protocol and path if pasted as URL
    if s.startswith("https://"):
        s = s[8:]
    elif s.startswith("http://"):
        s = s[7:]
    s = s.split("/", 1)[0].split("?", 1)[0].split("#", 1)[0].strip()
    return s if _SHOP_RE.match(s) else None


def is_valid_shop_domain(shop: str | None) -> bool:
    return bool(_SHOP_RE.match((shop or "").strip().lower()))


def _b64u_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64u_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s or "") + pad)


def _state_secret() -> bytes:
    sec = (OAUTH_STATE_SECRET or SHOPIFY_CLIENT_SECRET or "").strip()
    if not sec:
        # Dev-only fallback; production should set OAUTH_STATE_SECRET
        sec = "dev-oauth-state-secret"
    return sec.encode("utf-8")


def issue_state(payload: dict) -> str:
    msg = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    body = _b64u_encode(msg)
    sig = _b64u_encode(hmac.new(_state_secret(), body.encode("ascii"), hashlib.sha256).digest())
    return f"{body}.{sig}"


def verify_state(token: str) -> dict | None:
    tok = (token or "").strip()
    if not tok or "." not in tok:
        return None
    body, sig = tok.split(".", 1)
    exp_sig = _b64u_encode(hmac.new(_state_secret(), body.encode("ascii"), hashlib.sha256).digest())
    if not hmac.compare_digest(exp_sig, sig):
        return None
    try:
        payload = json.loads(_b64u_decode(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    # exp check (unix seconds)
    try:
        exp = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    if exp and int(time.time()) > exp:
        return None
    return payload


def verify_query_hmac(raw_query: str, client_secret: str | None = None) -> bool:
    """Verify Shopify's query-string HMAC (SHA256 hex over the sorted, decoded params minus hmac/signature)."""
    secret = (client_secret if client_secret is not None else SHOPIFY_CLIENT_SECRET or "").strip()
    pairs = parse_qsl(raw_query or "", keep_blank_values=True)
    provided = next((v for k, v in pairs if k == "hmac"), "").strip()
    if not (provided and secret):
        return False
    msg = "&".join(f"{k}={v}" for k, v in sorted((k, v) for k, v in pairs if k not in ("hmac", "signature")))
    digest = hmac.new(secret.encode("utf-8"), msg.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, provided)


def verify_webhook_hmac(body: bytes, header_hmac: str | None, client_secret: str | None = None) -> bool:
    """X-Shopify-Hmac-Sha256 is base64(HMAC-SHA256(raw body))."""
    secret = (client_secret if client_secret is not None else SHOPIFY_CLIENT_SECRET or "").strip()
    if not (secret and header_hmac):
        return False
    expected = base64.b64encode(hmac.new(secret.encode("utf-8"), body or b"", hashlib.sha256).digest()).decode("ascii")
    return hmac.compare_digest(expected, header_hmac.strip())


def abs_base_url(request: Request) -> str:
    """Absolute base URL for redirects; BASE_URL wins for non-local deployments."""
    if BASE_URL and ("localhost" not in BASE_URL and "127.0.0.1" not in BASE_URL):
        return BASE_URL.rstrip("/")
    host = (request.headers.get("x-forwarded-host") or request.headers.get("host") or "").strip()
    scheme = (request.headers.get("x-forwarded-proto") or request.url.scheme or "https").strip()
    return (f"{scheme}://{host}" if host else str(request.base_url)).rstrip("/")


def authorize_url(shop: str, redirect_uri: str, *, nonce: str) -> str:
    if not (SHOPIFY_CLIENT_ID and SHOPIFY_CLIENT_SECRET):
        raise AuthenticationFailure("missing Shopify client credentials")
    now = int(time.time())
    state = issue_state({"shop": shop, "nonce": nonce, "iat": now, "exp": now + STATE_TTL_SECONDS})
    params = {
        "client_id": SHOPIFY_CLIENT_ID,
        "scope": (SHOPIFY_OAUTH_SCOPES or "").strip(),
        "redirect_uri": redirect_uri,
        "state": state,
    }
    return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"


def complete_oauth(raw_query: str) -> dict:
    """Validate the OAuth callback, exchange the code and store the offline token. Returns the session."""
    qp = dict(parse_qsl(raw_query or "", keep_blank_values=True))
    shop = (qp.get("shop") or "").strip().lower()
    code = (qp.get("code") or "").strip()
    st = verify_state(qp.get("state") or "")
    if not st:
        raise AuthenticationFailure("invalid_state")
    if not is_valid_shop_domain(shop):
        raise AuthenticationFailure("invalid_shop_domain")
    if st.get("shop") and str(st.get("shop")).strip().lower() != shop:
        raise AuthenticationFailure("shop_mismatch")
    if not code:
        raise AuthenticationFailure("missing_code")
    if not verify_query_hmac(raw_query):
        log.info("[shopify] invalid_hmac shop=%s", shop)
        raise AuthenticationFailure("invalid_hmac")

    try:
        resp = requests.post(f"https://{shop}/admin/oauth/access_token", json={
            "client_id": SHOPIFY_CLIENT_ID,
            "client_secret": SHOPIFY_CLIENT_SECRET,
            "code": code,
        }, timeout=30)
        resp.raise_for_status()
        data = resp.json() if resp.content else {}
    except requests.exceptions.RequestException as e:
        raise AuthenticationFailure(f"token_exchange_failed: {e}") from e
    access_token = str((data or {}).get("access_token") or "").strip()
    if not access_token:
        raise AuthenticationFailure("missing_access_token_from_shopify")
    scopes = (data or {}).get("scope") or (data or {}).get("scopes")
    db.save_shop_session(shop, access_token, scopes)
    log.info("[shopify] installed shop=%s scopes=%s", shop, scopes)
    return {"shop": shop, "scopes": scopes}


def verify_session_token(token: str) -> dict:
    """Decode an App Bridge session token (HS256 with the app secret, aud = client id)."""
    if not token or token.lower() in ("null", "undefined", "none"):
        raise AuthenticationFailure("Missing session token")
    if not SHOPIFY_CLIENT_SECRET:
        raise AuthenticationFailure("Server misconfiguration: SHOPIFY_CLIENT_SECRET not set")
    try:
        payload = jwt.decode(
            token,
            SHOPIFY_CLIENT_SECRET,
            algorithms=["HS256"],
            audience=SHOPIFY_CLIENT_ID or None,
            options={"verify_aud": bool(SHOPIFY_CLIENT_ID), "require": ["exp", "dest"]},
            leeway=10,
        )
    except jwt.PyJWTError as e:
        log.info("[auth] session token rejected: %s", e)
        raise AuthenticationFailure("Invalid session token") from e
    shop = extract_shop_domain(str(payload.get("dest") or ""))
    if not shop:
        raise AuthenticationFailure("Session token has no valid dest claim")
    payload["shop"] = shop
    return payload


def current_shop(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: Bearer session token -> shop domain."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationFailure("Missing authorization header")
    return verify_session_token(authorization[len("Bearer "):].strip())["shop"]


@dataclass
class AdminContext:
    shop: str
    admin: ShopifyAdmin


def authenticate_admin(shop: str = Depends(current_shop)) -> AdminContext:
    """FastAPI dependency: shop + an Admin client bound to its stored offline token."""
    session = db.get_shop_session(shop)
    if not session:
        raise AuthenticationFailure(f"{shop} has not installed the app")
    return AdminContext(shop=shop, admin=ShopifyAdmin(shop, session["access_token"]))
