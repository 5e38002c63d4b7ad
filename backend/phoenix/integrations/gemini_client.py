import json
import logging
import re
from typing import Any, Dict, List

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from phoenix.config import GEMINI_API_KEY, GEMINI_MODEL
from phoenix.errors import GenerationError, RateLimitError

log = logging.getLogger(__name__)

_model = None

ALT_TEXT_MAX = 125
CONTENT_TYPES = ("music_video", "product_ad", "song_showcase", "general")


def _get_model():
    """Configure the SDK once and reuse the model handle."""
    global _model
    if _model is None:
        if not GEMINI_API_KEY:
            raise GenerationError("GEMINI_API_KEY is not set.")
        genai.configure(api_key=GEMINI_API_KEY)
        _model = genai.GenerativeModel(GEMINI_MODEL)
    return _model


def _generate(contents, *, json_mode: bool = False) -> str:
    model = _get_model()
    generation_config = {"response_mime_type": "application/json"} if json_mode else None
    try:
        resp = model.generate_content(contents, generation_config=generation_config)
    except (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests) as e:
        raise RateLimitError(f"Gemini quota exceeded: {e}") from e
    except google_exceptions.GoogleAPIError as e:
        raise GenerationError(f"Gemini request failed: {e}") from e
    try:
        text = resp.text
    except ValueError as e:
        # Blocked or empty candidates
        raise GenerationError(f"Gemini returned no text: {e}") from e
    if not (text or "").strip():
        raise GenerationError("Gemini returned an empty response")
    return text


_FENCE_RE = re.compile(r"```(?:json)?\s*|```")


def _parse_json_safely(text: str) -> dict | list | None:
    s = _FENCE_RE.sub("", text or "").strip()
    try:
        return json.loads(s)
    except ValueError:
        pass
    # Try to extract the first JSON object/array if extra text is around
    starts = [p for p in (s.find("{"), s.find("[")) if p != -1]
    if not starts:
        return None
    s = s[min(starts):]
    stack = []
    for i, ch in enumerate(s):
        if ch in "[{":
            stack.append(ch)
        elif ch in "]}":
            if stack:
                stack.pop()
                if not stack:
                    try:
                        return json.loads(s[:i + 1])
                    except ValueError:
                        return None
    return None


def generate_text(prompt: str | list) -> str:
    return _generate(prompt).strip()


def generate_json(prompt: str) -> dict | list:
    text = _generate(prompt, json_mode=True)
    data = _parse_json_safely(text)
    if data is None:
        raise GenerationError(f"Unparseable JSON from Gemini: {text[:200]!r}")
    return data


# ---------------- Product optimization (executive burst) ----------------
def build_optimize_prompt(product: Dict[str, Any]) -> str:
    return (
        "Analyze this Shopify Product:\n"
        f"Title: {product.get('title') or ''}\n"
        f"Desc: {product.get('descriptionHtml') or ''}\n\n"
        "Task: Generate an Optimized H1 Title and a Persuasive Description(HTML).\n"
        "Constraints:\n"
        "1. Title: User-focused, descriptive, clean.\n"
        "2. Description: 2 sentences max, sales-driven.\n"
        '3. Output JSON: { "title": "...", "descriptionHtml": "..." }\n'
    )


def optimize_product(product: Dict[str, Any]) -> Dict[str, str]:
    """Return {"title", "descriptionHtml"} for a product; raises GenerationError on malformed output."""
    data = generate_json(build_optimize_prompt(product))
    if not isinstance(data, dict):
        raise GenerationError("expected a JSON object with title and descriptionHtml")
    title = str(data.get("title") or "").strip()
    desc = str(data.get("descriptionHtml") or "").strip()
    if not (title and desc):
        raise GenerationError("Gemini response is missing title or descriptionHtml")
    return {"title": title, "descriptionHtml": desc}


# ---------------- Alt text ----------------
def generate_alt_text(product_name: str) -> str:
    prompt = f"Write a {ALT_TEXT_MAX}-character 'Answer-First' SEO alt-text for: {product_name}. No fluff. Return only the alt text."
    text = generate_text(prompt).strip().strip('"')
    return text[:ALT_TEXT_MAX]


# ---------------- Phoenix HTML content ----------------
def generate_phoenix_content(product_name: str, features: List[str]) -> str:
    prompt = (
        "[STRICT ACTION MODE - NO LECTURE]\n"
        f"PRODUCT: {product_name}\n"
        f"FEATURES: {', '.join(features or [])}\n\n"
        "TASK: Generate high-converting Shopify HTML.\n"
        "STYLE: 'Answer-First' (GEO optimized) + TikTok 'Authentic' Tone.\n\n"
        "OUTPUT STRUCTURE:\n"
        "- <h2>: Catchy, keyword-rich title.\n"
        "- <p>: Immediate hook addressing a pain point.\n"
        "- <ul>: 3-5 benefit-driven bullets (scannable).\n"
        "- <strong>: Urgency-based Call to Action.\n\n"
        "CONSTRAINT: Do not include Meta descriptions. Do not explain your choices. Return ONLY HTML."
    )
    return _FENCE_RE.sub("", generate_text(prompt)).strip()


# ---------------- Multi-purpose content (music videos, ads, showcases) ----------------
def build_content_prompt(content_type: str, *, song_title: str | None = None, product_details: str | None = None,
                         target_audience: str | None = None, brand_context: str | None = None) -> str:
    brand = brand_context or "your brand"
    audience = target_audience or "general audience"
    if content_type == "music_video":
        return (
            "[STRICT ACTION MODE - NO LECTURE]\n"
            f"ROLE: Music Video Director for {brand}\n"
            f'SONG: "{song_title or "untitled track"}"\n\n'
            "TASK: Generate 5 YouTube-optimized video scenes.\n"
            "OUTPUT: Valid JSON array ONLY. No explanation.\n"
            '[{"scene_number": 1, "timestamp": "0:00-0:15", "scene_description": "What viewers see", '
            '"canva_image_prompt": "Specific visual for Canva", "camera_movement": "pan/zoom/static", '
            '"mood_colors": "color palette", "text_overlay": "text to display"}]'
        )
    if content_type == "product_ad":
        return (
            "[STRICT ACTION MODE - NO LECTURE]\n"
            f"ROLE: Ad Director for {brand}\n"
            f"PRODUCT: {product_details or 'product'}\n"
            f"AUDIENCE: {audience}\n\n"
            "TASK: Generate 3 high-converting ad concepts.\n"
            "OUTPUT: Valid JSON array ONLY. No explanation.\n"
            '[{"ad_concept": "Creative hook idea", "hook_text": "Opening line (under 10 words)", '
            '"body_copy": "Persuasive copy (2-3 sentences)", "canva_image_prompt": "Visual description for Canva", '
            '"call_to_action": "CTA button text", "platform_optimization": "Best platform"}]\n'
            "Focus: Conversion, emotion, urgency. Answer-First style."
        )
    if content_type == "song_showcase":
        return (
            "[STRICT ACTION MODE - NO LECTURE]\n"
            f"ROLE: E-commerce Designer for {brand}\n"
            f'SONG: "{song_title or "featured track"}"\n\n'
            "TASK: Generate 4 product page image concepts.\n"
            "OUTPUT: Valid JSON array ONLY. No explanation.\n"
            '[{"image_type": "hero/lifestyle/detail/social_proof", "canva_image_prompt": "Visual for Canva", '
            '"purpose": "What this accomplishes", "text_elements": "Text overlays", "color_scheme": "Colors", '
            '"where_to_use": "Homepage/Product page"}]'
        )
    return (
        "[STRICT ACTION MODE - NO LECTURE]\n"
        f"CONTEXT: {product_details or 'General content'}\n"
        f"AUDIENCE: {audience}\n\n"
        "TASK: Generate 5 versatile content ideas.\n"
        "OUTPUT: Valid JSON array ONLY.\n"
        '[{"content_idea": "Concept", "canva_image_prompt": "Visual prompt", '
        '"use_cases": ["YouTube", "Instagram", "Website"], "vibe": "mood"}]'
    )


def generate_ai_content(content_type: str, **kwargs) -> list:
    data = generate_json(build_content_prompt(content_type, **kwargs))
    if isinstance(data, dict):
        # Some responses wrap the array in an object
        for v in data.values():
            if isinstance(v, list):
                return v
        return [data]
    return data


def generate_product_description(product: Dict[str, Any], *, user_context: str | None = None, brand: Dict[str, Any] | None = None) -> str:
    brand = brand or {}
    prompt = (
        "[STRICT ACTION MODE - NO LECTURE]\n"
        f"ROLE: E-commerce Copywriter for {brand.get('brand_name') or 'your brand'}\n"
        f"BRAND IDENTITY: {brand.get('identity_summary') or 'n/a'}\n"
        f"UNIQUE SELLING POINT: {brand.get('usp') or 'n/a'}\n"
        f"AUDIENCE: {brand.get('target_audience') or 'your ideal customer'}\n"
        f"PRODUCT: {product.get('title') or 'product'}. FEATURES: {product.get('features') or 'none'}. "
        f"USER STRATEGY: {user_context or 'none'}\n\n"
        "TASK: Write a persuasive product description in Shopify-ready HTML (<p> and <ul> only). Return ONLY HTML."
    )
    return _FENCE_RE.sub("", generate_text(prompt)).strip()


# ---------------- Analysis & co-pilot ----------------
def analyze_product_data(product: Dict[str, Any], user_context: str | None = None) -> Dict[str, Any]:
    """SEO analysis of one product: optimized title/description, JSON-LD and a 1-10 score."""
    prompt = (
        "Analyze the following Shopify product data based on current market trends and SEO best practices.\n"
        f"Strategy context: {user_context or 'Batch Optimization'}\n"
        f"Product Data: {json.dumps(product, ensure_ascii=False, default=str)}\n\n"
        "Return ONLY valid JSON with keys: optimized_title (string), optimized_html_description (string, HTML), "
        "json_ld_schema (string, schema.org Product JSON-LD), seoScore (integer 1-10), "
        "missing_keywords (string[3]), missing_trust_signals (string[])."
    )
    data = generate_json(prompt)
    if not isinstance(data, dict):
        raise GenerationError("expected a JSON object from product analysis")
    schema = data.get("json_ld_schema")
    if isinstance(schema, (dict, list)):
        data["json_ld_schema"] = json.dumps(schema, ensure_ascii=False)
    try:
        data["seoScore"] = max(1, min(10, int(data.get("seoScore") or 0)))
    except (TypeError, ValueError):
        data["seoScore"] = 1
    return data


def ignite_phoenix(prompt: str, context: str = "General Strategy") -> str:
    system = (
        "You are Phoenix Flow, a specialized Shopify Merchant Co-Pilot. "
        f"Current Context: {context}. Response format: Concise, actionable advice."
    )
    return generate_text([system, prompt])
