from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

# -1 means unlimited
UNLIMITED = -1

DESCRIPTIONS = "descriptions"
ADS = "ads"
MUSIC_VIDEOS = "music_videos"
CATEGORIES = (DESCRIPTIONS, ADS, MUSIC_VIDEOS)

# Feature flag that entitles a shop to spend quota in a category
CATEGORY_FEATURES: Dict[str, str] = {
    DESCRIPTIONS: "description_generator",
    ADS: "product_ads",
    MUSIC_VIDEOS: "music_video",
}

# Pay-as-you-go price per unit beyond the monthly allowance (USD)
OVERAGE_RATES: Dict[str, float] = {
    DESCRIPTIONS: 0.10,
    ADS: 1.00,
    MUSIC_VIDEOS: 5.00,
}


@dataclass(frozen=True)
class TierDefinition:
    name: str
    display_name: str
    price: int  # USD per month
    products_per_scan: int
    features: frozenset = field(default_factory=frozenset)
    quotas: Mapping[str, int] = field(default_factory=dict)

    def quota(self, category: str) -> int:
        return self.quotas.get(category, 0)


def _tier(name, display_name, price, products_per_scan, features, quotas) -> TierDefinition:
    return TierDefinition(
        name=name,
        display_name=display_name,
        price=price,
        products_per_scan=products_per_scan,
        features=frozenset(features),
        quotas=MappingProxyType(dict(quotas)),
    )


_BASE_FEATURES = ("description_generator", "alt_text", "policy_scan", "pdf_report")

TIERS: Mapping[str, TierDefinition] = MappingProxyType({
    "free": _tier("free", "Free Tier", 0, 5, _BASE_FEATURES, {
        DESCRIPTIONS: 10,
        ADS: 0,
        MUSIC_VIDEOS: 0,
    }),
    "starter": _tier("starter", "Starter", 29, 25, _BASE_FEATURES + ("bulk_analyzer", "product_ads"), {
        DESCRIPTIONS: 100,
        ADS: 30,  # ~$1/ad = $30 value included
        MUSIC_VIDEOS: 0,
    }),
    "professional": _tier("professional", "Professional", 79, 100, _BASE_FEATURES + (
        "bulk_analyzer", "product_ads", "music_video", "song_showcase", "priority_support",
    ), {
        DESCRIPTIONS: 500,
        ADS: 100,
        MUSIC_VIDEOS: 10,
    }),
    "enterprise": _tier("enterprise", "Enterprise", 199, UNLIMITED, _BASE_FEATURES + (
        "bulk_analyzer", "product_ads", "music_video", "song_showcase", "priority_support",
        "white_label", "api_access", "custom_training",
    ), {
        DESCRIPTIONS: UNLIMITED,
        ADS: UNLIMITED,
        MUSIC_VIDEOS: UNLIMITED,
    }),
})


def lookup(tier_name: str | None) -> Optional[TierDefinition]:
    return TIERS.get((tier_name or "").strip().lower())


def has_feature(tier_name: str | None, feature: str) -> bool:
    """Unknown tiers have no features."""
    tier = lookup(tier_name)
    if not tier:
        return False
    return feature in tier.features


def quota_for(tier_name: str | None, category: str) -> int:
    """Monthly allowance for a category; UNLIMITED (-1) or a count. Unknown tiers get 0."""
    tier = lookup(tier_name)
    if not tier:
        return 0
    return tier.quota(category)


def products_per_scan(tier_name: str | None) -> int:
    tier = lookup(tier_name)
    if not tier:
        return 0
    return tier.products_per_scan


def is_entitled(tier_name: str | None, category: str) -> bool:
    feature = CATEGORY_FEATURES.get(category)
    return bool(feature) and has_feature(tier_name, feature)


def has_reached_limit(tier_name: str | None, category: str, current_usage: int) -> bool:
    limit = quota_for(tier_name, category)
    if lookup(tier_name) and limit == UNLIMITED:
        return False
    return current_usage >= limit


def calculate_overage(tier_name: str | None, category: str, current_usage: int) -> Tuple[int, float]:
    """Return (units over the allowance, cost in USD) for pay-as-you-go billing."""
    if not lookup(tier_name):
        return 0, 0.0
    limit = quota_for(tier_name, category)
    if limit == UNLIMITED:
        return 0, 0.0
    overage = max(0, current_usage - limit)
    return overage, round(overage * OVERAGE_RATES.get(category, 0.0), 2)


def format_tier_limits(tier: TierDefinition) -> list[str]:
    limits = []
    if tier.products_per_scan == UNLIMITED:
        limits.append("Unlimited products per scan")
    else:
        limits.append(f"Scan up to {tier.products_per_scan} products")

    descriptions = tier.quota(DESCRIPTIONS)
    if descriptions == UNLIMITED:
        limits.append("Unlimited AI descriptions")
    else:
        limits.append(f"{descriptions} AI descriptions/month")

    ads = tier.quota(ADS)
    if ads == UNLIMITED:
        limits.append("Unlimited product ads")
    elif ads > 0:
        limits.append(f"{ads} product ads/month (~${ads} value)")

    videos = tier.quota(MUSIC_VIDEOS)
    if videos == UNLIMITED:
        limits.append("Unlimited music videos")
    elif videos > 0:
        limits.append(f"{videos} music videos/month")
    return limits
