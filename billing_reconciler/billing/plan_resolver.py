import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .domain import PAID_TIERS, PlanResolution, PlanTier, ResolutionSource

logger = logging.getLogger(__name__)


DEFAULT_ALIASES = {
    "pro": PlanTier.TIER1,
    "creator": PlanTier.TIER2,
    "enterprise": PlanTier.TIER3,
}

DEFAULT_KEYWORDS = {
    PlanTier.TIER3: ("enterprise", "tier3"),
    PlanTier.TIER2: ("creator", "tier2"),
    PlanTier.TIER1: ("pro", "tier1"),
}


def parse_tier(value) -> Optional[PlanTier]:
    if isinstance(value, PlanTier):
        return value
    try:
        return PlanTier(str(value).strip().lower())
    except ValueError:
        return None


class PlanResolver:
    """
    Maps a provider price id to an internal plan tier.

    Resolution order:
    1. plan hint written into metadata at checkout time
    2. exact match in the configured price table
    3. keyword match on the price id, highest tier first
    4. lowest paid tier, flagged as uncertain

    Never raises: a misconfigured price table degrades to a flagged guess
    instead of dropping the event.
    """

    def __init__(
        self,
        price_table: Optional[Mapping[str, PlanTier]] = None,
        aliases: Optional[Mapping[str, PlanTier]] = None,
        keywords: Optional[Mapping[PlanTier, Iterable[str]]] = None,
    ):
        self.price_table: Dict[str, PlanTier] = {
            price_id: tier for price_id, tier in (price_table or {}).items() if price_id
        }
        self.aliases: Dict[str, PlanTier] = {
            name.lower(): tier for name, tier in (aliases or DEFAULT_ALIASES).items()
        }
        self.keywords: Tuple[Tuple[PlanTier, Tuple[str, ...]], ...] = tuple(
            sorted(
                (
                    (tier, tuple(k.lower() for k in words))
                    for tier, words in (keywords or DEFAULT_KEYWORDS).items()
                ),
                key=lambda item: item[0].rank,
                reverse=True,
            )
        )

    @classmethod
    def from_config(cls, config: Mapping) -> "PlanResolver":
        price_table = {}
        for tier in PAID_TIERS:
            price_id = config.get(f"STRIPE_PRICE_{tier.value.upper()}")
            if price_id:
                price_table[price_id] = tier
        aliases = {
            name: parse_tier(tier)
            for name, tier in (config.get("PLAN_ALIASES") or DEFAULT_ALIASES).items()
        }
        keywords = {}
        for tier, words in (config.get("PLAN_KEYWORDS") or DEFAULT_KEYWORDS).items():
            parsed = parse_tier(tier)
            if parsed is not None and parsed.is_paid:
                keywords[parsed] = (words,) if isinstance(words, str) else tuple(words)
        return cls(
            price_table=price_table,
            aliases={name: tier for name, tier in aliases.items() if tier is not None},
            keywords=keywords,
        )

    def price_for(self, tier: PlanTier) -> Optional[str]:
        for price_id, mapped in self.price_table.items():
            if mapped is tier:
                return price_id
        return None

    def parse_hint(self, hint) -> Optional[PlanTier]:
        if not hint:
            return None
        name = str(hint).strip().lower()
        tier = self.aliases.get(name) or parse_tier(name)
        if tier is None or not tier.is_paid:
            return None
        return tier

    def resolve(self, price_id: Optional[str], metadata_hint=None) -> PlanResolution:
        tier = self.parse_hint(metadata_hint)
        if tier is not None:
            return PlanResolution(tier, ResolutionSource.METADATA, price_id)
        if metadata_hint:
            logger.warning(
                "Ignoring unrecognised plan hint",
                extra={"plan_hint": str(metadata_hint), "price_id": price_id},
            )

        if price_id and price_id in self.price_table:
            return PlanResolution(self.price_table[price_id], ResolutionSource.PRICE_TABLE, price_id)

        if price_id:
            lowered = price_id.lower()
            for tier, words in self.keywords:
                if any(word in lowered for word in words):
                    logger.info(
                        "Plan resolved by price id keyword",
                        extra={"price_id": price_id, "plan": tier.value},
                    )
                    return PlanResolution(tier, ResolutionSource.HEURISTIC, price_id)

        logger.warning(
            "Could not resolve plan from price id, assuming lowest paid tier",
            extra={"price_id": price_id, "plan": PlanTier.TIER1.value},
        )
        return PlanResolution(PlanTier.TIER1, ResolutionSource.DEFAULT, price_id)
