"""Venue fee/gas/slippage profiles and per-action cost quotes."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from ..config import CostModelConfig, VenueProfile
from ..models import Policy, Venue, VenueType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionQuote:
    venue: Venue
    fee_rate: float
    slippage: float
    gas_usd: float
    cost_usd: float


def parse_venues(raw: Mapping[str, Any] | Iterable[Venue] | None) -> list[Venue]:
    """Accept venue metadata as ``Venue`` objects or a ``{venue_id: {...}}`` map."""
    if not raw:
        return []
    if not isinstance(raw, Mapping):
        return list(raw)

    venues: list[Venue] = []
    for venue_id, info in raw.items():
        if isinstance(info, Venue):
            venues.append(info)
            continue
        info = dict(info or {})
        fees = dict(info.get("fee_schedule", {}))
        venues.append(
            Venue(
                venue_id=str(venue_id),
                chain=info.get("chain", ""),
                name=info.get("name", str(venue_id)),
                venue_type=info.get("type", info.get("venue_type", "lending")),
                base_fee=fees.get("base_fee"),
                gas_usd=fees.get("gas_usd"),
                slippage_base=fees.get("slippage_base"),
            )
        )
    return venues


def venue_permitted(venue: Venue, policy: Policy) -> bool:
    """Apply the policy allow/block lists by venue id or ``chain:name`` key."""
    names = {venue.venue_id, venue.key}
    if names & set(policy.blocked_venues):
        return False
    if policy.allowed_venues and not names & set(policy.allowed_venues):
        return False
    return True


class CostModel:
    """Prices actions as ``notional * (fee + slippage) + gas``."""

    def __init__(self, config: CostModelConfig | None = None) -> None:
        self._config = config or CostModelConfig()

    def profile(self, venue: Venue) -> VenueProfile:
        base = self._config.profiles[venue.venue_type.value]
        return VenueProfile(
            base_fee=base.base_fee if venue.base_fee is None else venue.base_fee,
            gas_usd=base.gas_usd if venue.gas_usd is None else venue.gas_usd,
            slippage_base=(
                base.slippage_base if venue.slippage_base is None else venue.slippage_base
            ),
        )

    def slippage(self, trade_size_usd: float, slippage_base: float) -> float:
        """Flat below the threshold, ``base + k * sqrt(size / threshold)`` above."""
        threshold = self._config.slippage_threshold_usd
        if trade_size_usd < threshold:
            return slippage_base
        return slippage_base + self._config.slippage_k * math.sqrt(trade_size_usd / threshold)

    def friction(self, venue: Venue, notional_usd: float) -> float:
        """Fee plus slippage cost without gas; smooth in ``notional_usd``."""
        if notional_usd <= 0.0:
            return 0.0
        profile = self.profile(venue)
        return notional_usd * (
            profile.base_fee + self.slippage(notional_usd, profile.slippage_base)
        )

    def quote(self, venue: Venue, notional_usd: float) -> ActionQuote:
        profile = self.profile(venue)
        slip = self.slippage(notional_usd, profile.slippage_base)
        gas = profile.gas_usd if notional_usd > 0.0 else 0.0
        return ActionQuote(
            venue=venue,
            fee_rate=profile.base_fee,
            slippage=slip,
            gas_usd=gas,
            cost_usd=self.friction(venue, notional_usd) + gas,
        )

    def cheapest(
        self,
        venues: Iterable[Venue],
        notional_usd: float,
        venue_types: tuple[VenueType, ...],
    ) -> ActionQuote | None:
        """Lowest-cost quote among venues of the given types (ties by venue id)."""
        quotes = [
            self.quote(v, notional_usd) for v in venues if v.venue_type in venue_types
        ]
        if not quotes:
            return None
        return min(quotes, key=lambda q: (q.cost_usd, q.venue.venue_id))


def eligible_venues(venues: Iterable[Venue], policy: Policy) -> list[Venue]:
    permitted = [v for v in venues if venue_permitted(v, policy)]
    logger.debug("%d venue(s) permitted by policy", len(permitted))
    return permitted
