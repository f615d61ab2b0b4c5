"""Price source protocol — oracle price feed abstraction."""
from typing import Protocol


class PriceSource(Protocol):
    """Abstract interface for fetching current asset prices in USD."""

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]: ...
