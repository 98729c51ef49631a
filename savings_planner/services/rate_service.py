"""Exchange rate lookup and currency conversion."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Protocol

import httpx

from savings_planner.cache import CacheManager
from savings_planner.config import Settings
from savings_planner.exceptions import RateUnavailableError
from savings_planner.logging_config import get_logger
from savings_planner.money import ONE, rate_key, same_currency

logger = get_logger(__name__)


class RateGateway(Protocol):
    """Source of exchange rates. Raises ``RateUnavailableError`` on failure."""

    async def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        ...


class HttpRateGateway:
    """Rate gateway backed by an HTTP rates API, cached in Redis.

    The API is queried as ``GET {rate_api_url}/latest?base=FROM&symbols=TO``
    and must answer ``{"rates": {"TO": <rate>}}``.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[CacheManager] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize gateway.

        Args:
            settings: Application settings
            cache: Rate cache (optional, rates are fetched directly without it)
            client: HTTP client (optional, one is created from settings)
        """
        self.settings = settings
        self.cache = cache
        self.client = client or httpx.AsyncClient(
            base_url=settings.rate_api_url, timeout=settings.rate_request_timeout
        )

    async def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if same_currency(from_currency, to_currency):
            return ONE

        base = from_currency.upper()
        symbol = to_currency.upper()
        cache_key = f"rate:{rate_key(base, symbol)}"

        if self.cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return Decimal(str(cached))

        try:
            response = await self.client.get(
                "/latest", params={"base": base, "symbols": symbol}
            )
            response.raise_for_status()
            payload = response.json()
            rate = Decimal(str(payload["rates"][symbol]))
        except httpx.HTTPError as e:
            logger.warning("Rate request failed", base=base, symbol=symbol, error=str(e))
            raise RateUnavailableError(base, symbol, str(e)) from e
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning("Malformed rate response", base=base, symbol=symbol, error=str(e))
            raise RateUnavailableError(base, symbol, "malformed response") from e

        if rate <= 0:
            raise RateUnavailableError(base, symbol, f"non-positive rate {rate}")

        if self.cache:
            await self.cache.set(cache_key, str(rate), expire=self.settings.rate_cache_ttl_seconds)

        return rate

    async def aclose(self) -> None:
        await self.client.aclose()


@dataclass
class Conversion:
    """Converted amount and the rate that produced it."""

    amount: Decimal
    rate: Decimal
    is_approximate: bool = False


class CurrencyConverter:
    """Converts amounts through a rate gateway with a 1:1 fallback.

    A failed lookup never propagates: the amount is passed through unchanged
    and the result is flagged approximate.
    """

    def __init__(self, gateway: RateGateway):
        self.gateway = gateway

    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """Get a rate, or None when unavailable."""
        if same_currency(from_currency, to_currency):
            return ONE
        try:
            return await self.gateway.fetch_rate(from_currency, to_currency)
        except RateUnavailableError as e:
            logger.warning(
                "Exchange rate unavailable",
                from_currency=from_currency,
                to_currency=to_currency,
                error=str(e),
            )
            return None

    async def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Conversion:
        """Convert ``amount`` between currencies.

        Args:
            amount: Amount in ``from_currency``
            from_currency: Source currency code
            to_currency: Target currency code

        Returns:
            Conversion, flagged approximate when the 1:1 fallback was used
        """
        rate = await self.get_rate(from_currency, to_currency)
        if rate is None:
            logger.warning(
                "Using 1:1 fallback rate",
                from_currency=from_currency,
                to_currency=to_currency,
                amount=str(amount),
            )
            return Conversion(amount=amount, rate=ONE, is_approximate=True)
        return Conversion(amount=amount * rate, rate=rate)


class RateTable:
    """Per-call memo of rates so each currency pair is fetched at most once."""

    def __init__(self, converter: CurrencyConverter):
        self.converter = converter
        self.rates: Dict[str, Decimal] = {}
        self.missing: list[str] = []

    async def rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        key = rate_key(from_currency, to_currency)
        if key in self.rates:
            return self.rates[key]
        if key in self.missing:
            return None
        rate = await self.converter.get_rate(from_currency, to_currency)
        if rate is None:
            self.missing.append(key)
        else:
            self.rates[key] = rate
        return rate
