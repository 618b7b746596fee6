"""
Price sources for nodes.

StaticPriceSource — fixed table keyed by pair symbol (tests, replays)
HttpPriceSource   — cryptocompare-style REST API:
                    GET /data/price?fsym=ETH&tsyms=USD -> {"USD": 1800.5}
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from config import OracleConfig
from core.fixed_point import to_price


class StaticPriceSource:
    """Serves prices from an in-memory table."""

    def __init__(self, prices: Optional[Dict[str, int]] = None):
        self._prices: Dict[str, int] = dict(prices or {})

    def set_price(self, symbol: str, price: int) -> None:
        self._prices[symbol] = price

    async def get_price(self, pair: Any) -> Optional[int]:
        return self._prices.get(pair.symbol)


class HttpPriceSource:
    """
    REST price source.

    Provides:
    - One GET per pair per request
    - Scaled-int conversion through Decimal (no float round trip)
    """

    def __init__(
            self,
            cfg: Optional[OracleConfig] = None,
            client: Optional[httpx.AsyncClient] = None,
    ):
        cfg = cfg or OracleConfig()
        headers = {"Accept": "application/json"}
        if cfg.price_api_key:
            headers["authorization"] = f"Apikey {cfg.price_api_key}"
        self.client = client or httpx.AsyncClient(
            base_url=cfg.price_api_url,
            timeout=cfg.http_timeout_sec,
            headers=headers,
        )
        logger.info(f"Initialized HTTP price source: {cfg.price_api_url}")

    async def get_price(self, pair: Any) -> Optional[int]:
        try:
            response = await self.client.get(
                "/data/price", params={"fsym": pair.base, "tsyms": pair.quote}
            )
            response.raise_for_status()
            data = response.json()
            return to_price(Decimal(str(data[pair.quote])))
        except (httpx.HTTPError, KeyError, ValueError, InvalidOperation) as e:
            logger.error(f"Error fetching {pair.symbol} price: {e}")
            return None

    async def disconnect(self) -> None:
        await self.client.aclose()
