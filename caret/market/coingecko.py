import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from caret.config import settings
from caret.config import tokens as catalog
from caret.errors import PriceFetchFailed, PriceHistoryError, UnknownSymbol
from caret.types import PriceHistory, PricePoint

logger = logging.getLogger("caret.market")

MAX_LOOKBACK_DAYS = 15


def parse_market_chart(symbol: str, days: int, payload: Dict[str, Any]) -> PriceHistory:
    """Zip CoinGecko's parallel price/volume/market-cap arrays into points."""
    prices = payload.get("prices") or []
    volumes = payload.get("total_volumes") or []
    caps = payload.get("market_caps") or []
    points = []
    for i, (ts, price) in enumerate(prices):
        points.append(
            PricePoint(
                timestamp=ts,
                price=price,
                volume=volumes[i][1] if i < len(volumes) else 0.0,
                market_cap=caps[i][1] if i < len(caps) else 0.0,
            )
        )
    return PriceHistory(symbol=symbol, days=days, points=points)


class PriceHistorySource:
    """CoinGecko market-chart client with a small freshness cache."""

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        cache_sec: Optional[float] = None,
        cache_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._http = http
        self.base_url = (base_url or settings.coingecko_base).rstrip("/")
        self.cache_sec = settings.price_cache_sec if cache_sec is None else cache_sec
        self.cache_size = cache_size or settings.price_cache_size
        self._clock = clock
        self._cache: Dict[Tuple[str, int], Tuple[float, PriceHistory]] = {}

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            headers = {}
            if settings.coingecko_api_key:
                headers["x-cg-demo-api-key"] = settings.coingecko_api_key
            self._http = httpx.AsyncClient(headers=headers, timeout=15)
        return self._http

    def _fresh(self, fetched_at: float) -> bool:
        return self._clock() - fetched_at < self.cache_sec

    def _remember(self, key: Tuple[str, int], history: PriceHistory) -> None:
        self._cache[key] = (self._clock(), history)
        if len(self._cache) > self.cache_size:
            newest = sorted(self._cache.items(), key=lambda kv: kv[1][0], reverse=True)
            self._cache = dict(newest[: self.cache_size])

    async def get(self, symbol: str, days: int = 7) -> PriceHistory:
        symbol = symbol.upper()
        key = (symbol, days)
        hit = self._cache.get(key)
        if hit and self._fresh(hit[0]):
            logger.debug(f"[market] cache hit {symbol} ({days}d)")
            return hit[1]

        token = catalog.find(symbol)
        if token is None:
            raise UnknownSymbol(symbol)
        if days > MAX_LOOKBACK_DAYS:
            raise PriceHistoryError(
                f"Price history should only be fetched for up to {MAX_LOOKBACK_DAYS} days."
            )

        url = f"{self.base_url}/coins/{token.cg_id}/market_chart"
        logger.info(f"[market] fetching {symbol} ({days}d)")
        try:
            r = await self._client().get(url, params={"vs_currency": "usd", "days": str(days)})
        except httpx.HTTPError as e:
            raise PriceFetchFailed(symbol, str(e)) from e
        if r.status_code != 200:
            raise PriceFetchFailed(symbol, f"HTTP {r.status_code} {r.reason_phrase}")

        try:
            history = parse_market_chart(symbol, days, r.json())
        except (ValueError, TypeError, AttributeError) as e:
            raise PriceFetchFailed(symbol, f"unreadable market chart: {e}") from e
        self._remember(key, history)
        return history

    def cached(self) -> Dict[str, PriceHistory]:
        return {sym: h for (sym, _), (ts, h) in self._cache.items() if self._fresh(ts)}

    def market_summary(self) -> Dict[str, Any]:
        summary = []
        for sym, h in self.cached().items():
            if not h.points:
                continue
            latest = h.points[-1]
            previous = h.points[-2] if len(h.points) > 1 else latest
            summary.append(
                {
                    "symbol": sym,
                    "currentPrice": latest.price,
                    "priceChange": latest.price - previous.price,
                }
            )
        summary.sort(key=lambda s: s["currentPrice"], reverse=True)
        return {
            "totalTokens": len(catalog.tokens),
            "cachedTokens": len(summary),
            "summary": summary,
        }

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
