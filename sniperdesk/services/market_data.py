"""
Market data source - Binance USD-M futures klines and funding rates
"""
import requests
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime, timedelta
from threading import Lock

from sniperdesk.services.analysis.models import Candle
from sniperdesk.services.errors import TransientFetchError

logger = logging.getLogger(__name__)

VALID_INTERVALS = (
    "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w",
)


class RateLimiter:
    """Sliding-window rate limiter shared by every request of one source"""

    def __init__(self, max_calls: int = 20, period: float = 1.0):
        self.max_calls = max_calls
        self.period = period
        self._calls: List[float] = []
        self._lock = Lock()

    def wait_if_needed(self):
        """Block until we can make another API call"""
        with self._lock:
            now = time.time()
            self._calls = [t for t in self._calls if now - t < self.period]

            if len(self._calls) >= self.max_calls:
                sleep_time = self.period - (now - self._calls[0]) + 0.05
                if sleep_time > 0:
                    logger.info(f"Rate limit reached, waiting {sleep_time:.2f}s")
                    time.sleep(sleep_time)

            self._calls.append(time.time())


class CacheEntry:
    """Cache entry with TTL"""

    def __init__(self, data, ttl_seconds: int):
        self.data = data
        self.expires_at = datetime.now() + timedelta(seconds=ttl_seconds)

    @property
    def is_valid(self) -> bool:
        return datetime.now() < self.expires_at


class CandleSource(ABC):
    """Where poll cycles get their candles from."""

    @abstractmethod
    def get_candles(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        """Ascending candle window; raises TransientFetchError when unavailable."""

    def get_funding_rate(self, symbol: str) -> Optional[float]:
        """Current perpetual funding rate, or None when the source has none."""
        return None


class BinanceFuturesCandleSource(CandleSource):
    """Public (unsigned) Binance futures REST endpoints"""

    FUNDING_TTL = 300

    def __init__(self, base_url: str = "https://fapi.binance.com",
                 max_retries: int = 3, timeout: int = 12,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._timeout = timeout
        self._rate_limiter = RateLimiter(max_calls=20, period=1.0)
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "User-Agent": "SniperDesk/1.0"
        })
        self._cache: Dict[str, CacheEntry] = {}
        self._consecutive_failures = 0

    # ── Core API request with retry + rate‑limiting ───────────────────────

    def _api_request(self, endpoint: str, params: dict = None):
        url = f"{self.base_url}{endpoint}"
        last_error = "no attempt made"

        for attempt in range(self._max_retries):
            try:
                self._rate_limiter.wait_if_needed()
                response = self._session.get(url, params=params, timeout=self._timeout)

                if response.status_code in (418, 429):
                    retry_after = int(response.headers.get("Retry-After", 5))
                    last_error = f"rate limited ({response.status_code})"
                    logger.warning(f"Binance rate limited ({response.status_code}). Waiting {retry_after}s...")
                    time.sleep(retry_after)
                    continue

                response.raise_for_status()
                self._consecutive_failures = 0
                return response.json()

            except requests.exceptions.Timeout:
                last_error = "timeout"
                logger.warning(f"Binance timeout on {endpoint} (attempt {attempt + 1}/{self._max_retries})")
            except requests.exceptions.ConnectionError:
                last_error = "connection error"
                logger.warning(f"Binance connection error on {endpoint} (attempt {attempt + 1}/{self._max_retries})")
            except requests.exceptions.HTTPError as e:
                last_error = str(e)
                status = e.response.status_code if e.response is not None else None
                logger.warning(f"Binance HTTP error: {e} (attempt {attempt + 1}/{self._max_retries})")
                if status is not None and 400 <= status < 500:
                    break
            except ValueError as e:
                last_error = f"bad JSON: {e}"
                logger.warning(f"Binance returned unparseable body for {endpoint}: {e}")

            if attempt < self._max_retries - 1:
                wait = 2 ** attempt
                logger.info(f"Retrying in {wait}s...")
                time.sleep(wait)

        self._consecutive_failures += 1
        logger.error(f"Binance API failed for {endpoint}: {last_error} "
                     f"(consecutive failures: {self._consecutive_failures})")
        raise TransientFetchError(f"{endpoint}: {last_error}")

    # ── Candles ───────────────────────────────────────────────────────────

    def get_candles(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        if interval not in VALID_INTERVALS:
            raise ValueError(f"Unsupported interval: {interval}")
        limit = max(1, min(int(limit), 1500))

        rows = self._api_request("/fapi/v1/klines", params={
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": limit,
        })
        if not isinstance(rows, list):
            raise TransientFetchError(f"Unexpected klines payload for {symbol}")

        try:
            candles = [Candle.from_kline(row) for row in rows]
        except (TypeError, ValueError, IndexError) as e:
            raise TransientFetchError(f"Malformed kline for {symbol}: {e}") from e

        candles.sort(key=lambda c: c.open_time)
        return candles

    # ── Funding ───────────────────────────────────────────────────────────

    def get_funding_rate(self, symbol: str) -> Optional[float]:
        """Last funding rate; cached for FUNDING_TTL. Failures return None."""
        key = f"funding:{symbol.upper()}"
        entry = self._cache.get(key)
        if entry and entry.is_valid:
            return entry.data

        try:
            data = self._api_request("/fapi/v1/premiumIndex", params={"symbol": symbol.upper()})
            rate = float(data["lastFundingRate"])
        except TransientFetchError as e:
            logger.warning(f"Funding rate unavailable for {symbol}: {e}")
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed premiumIndex for {symbol}: {e}")
            return None

        self._cache[key] = CacheEntry(rate, self.FUNDING_TTL)
        return rate
