"""
Tests for the Binance futures candle source with a mocked HTTP session.
"""
from unittest.mock import MagicMock

import pytest
import requests

from sniperdesk.services.errors import TransientFetchError
from sniperdesk.services.market_data import BinanceFuturesCandleSource, CacheEntry, RateLimiter


def _response(payload=None, status=200, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error", response=resp)
    return resp


def _kline(open_time, close):
    return [open_time, "100.0", "101.0", "99.0", str(close), "12.5", open_time + 899999, "0", 10]


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr("sniperdesk.services.market_data.time.sleep", sleeps.append)
    return sleeps


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def source(session):
    return BinanceFuturesCandleSource(session=session)


def test_klines_parsed_and_sorted(source, session):
    session.get.return_value = _response([_kline(2000, 101.0), _kline(1000, 100.5)])

    candles = source.get_candles("btcusdt", "15m", limit=5000)

    assert [c.open_time for c in candles] == [1000, 2000]
    assert candles[0].close == 100.5
    assert candles[0].volume == 12.5
    assert candles[1].close_time == 2000 + 899999

    url = session.get.call_args[0][0]
    params = session.get.call_args[1]["params"]
    assert url == "https://fapi.binance.com/fapi/v1/klines"
    assert params == {"symbol": "BTCUSDT", "interval": "15m", "limit": 1500}


def test_invalid_interval(source, session):
    with pytest.raises(ValueError):
        source.get_candles("BTCUSDT", "7m")
    session.get.assert_not_called()


def test_client_error_not_retried(source, session):
    session.get.return_value = _response({"code": -1121}, status=400)
    with pytest.raises(TransientFetchError):
        source.get_candles("NOPEUSDT", "1h")
    assert session.get.call_count == 1


def test_timeouts_retried_then_fail(source, session, no_sleep):
    session.get.side_effect = requests.exceptions.Timeout()
    with pytest.raises(TransientFetchError):
        source.get_candles("BTCUSDT", "1h")
    assert session.get.call_count == 3
    assert no_sleep == [1, 2]


def test_rate_limited_then_ok(source, session, no_sleep):
    session.get.side_effect = [
        _response(status=429, headers={"Retry-After": "2"}),
        _response([_kline(1000, 100.0)]),
    ]
    assert len(source.get_candles("BTCUSDT", "1h")) == 1
    assert 2 in no_sleep


def test_unexpected_payload(source, session):
    session.get.return_value = _response({"not": "a list"})
    with pytest.raises(TransientFetchError):
        source.get_candles("BTCUSDT", "1h")


def test_malformed_kline(source, session):
    session.get.return_value = _response([[1000, "abc"]])
    with pytest.raises(TransientFetchError):
        source.get_candles("BTCUSDT", "1h")


def test_funding_rate_cached(source, session):
    session.get.return_value = _response({"symbol": "BTCUSDT", "lastFundingRate": "0.00010000"})

    assert source.get_funding_rate("btcusdt") == pytest.approx(0.0001)
    assert source.get_funding_rate("BTCUSDT") == pytest.approx(0.0001)
    assert session.get.call_count == 1


def test_funding_rate_failure_returns_none(source, session):
    session.get.return_value = _response({}, status=404)
    assert source.get_funding_rate("BTCUSDT") is None
    session.get.return_value = _response({"symbol": "BTCUSDT"})
    assert source.get_funding_rate("BTCUSDT") is None


def test_cache_entry_expiry():
    assert CacheEntry("x", ttl_seconds=60).is_valid
    assert not CacheEntry("x", ttl_seconds=-1).is_valid


def test_rate_limiter_waits_when_full(no_sleep):
    limiter = RateLimiter(max_calls=2, period=60.0)
    limiter.wait_if_needed()
    limiter.wait_if_needed()
    assert no_sleep == []
    limiter.wait_if_needed()
    assert len(no_sleep) == 1
