"""
Shared fixtures: synthetic candle windows and hand-built indicator bundles.
"""
import random

import pytest

from sniperdesk.services.analysis.engine import compute_trade_levels
from sniperdesk.services.analysis.models import (
    Breakout,
    Candle,
    EmaSet,
    IndicatorBundle,
    MacdValue,
    BollingerValue,
    KdjValue,
    TrendInfo,
)

START_MS = 1704067200000  # 2024-01-01 00:00 UTC
STEP_MS = 15 * 60 * 1000


def make_candles(closes, volumes=None, wick=0.002):
    """Candles opening at the previous close, wicks ``wick`` beyond the body."""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        o = prev
        candles.append(Candle(
            open_time=START_MS + i * STEP_MS,
            open=o,
            high=max(o, close) * (1 + wick),
            low=min(o, close) * (1 - wick),
            close=close,
            volume=volumes[i] if volumes else 100.0,
            close_time=START_MS + (i + 1) * STEP_MS - 1,
        ))
        prev = close
    return candles


def uptrend_closes(n=250, start=100.0, step=0.004):
    return [start * (1 + step) ** i for i in range(n)]


def downtrend_closes(n=250, start=100.0, step=0.004):
    return [start * (1 - step) ** i for i in range(n)]


def random_walk_closes(seed, n=200, start=100.0, vol=0.01):
    rng = random.Random(seed)
    closes = [start]
    for _ in range(n - 1):
        closes.append(max(1.0, closes[-1] * (1 + rng.gauss(0, vol))))
    return closes


@pytest.fixture
def uptrend_candles():
    return make_candles(uptrend_closes())


@pytest.fixture
def downtrend_candles():
    return make_candles(downtrend_closes())


@pytest.fixture
def flat_candles():
    return make_candles([100.0] * 60, wick=0.005)


@pytest.fixture
def random_candles():
    return make_candles(random_walk_closes(seed=7))


def bullish_bundle(**overrides):
    """Strong uptrend breaking resistance on a volume spike."""
    price = 105.0
    bundle = IndicatorBundle(
        current_price=price,
        rsi=60.0,
        macd=MacdValue(line=2.0, signal=1.0, histogram=1.0),
        bollinger=BollingerValue(upper=110.0, middle=104.0, lower=96.0, width_pct=13.0, percent_b=0.7),
        kdj=KdjValue(k=60.0, d=60.0, j=60.0),
        atr=2.0,
        atr_pct=2.0 / price * 100,
        ema=EmaSet(ema20=103.0, ema50=100.0, ema200=95.0),
        trend=TrendInfo(direction="STRONG_UP", score=5, slope_pct=0.4),
        volume_ratio=2.5,
        volume_spike=True,
        support=90.0,
        resistance=120.0,
        breakout=Breakout(direction="up", level=104.0),
        momentum_score=60,
    )
    bundle.trade_levels = compute_trade_levels(price, bundle.atr, bundle.support, bundle.resistance)
    for key, value in overrides.items():
        setattr(bundle, key, value)
    return bundle


def bearish_bundle(**overrides):
    """Mirror of ``bullish_bundle``: strong downtrend breaking support."""
    price = 105.0
    bundle = IndicatorBundle(
        current_price=price,
        rsi=40.0,
        macd=MacdValue(line=-2.0, signal=-1.0, histogram=-1.0),
        bollinger=BollingerValue(upper=114.0, middle=106.0, lower=100.0, width_pct=13.0, percent_b=0.3),
        kdj=KdjValue(k=40.0, d=40.0, j=40.0),
        atr=2.0,
        atr_pct=2.0 / price * 100,
        ema=EmaSet(ema20=107.0, ema50=110.0, ema200=115.0),
        trend=TrendInfo(direction="STRONG_DOWN", score=-5, slope_pct=-0.4),
        volume_ratio=2.5,
        volume_spike=True,
        support=90.0,
        resistance=120.0,
        breakout=Breakout(direction="down", level=106.0),
        momentum_score=60,
    )
    bundle.trade_levels = compute_trade_levels(price, bundle.atr, bundle.support, bundle.resistance)
    for key, value in overrides.items():
        setattr(bundle, key, value)
    return bundle


@pytest.fixture
def bull_bundle():
    return bullish_bundle()


@pytest.fixture
def bear_bundle():
    return bearish_bundle()


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start=1704110400.0):  # 2024-01-01 12:00 UTC
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
