"""
Technical Indicator Library.
Stateless series computations over candle windows. Every function
returns None (or an empty list) when the window is too short.
"""
import math
from typing import List, Optional, Sequence

from sniperdesk.services.analysis.models import BollingerValue, Candle, KdjValue, MacdValue


class Indicators:
    """Stateless library of technical indicator computations."""

    # ── Series helpers ──────────────────────────────────────────────────

    @staticmethod
    def ema_series(prices: Sequence[float], period: int) -> List[float]:
        """Full EMA series. First value is SMA seed."""
        if period <= 0 or len(prices) < period:
            return []
        k = 2.0 / (period + 1)
        emas = [sum(prices[:period]) / period]
        for price in prices[period:]:
            emas.append(price * k + emas[-1] * (1 - k))
        return emas

    @staticmethod
    def sma_series(prices: Sequence[float], period: int) -> List[float]:
        if period <= 0 or len(prices) < period:
            return []
        return [sum(prices[i - period + 1:i + 1]) / period
                for i in range(period - 1, len(prices))]

    @staticmethod
    def rsi_series(prices: Sequence[float], period: int = 14) -> List[float]:
        """Wilder-smoothed RSI series."""
        if len(prices) < period + 1:
            return []
        deltas = [prices[i] - prices[i - 1] for i in range(1, len(prices))]
        gains = [max(d, 0) for d in deltas]
        losses = [max(-d, 0) for d in deltas]

        avg_gain = sum(gains[:period]) / period
        avg_loss = sum(losses[:period]) / period

        rsis = [Indicators._rsi_value(avg_gain, avg_loss)]
        for i in range(period, len(deltas)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
            rsis.append(Indicators._rsi_value(avg_gain, avg_loss))
        return rsis

    @staticmethod
    def _rsi_value(avg_gain: float, avg_loss: float) -> float:
        if avg_loss == 0:
            return 50.0 if avg_gain == 0 else 100.0
        return 100 - 100 / (1 + avg_gain / avg_loss)

    @staticmethod
    def macd_series(prices: Sequence[float], fast: int = 12,
                    slow: int = 26) -> List[float]:
        """MACD line series, aligned to the slow EMA."""
        ema_fast = Indicators.ema_series(prices, fast)
        ema_slow = Indicators.ema_series(prices, slow)
        if not ema_slow:
            return []
        offset = slow - fast
        return [ema_fast[i + offset] - ema_slow[i] for i in range(len(ema_slow))]

    @staticmethod
    def true_ranges(candles: Sequence[Candle]) -> List[float]:
        trs = []
        for i in range(1, len(candles)):
            h, l = candles[i].high, candles[i].low
            pc = candles[i - 1].close
            trs.append(max(h - l, abs(h - pc), abs(l - pc)))
        return trs

    # ── Point-value indicators ──────────────────────────────────────────

    @staticmethod
    def rsi(prices: Sequence[float], period: int = 14) -> Optional[float]:
        series = Indicators.rsi_series(prices, period)
        return series[-1] if series else None

    @staticmethod
    def ema(prices: Sequence[float], period: int) -> Optional[float]:
        series = Indicators.ema_series(prices, period)
        return series[-1] if series else None

    @staticmethod
    def sma(prices: Sequence[float], period: int) -> Optional[float]:
        if period <= 0 or len(prices) < period:
            return None
        return sum(prices[-period:]) / period

    # ── MACD ────────────────────────────────────────────────────────────

    @staticmethod
    def macd(prices: Sequence[float], fast: int = 12, slow: int = 26,
             signal_period: int = 9) -> Optional[MacdValue]:
        """MACD line, signal and histogram.

        Needs only ``slow`` closes: with a short MACD history the signal
        EMA runs over whatever MACD values exist.
        """
        macd_vals = Indicators.macd_series(prices, fast, slow)
        if not macd_vals:
            return None
        signal_series = Indicators.ema_series(macd_vals, min(signal_period, len(macd_vals)))
        line = macd_vals[-1]
        signal = signal_series[-1]
        return MacdValue(line=line, signal=signal, histogram=line - signal)

    @staticmethod
    def macd_histogram_series(prices: Sequence[float], fast: int = 12, slow: int = 26,
                              signal_period: int = 9) -> List[float]:
        macd_vals = Indicators.macd_series(prices, fast, slow)
        if len(macd_vals) < signal_period:
            return []
        signal_series = Indicators.ema_series(macd_vals, signal_period)
        offset = len(macd_vals) - len(signal_series)
        return [macd_vals[i + offset] - s for i, s in enumerate(signal_series)]

    # ── Bollinger Bands ─────────────────────────────────────────────────

    @staticmethod
    def bollinger_bands(prices: Sequence[float], period: int = 20,
                        std_mult: float = 2.0) -> Optional[BollingerValue]:
        if len(prices) < period:
            return None
        recent = prices[-period:]
        sma = sum(recent) / period
        std = math.sqrt(sum((p - sma) ** 2 for p in recent) / period)
        upper = sma + std_mult * std
        lower = sma - std_mult * std
        width_pct = ((upper - lower) / sma * 100) if sma > 0 else 0.0

        current = prices[-1]
        pct_b = (current - lower) / (upper - lower) if upper > lower else None

        return BollingerValue(
            upper=upper,
            middle=sma,
            lower=lower,
            width_pct=width_pct,
            percent_b=pct_b,
        )

    # ── ATR ─────────────────────────────────────────────────────────────

    @staticmethod
    def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
        """Average True Range — Wilder smoothing."""
        if len(candles) < period + 1:
            return None
        trs = Indicators.true_ranges(candles)
        atr_val = sum(trs[:period]) / period
        for tr in trs[period:]:
            atr_val = (atr_val * (period - 1) + tr) / period
        return atr_val

    @staticmethod
    def atr_pct(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
        """ATR as percentage of current price."""
        a = Indicators.atr(candles, period)
        if a is None or not candles:
            return None
        current = candles[-1].close
        return (a / current * 100) if current > 0 else None

    # ── Stochastic KDJ ──────────────────────────────────────────────────

    @staticmethod
    def kdj(candles: Sequence[Candle], period: int = 9,
            signal_period: int = 3) -> Optional[KdjValue]:
        """Stochastic %K/%D with J = 3K - 2D."""
        if len(candles) < period + signal_period - 1:
            return None
        ks = []
        for i in range(period - 1, len(candles)):
            window = candles[i - period + 1:i + 1]
            hh = max(c.high for c in window)
            ll = min(c.low for c in window)
            ks.append((candles[i].close - ll) / (hh - ll) * 100 if hh > ll else 50.0)
        k = ks[-1]
        d = sum(ks[-signal_period:]) / signal_period
        return KdjValue(k=k, d=d, j=3 * k - 2 * d)

    # ── Regression ──────────────────────────────────────────────────────

    @staticmethod
    def linear_regression_slope(values: Sequence[float]) -> Optional[float]:
        """Least-squares slope per bar."""
        n = len(values)
        if n < 2:
            return None
        mean_x = (n - 1) / 2
        mean_y = sum(values) / n
        num = sum((i - mean_x) * (v - mean_y) for i, v in enumerate(values))
        den = sum((i - mean_x) ** 2 for i in range(n))
        return num / den if den else 0.0

    @staticmethod
    def mean(values: Sequence[float]) -> float:
        return sum(values) / len(values) if values else 0.0
