"""
AutoTrader - Indicator Engine

Pure functions turning a price/volume window into technical indicators.
No storage or event dependency.

Every function is total: short windows, empty input, zero prices and NaN
samples degrade to neutral defaults (RSI 50, ATR/ADX 0, empty series)
instead of raising. Price history carries a single price per sample, so the
engine uses it as high, low and close alike.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from autotrader.models import PriceHistoryPoint


# ──────────────────────────────────────────────
# Result Data Models
# ──────────────────────────────────────────────

@dataclass
class MACDResult:
    macd_line: list[float] = field(default_factory=list)
    signal_line: list[float] = field(default_factory=list)
    histogram: list[float] = field(default_factory=list)


@dataclass
class BollingerBands:
    upper: list[float] = field(default_factory=list)
    middle: list[float] = field(default_factory=list)
    lower: list[float] = field(default_factory=list)


@dataclass
class StochasticResult:
    k: list[float] = field(default_factory=list)
    d: list[float] = field(default_factory=list)


@dataclass
class IchimokuLines:
    tenkan: list[float] = field(default_factory=list)
    kijun: list[float] = field(default_factory=list)
    senkou_a: list[float] = field(default_factory=list)
    senkou_b: list[float] = field(default_factory=list)
    chikou: list[float] = field(default_factory=list)


@dataclass
class IndicatorBundle:
    """Every indicator for one price window. Recomputed each cycle, never stored."""
    prices: list[float]
    volumes: list[float]
    sma: list[float]
    ema: list[float]
    rsi: float
    volatility: float
    macd: MACDResult
    bollinger: BollingerBands
    stochastic: StochasticResult
    momentum: list[float]
    price_velocity: list[float]
    atr: float
    adx: float
    obv: list[float]
    ichimoku: IchimokuLines

    @property
    def current_price(self) -> float:
        return self.prices[-1] if self.prices else 0.0

    @property
    def cloud_signal(self) -> float:
        return ichimoku_cloud_signal(self.ichimoku, self.current_price)


def last(series: Sequence[float], default: float = 0.0) -> float:
    """Last element of a series, or ``default`` when it is empty or not finite."""
    if len(series) == 0:
        return default
    value = float(series[-1])
    return value if np.isfinite(value) else default


def _clean(values: Sequence[float]) -> pd.Series:
    """Float series with non-finite samples forward-filled (leading gaps become 0)."""
    series = pd.Series(list(values), dtype=float)
    return series.replace([np.inf, -np.inf], np.nan).ffill().fillna(0.0)


def _safe_ratio(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    out = np.zeros_like(numerator, dtype=float)
    np.divide(numerator, denominator, out=out, where=denominator != 0)
    return out


# ──────────────────────────────────────────────
# Moving Averages
# ──────────────────────────────────────────────

def sma(values: Sequence[float], period: int) -> list[float]:
    """Simple moving average; one value per complete window."""
    if period <= 0 or len(values) < period:
        return []
    series = _clean(values)
    return series.rolling(period).mean().iloc[period - 1:].tolist()


def ema(values: Sequence[float], period: int) -> list[float]:
    """Exponential moving average seeded with the first value."""
    if period <= 0 or len(values) == 0:
        return []
    return _clean(values).ewm(span=period, adjust=False).mean().tolist()


# ──────────────────────────────────────────────
# Oscillators
# ──────────────────────────────────────────────

def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Relative Strength Index over the most recent ``period`` changes.

    Returns 50 when fewer than ``period + 1`` prices are available and 100
    when the window holds no losses.
    """
    if period <= 0 or len(prices) < period + 1:
        return 50.0
    changes = np.diff(_clean(prices).to_numpy()[-(period + 1):])
    avg_gain = changes[changes > 0].sum() / period
    avg_loss = -changes[changes < 0].sum() / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(min(max(100.0 - 100.0 / (1.0 + rs), 0.0), 100.0))


def volatility(prices: Sequence[float]) -> float:
    """Population standard deviation of simple returns, in percent."""
    if len(prices) < 2:
        return 0.0
    arr = _clean(prices).to_numpy()
    returns = _safe_ratio(np.diff(arr), arr[:-1])
    return float(np.std(returns) * 100)


def macd(
    prices: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    if len(prices) == 0:
        return MACDResult()
    fast = np.array(ema(prices, fast_period))
    slow = np.array(ema(prices, slow_period))
    macd_line = fast - slow
    signal_line = np.array(ema(macd_line.tolist(), signal_period))
    return MACDResult(
        macd_line=macd_line.tolist(),
        signal_line=signal_line.tolist(),
        histogram=(macd_line - signal_line).tolist(),
    )


def bollinger_bands(prices: Sequence[float], period: int = 20, num_std: float = 2.0) -> BollingerBands:
    """Bollinger Bands with population standard deviation."""
    if period <= 0 or len(prices) < period:
        return BollingerBands()
    series = _clean(prices)
    middle = series.rolling(period).mean().iloc[period - 1:]
    std = series.rolling(period).std(ddof=0).iloc[period - 1:]
    return BollingerBands(
        upper=(middle + num_std * std).tolist(),
        middle=middle.tolist(),
        lower=(middle - num_std * std).tolist(),
    )


def stochastic(prices: Sequence[float], period: int = 14) -> StochasticResult:
    """Stochastic %K over ``period`` samples and %D as its 3-period SMA.

    A flat window (high == low) yields %K = 50.
    """
    if period <= 0 or len(prices) < period:
        return StochasticResult()
    series = _clean(prices)
    highest = series.rolling(period).max().iloc[period - 1:].to_numpy()
    lowest = series.rolling(period).min().iloc[period - 1:].to_numpy()
    current = series.iloc[period - 1:].to_numpy()
    span = highest - lowest
    k = np.where(span == 0, 50.0, _safe_ratio(current - lowest, span) * 100)
    k_list = k.tolist()
    return StochasticResult(k=k_list, d=sma(k_list, 3))


def momentum(prices: Sequence[float], period: int = 10) -> list[float]:
    """Rate of change versus ``period`` samples ago, in percent."""
    if period <= 0 or len(prices) <= period:
        return []
    arr = _clean(prices).to_numpy()
    return (_safe_ratio(arr[period:] - arr[:-period], arr[:-period]) * 100).tolist()


def price_velocity(prices: Sequence[float]) -> list[float]:
    """First difference of the series."""
    if len(prices) < 2:
        return []
    return np.diff(_clean(prices).to_numpy()).tolist()


# ──────────────────────────────────────────────
# Trend Strength
# ──────────────────────────────────────────────

def true_ranges(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> np.ndarray:
    n = min(len(highs), len(lows), len(closes))
    if n < 2:
        return np.array([], dtype=float)
    h = _clean(highs[:n]).to_numpy()
    low = _clean(lows[:n]).to_numpy()
    prev_close = _clean(closes[:n]).to_numpy()[:-1]
    return np.maximum.reduce([
        h[1:] - low[1:],
        np.abs(h[1:] - prev_close),
        np.abs(low[1:] - prev_close),
    ])


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    """Average True Range over the most recent ``period`` ranges; 0 when too short."""
    if period <= 0 or min(len(highs), len(lows), len(closes)) < period + 1:
        return 0.0
    ranges = true_ranges(highs, lows, closes)
    return float(ranges[-period:].sum() / period)


def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    """Directional strength |+DI - -DI| / (+DI + -DI) * 100 over the latest window."""
    n = min(len(highs), len(lows), len(closes))
    if period <= 0 or n < period + 1:
        return 0.0
    h = _clean(highs[:n]).to_numpy()[-(period + 1):]
    low = _clean(lows[:n]).to_numpy()[-(period + 1):]
    c = _clean(closes[:n]).to_numpy()[-(period + 1):]

    high_move = np.diff(h)
    low_move = -np.diff(low)
    plus_dm = np.where((high_move > low_move) & (high_move > 0), high_move, 0.0).sum()
    minus_dm = np.where((low_move > high_move) & (low_move > 0), low_move, 0.0).sum()
    tr = true_ranges(h, low, c).sum()
    if tr == 0:
        return 0.0

    plus_di = plus_dm / tr * 100
    minus_di = minus_dm / tr * 100
    di_sum = plus_di + minus_di
    if di_sum == 0:
        return 0.0
    return float(abs(plus_di - minus_di) / di_sum * 100)


# ──────────────────────────────────────────────
# Volume
# ──────────────────────────────────────────────

def obv(prices: Sequence[float], volumes: Sequence[float]) -> list[float]:
    """On-Balance Volume seeded with the first sample's volume."""
    if len(prices) == 0:
        return []
    p = _clean(prices).to_numpy()
    v = _clean(_pad(volumes, len(p))).to_numpy()
    direction = np.sign(np.diff(p))
    return np.concatenate(([v[0]], v[0] + np.cumsum(direction * v[1:]))).tolist()


def _pad(values: Sequence[float], length: int) -> list[float]:
    values = list(values)[:length]
    return values + [0.0] * (length - len(values))


# ──────────────────────────────────────────────
# Ichimoku
# ──────────────────────────────────────────────

def ichimoku(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    tenkan_period: int = 9,
    kijun_period: int = 26,
    senkou_b_period: int = 52,
) -> IchimokuLines:
    """Ichimoku lines from rolling high/low midpoints; 0 until a window fills."""
    n = min(len(highs), len(lows), len(closes))
    if n == 0:
        return IchimokuLines()
    h = _clean(highs[:n])
    low = _clean(lows[:n])

    def midpoint(period: int) -> np.ndarray:
        return ((h.rolling(period).max() + low.rolling(period).min()) / 2).fillna(0.0).to_numpy()

    tenkan = midpoint(tenkan_period)
    kijun = midpoint(kijun_period)
    return IchimokuLines(
        tenkan=tenkan.tolist(),
        kijun=kijun.tolist(),
        senkou_a=((tenkan + kijun) / 2).tolist(),
        senkou_b=midpoint(senkou_b_period).tolist(),
        chikou=_clean(closes[:n]).tolist(),
    )


def ichimoku_cloud_signal(lines: IchimokuLines, price: float) -> float:
    """1 when price is above the cloud and Tenkan > Kijun, -1 for the mirror case, else 0."""
    if not lines.tenkan or price <= 0:
        return 0.0
    tenkan, kijun = last(lines.tenkan), last(lines.kijun)
    span_a, span_b = last(lines.senkou_a), last(lines.senkou_b)
    if price > max(span_a, span_b) and tenkan > kijun:
        return 1.0
    if price < min(span_a, span_b) and tenkan < kijun:
        return -1.0
    return 0.0


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class IndicatorEngine:
    """Builds the full indicator bundle for a price window.

    Usage:
        engine = IndicatorEngine()
        bundle = engine.compute(history)
    """

    def __init__(self, ma_period: int = 10, rsi_period: int = 14):
        self.ma_period = ma_period
        self.rsi_period = rsi_period

    def compute(self, history: Sequence[PriceHistoryPoint]) -> IndicatorBundle:
        prices = [point.price for point in history]
        volumes = [point.volume for point in history]
        return self.compute_series(prices, volumes)

    def compute_series(self, prices: Sequence[float], volumes: Optional[Sequence[float]] = None) -> IndicatorBundle:
        clean_prices = _clean(prices).tolist()
        clean_volumes = _clean(_pad(volumes or [], len(clean_prices))).tolist()
        highs = lows = clean_prices

        return IndicatorBundle(
            prices=clean_prices,
            volumes=clean_volumes,
            sma=sma(clean_prices, self.ma_period),
            ema=ema(clean_prices, self.ma_period),
            rsi=rsi(clean_prices, self.rsi_period),
            volatility=volatility(clean_prices),
            macd=macd(clean_prices),
            bollinger=bollinger_bands(clean_prices),
            stochastic=stochastic(clean_prices),
            momentum=momentum(clean_prices),
            price_velocity=price_velocity(clean_prices),
            atr=atr(highs, lows, clean_prices),
            adx=adx(highs, lows, clean_prices),
            obv=obv(clean_prices, clean_volumes),
            ichimoku=ichimoku(highs, lows, clean_prices),
        )
