"""
AutoTrader - Market Features

Market sentiment summary, the grouped feature vector the heuristics score,
and the price-geometry helpers (swing points, key levels, Fibonacci levels,
volume nodes) shared by several pattern families.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from autotrader.engines.indicator_engine import IndicatorBundle, last, price_velocity
from autotrader.models import MarketRegime, VolatilityRegime, VolumeNode

FIB_RATIOS = (0.0, 0.236, 0.382, 0.5, 0.618, 0.786, 1.0)
KEY_FIB_RATIOS = (0.236, 0.382, 0.5, 0.618, 0.786)
HARMONIC_RATIOS = (0.382, 0.5, 0.618, 0.786, 0.886, 1.272, 1.618)


@dataclass
class MarketSentiment:
    price_acceleration: float
    volume_weighted_price: float
    market_regime: MarketRegime
    trend_strength: float
    volatility_regime: VolatilityRegime


@dataclass
class FeatureVector:
    """Feature groups consumed by the scoring heuristics.

    technical (10): rsi, volatility, macd, stoch %K, momentum, atr, adx, obv,
        tenkan, kijun
    sentiment (6): acceleration, vwap, trend strength, regime, volatility
        regime, cloud signal
    pattern (3): support/resistance density, breakout potential, volume
        profile dispersion
    momentum (3): divergence, volume-weighted momentum, price/volume
        correlation
    """
    technical: list[float] = field(default_factory=list)
    sentiment: list[float] = field(default_factory=list)
    pattern: list[float] = field(default_factory=list)
    momentum: list[float] = field(default_factory=list)

    @property
    def rsi(self) -> float:
        return self.technical[0]

    @property
    def volume_profile(self) -> float:
        return self.pattern[2]

    @property
    def divergence(self) -> float:
        return self.momentum[0]

    @property
    def volume_weighted_momentum(self) -> float:
        return self.momentum[1]

    @property
    def price_volume_correlation(self) -> float:
        return self.momentum[2]


# ──────────────────────────────────────────────
# Sentiment
# ──────────────────────────────────────────────

def trend_strength(prices: Sequence[float], period: int = 14) -> float:
    """Directional share of true range over the latest ``period`` samples, 0-100.

    With one price per sample the true range collapses to the absolute move,
    so any movement reads as 100 and a flat window as 0.
    """
    if len(prices) < period:
        return 0.0
    window = np.asarray(prices[-period:], dtype=float)
    directional = np.abs(np.diff(window)).sum()
    true_range = np.maximum(0.0, np.abs(np.diff(window))).sum()
    return float(directional / true_range * 100) if true_range > 0 else 0.0


def volatility_regime(volatility: float) -> VolatilityRegime:
    """Below 2% low, below 5% medium, otherwise high."""
    if volatility < 2:
        return VolatilityRegime.LOW
    if volatility < 5:
        return VolatilityRegime.MEDIUM
    return VolatilityRegime.HIGH


def compute_market_sentiment(bundle: IndicatorBundle) -> MarketSentiment:
    prices, volumes = bundle.prices, bundle.volumes
    acceleration = price_velocity(bundle.price_velocity)

    total_volume = float(np.sum(volumes)) if volumes else 0.0
    vwap = float(np.dot(prices, volumes) / total_volume) if total_volume > 0 else 0.0

    short_ma = bundle.sma[-1] if len(bundle.sma) > 5 else 0.0
    long_ma = bundle.sma[-20] if len(bundle.sma) > 20 else 0.0
    current = bundle.current_price
    if current > short_ma > long_ma:
        regime = MarketRegime.BULLISH
    elif current < short_ma < long_ma:
        regime = MarketRegime.BEARISH
    else:
        regime = MarketRegime.SIDEWAYS

    return MarketSentiment(
        price_acceleration=last(acceleration),
        volume_weighted_price=vwap,
        market_regime=regime,
        trend_strength=trend_strength(prices),
        volatility_regime=volatility_regime(bundle.volatility),
    )


# ──────────────────────────────────────────────
# Pattern and momentum features
# ──────────────────────────────────────────────

def support_resistance_density(prices: Sequence[float]) -> float:
    """Share of the last 20 prices within 2% of the current price."""
    if not prices or prices[-1] <= 0:
        return 0.0
    recent = np.asarray(prices[-20:], dtype=float)
    return float(np.mean(np.abs(recent - prices[-1]) / prices[-1] < 0.02))


def breakout_potential(prices: Sequence[float], volumes: Sequence[float]) -> float:
    if len(prices) < 10 or len(volumes) < 10 or prices[-1] <= 0:
        return 0.0
    recent_prices = np.asarray(prices[-10:], dtype=float)
    recent_volumes = np.asarray(volumes[-10:], dtype=float)
    compression = 1 - (recent_prices.max() - recent_prices.min()) / prices[-1]
    avg_volume = recent_volumes.mean()
    volume_increase = recent_volumes[-1] / avg_volume if avg_volume > 0 else 0.0
    return float(compression * 0.7 + min(volume_increase, 3) * 0.3)


def volume_profile_dispersion(volumes: Sequence[float]) -> float:
    """Coefficient of variation of the last 10 volumes."""
    if len(volumes) < 10:
        return 0.0
    recent = np.asarray(volumes[-10:], dtype=float)
    mean = recent.mean()
    return float(recent.std() / mean) if mean > 0 else 0.0


def momentum_divergence(prices: Sequence[float], rsi: float) -> float:
    """0.8 when a 5-sample move runs into an RSI extreme, else 0."""
    if len(prices) < 10 or prices[-5] == 0:
        return 0.0
    change = (prices[-1] - prices[-5]) / prices[-5]
    if change > 0 and rsi > 70:
        return 0.8
    if change < 0 and rsi < 30:
        return 0.8
    return 0.0


def volume_weighted_momentum(prices: Sequence[float], volumes: Sequence[float]) -> float:
    if len(prices) < 5 or len(volumes) < 5:
        return 0.0
    changes = np.diff(np.asarray(prices[-5:], dtype=float))
    weights = np.asarray(volumes[len(volumes) - 5:len(volumes) - 1], dtype=float)
    total = weights.sum()
    return float(np.dot(changes, weights) / total) if total > 0 else 0.0


def price_volume_correlation(prices: Sequence[float], volumes: Sequence[float]) -> float:
    if len(prices) < 10 or len(volumes) < 10:
        return 0.0
    n = min(len(prices), len(volumes), 20)
    p = np.asarray(prices[-n:], dtype=float) - np.mean(prices[-n:])
    v = np.asarray(volumes[-n:], dtype=float) - np.mean(volumes[-n:])
    denominator = np.sqrt((p * p).sum() * (v * v).sum())
    return float((p * v).sum() / denominator) if denominator > 0 else 0.0


def build_feature_vector(bundle: IndicatorBundle, sentiment: MarketSentiment) -> FeatureVector:
    prices, volumes = bundle.prices, bundle.volumes
    regime_value = {MarketRegime.BULLISH: 1.0, MarketRegime.BEARISH: -1.0}.get(sentiment.market_regime, 0.0)
    vol_value = {VolatilityRegime.HIGH: 1.0, VolatilityRegime.MEDIUM: 0.5}.get(sentiment.volatility_regime, 0.0)

    return FeatureVector(
        technical=[
            bundle.rsi,
            bundle.volatility,
            last(bundle.macd.macd_line),
            last(bundle.stochastic.k),
            last(bundle.momentum),
            bundle.atr,
            bundle.adx,
            last(bundle.obv),
            last(bundle.ichimoku.tenkan),
            last(bundle.ichimoku.kijun),
        ],
        sentiment=[
            sentiment.price_acceleration,
            sentiment.volume_weighted_price,
            sentiment.trend_strength,
            regime_value,
            vol_value,
            bundle.cloud_signal,
        ],
        pattern=[
            support_resistance_density(prices),
            breakout_potential(prices, volumes),
            volume_profile_dispersion(volumes),
        ],
        momentum=[
            momentum_divergence(prices, bundle.rsi),
            volume_weighted_momentum(prices, volumes),
            price_volume_correlation(prices, volumes),
        ],
    )


# ──────────────────────────────────────────────
# Price Geometry
# ──────────────────────────────────────────────

def local_maxima(prices: Sequence[float]) -> list[int]:
    """Indices strictly above both neighbours."""
    arr = np.asarray(prices, dtype=float)
    if len(arr) < 3:
        return []
    mask = (arr[1:-1] > arr[:-2]) & (arr[1:-1] > arr[2:])
    return (np.nonzero(mask)[0] + 1).tolist()


def local_minima(prices: Sequence[float]) -> list[int]:
    """Indices strictly below both neighbours."""
    arr = np.asarray(prices, dtype=float)
    if len(arr) < 3:
        return []
    mask = (arr[1:-1] < arr[:-2]) & (arr[1:-1] < arr[2:])
    return (np.nonzero(mask)[0] + 1).tolist()


def swing_points(prices: Sequence[float]) -> list[int]:
    return sorted(local_maxima(prices) + local_minima(prices))


def pattern_complexity(prices: Sequence[float]) -> float:
    if len(prices) < 10:
        return 0.0
    return min(len(swing_points(prices)) / len(prices), 1.0)


def key_levels(prices: Sequence[float]) -> list[float]:
    return sorted({float(prices[i]) for i in swing_points(prices)})


def level_strength(prices: Sequence[float]) -> float:
    """How often the series revisits its key levels (within 2%), scaled to 0-1."""
    levels = np.asarray(key_levels(prices), dtype=float)
    levels = levels[levels > 0]
    if len(levels) == 0:
        return 0.0
    arr = np.asarray(prices, dtype=float)
    tests = (np.abs(arr[None, :] - levels[:, None]) / levels[:, None] < 0.02).sum()
    return float(min(tests / (len(arr) * 0.1), 1.0))


def fibonacci_levels(prices: Sequence[float]) -> dict[str, float]:
    """Retracement levels over the window, keyed by ratio. Empty when flat or short."""
    if len(prices) < 10:
        return {}
    high, low = float(max(prices)), float(min(prices))
    span = high - low
    if span <= 0:
        return {}
    return {str(ratio): low + span * ratio for ratio in FIB_RATIOS}


def retracement_level(prices: Sequence[float]) -> float:
    """Ratio of the Fibonacci level closest to the current price."""
    levels = fibonacci_levels(prices)
    if not levels:
        return 0.0
    current = prices[-1]
    ratio, _ = min(levels.items(), key=lambda item: abs(item[1] - current))
    return float(ratio)


def extension_target(prices: Sequence[float]) -> float:
    if not prices:
        return 0.0
    high, low = float(max(prices)), float(min(prices))
    span = high - low
    return high + span * 0.618 if prices[-1] > (high + low) / 2 else low - span * 0.618


def volume_nodes(prices: Sequence[float], volumes: Sequence[float], buckets: int = 20) -> list[VolumeNode]:
    """Volume per price bucket, highest volume first."""
    if not prices:
        return []
    arr = np.asarray(prices, dtype=float)
    vol = np.zeros(len(arr))
    vol[:min(len(volumes), len(arr))] = np.asarray(volumes[:len(arr)], dtype=float)
    low, high = arr.min(), arr.max()
    if high <= low:
        return []
    edges = np.linspace(low, high, buckets + 1)
    nodes = [
        VolumeNode(
            price=float((lo + hi) / 2),
            volume=float(vol[(arr >= lo) & (arr <= hi)].sum()),
        )
        for lo, hi in zip(edges[:-1], edges[1:])
    ]
    return sorted(nodes, key=lambda node: node.volume, reverse=True)


def point_of_control(prices: Sequence[float], volumes: Sequence[float]) -> float:
    nodes = volume_nodes(prices, volumes)
    if nodes:
        return nodes[0].price
    return float(prices[-1]) if prices else 0.0


def volume_imbalances(nodes: Sequence[VolumeNode]) -> list[VolumeNode]:
    """Thin buckets: volume below half the average node volume."""
    if not nodes:
        return []
    average = sum(node.volume for node in nodes) / len(nodes)
    return [node for node in nodes if node.volume < average * 0.5]


def window_trend(prices: Sequence[float], window: int) -> float:
    """Fractional change across the last ``window`` samples; 0 when too short."""
    if len(prices) < window or prices[-window] == 0:
        return 0.0
    return (prices[-1] - prices[-window]) / prices[-window]


def sigmoid(x: float) -> float:
    return float(1.0 / (1.0 + np.exp(-np.clip(x, -500, 500))))
