"""
AutoTrader - Pattern Engine

Scores a token's recent price/volume window against a battery of
heuristic pattern detectors, combines strong agreement into an ensemble
signal, and persists and publishes what survives the confidence filters.

Pure scoring lives in ``PatternEngine``; ``PatternDetector`` owns the
periodic cycle, storage access and event publishing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Sequence

import numpy as np
import structlog
from pydantic import BaseModel

from autotrader.config import Settings, get_settings
from autotrader.engines.indicator_engine import IndicatorBundle, IndicatorEngine, last, volatility
from autotrader.engines.market_features import (
    HARMONIC_RATIOS,
    KEY_FIB_RATIOS,
    FeatureVector,
    MarketSentiment,
    build_feature_vector,
    compute_market_sentiment,
    extension_target,
    fibonacci_levels,
    key_levels,
    level_strength,
    local_maxima,
    local_minima,
    pattern_complexity,
    point_of_control,
    retracement_level,
    sigmoid,
    swing_points,
    volume_imbalances,
    volume_nodes,
    window_trend,
)
from autotrader.errors import InsufficientDataError
from autotrader.events import EventBus, PatternDetected
from autotrader.models import (
    AccumulationMetadata,
    BreakoutMetadata,
    BullFlagMetadata,
    BullishMomentumMetadata,
    BuyPressureMetadata,
    ConsolidationBreakoutMetadata,
    EnsembleMetadata,
    FibonacciMetadata,
    HarmonicMetadata,
    InstitutionalAccumulationMetadata,
    LiquidityFlowMetadata,
    MacdCrossMetadata,
    MarketRegime,
    MeanReversionMetadata,
    MomentumMetadata,
    MultiTimeframeMetadata,
    NeuralMetadata,
    Pattern,
    PatternType,
    PriceHistoryPoint,
    ReversalMetadata,
    SentimentMetadata,
    StochasticReversalMetadata,
    SupportResistanceMetadata,
    Token,
    VolatilityExpansionMetadata,
    VolatilityRegime,
    VolumeBreakoutMetadata,
    VolumeProfileMetadata,
    VReversalMetadata,
    utcnow,
)
from autotrader.scheduler import PeriodicJob
from autotrader.storage import Storage

log = structlog.get_logger(__name__)

MIN_CONFIDENCE_PARAM = "min_confidence_threshold"

ENSEMBLE_WEIGHTS: dict[PatternType, float] = {
    PatternType.MULTI_TIMEFRAME: 1.5,
    PatternType.NEURAL_NETWORK: 1.4,
    PatternType.INSTITUTIONAL_ACCUMULATION: 1.4,
    PatternType.ML_BREAKOUT: 1.3,
    PatternType.STRONG_BUY_PRESSURE: 1.2,
    PatternType.VOLUME_PROFILE: 1.2,
    PatternType.FIBONACCI: 1.1,
}
ENSEMBLE_MIN_PATTERNS = 3
ENSEMBLE_MIN_CONFIDENCE = 80.0
MAX_HEURISTIC_CONFIDENCE = 95.0

NEURAL_WEIGHTS = (0.3, 0.25, 0.2, 0.15, 0.1)


@dataclass
class PatternCandidate:
    """A scored pattern before filtering and persistence."""
    pattern_type: PatternType
    confidence: float
    timeframe: str
    metadata: BaseModel


def _normalize(features: Sequence[float]) -> float:
    if not features:
        return 0.0
    return min(sum(abs(f) for f in features) / (len(features) * 100), 1.0)


def _scored(pattern_type: PatternType, score: float, threshold: float, timeframe: str, metadata: BaseModel) -> Optional[PatternCandidate]:
    if not np.isfinite(score) or score <= threshold:
        return None
    return PatternCandidate(pattern_type, min(score * 100, MAX_HEURISTIC_CONFIDENCE), timeframe, metadata)


class PatternEngine:
    """Deterministic pattern heuristics over an indicator bundle.

    Usage:
        engine = PatternEngine()
        candidates = engine.detect(bundle)
        ensemble = engine.ensemble(candidates, bundle)
    """

    def detect(self, bundle: IndicatorBundle) -> list[PatternCandidate]:
        """Run every heuristic family. Never raises on short or degenerate input."""
        if len(bundle.prices) < 10 or bundle.current_price <= 0:
            return []
        sentiment = compute_market_sentiment(bundle)
        features = build_feature_vector(bundle, sentiment)

        candidates: list[PatternCandidate] = []
        candidates.extend(self.feature_patterns(bundle, features))
        candidates.extend(self.enhanced_patterns(bundle, sentiment))
        candidates.extend(self.momentum_patterns(bundle, sentiment))
        candidates.extend(self.price_action_patterns(bundle.prices, bundle.volumes))
        candidates.extend(self.order_flow_patterns(bundle))
        return candidates

    # ── Feature-driven heuristics ──

    def feature_patterns(self, bundle: IndicatorBundle, features: FeatureVector) -> list[PatternCandidate]:
        prices = bundle.prices
        found = [
            self._breakout(features),
            self._reversal(features),
            self._advanced_momentum(bundle, features),
            self._neural(features, prices),
            self._support_resistance(prices, features),
            self._fibonacci(prices, features),
            self._volume_profile(bundle, features),
            self._market_sentiment(bundle, features),
            self._multi_timeframe(prices),
            self._volatility_expansion(bundle),
            self._mean_reversion(bundle),
            self._harmonic(prices, features),
            self._liquidity_flow(bundle, features),
        ]
        return [c for c in found if c is not None]

    def _breakout(self, f: FeatureVector) -> Optional[PatternCandidate]:
        technical, sentiment = _normalize(f.technical), _normalize(f.sentiment)
        pattern, momentum = _normalize(f.pattern), _normalize(f.momentum)
        score = technical * 0.3 + sentiment * 0.25 + pattern * 0.25 + momentum * 0.2
        return _scored(PatternType.ML_BREAKOUT, score, 0.70, "1h", BreakoutMetadata(
            technical_score=technical,
            sentiment_score=sentiment,
            pattern_score=pattern,
            momentum_score=momentum,
        ))

    def _reversal(self, f: FeatureVector) -> Optional[PatternCandidate]:
        extreme = 1.0 if f.rsi > 70 or f.rsi < 30 else 0.0
        score = abs(f.divergence) * 0.4 + extreme * 0.3 + f.volume_profile * 0.3
        return _scored(PatternType.ML_REVERSAL, score, 0.70, "2h", ReversalMetadata(
            divergence_strength=f.divergence,
            volume_pattern=f.volume_profile,
            trend_exhaustion=extreme,
            rsi=f.rsi,
        ))

    def _advanced_momentum(self, bundle: IndicatorBundle, f: FeatureVector) -> Optional[PatternCandidate]:
        macd_strength = min(abs(last(bundle.macd.histogram)) / 10, 1.0)
        volume_momentum = min(abs(f.volume_weighted_momentum) / 100, 1.0)
        alignment = abs(f.price_volume_correlation)
        score = macd_strength * 0.4 + volume_momentum * 0.3 + alignment * 0.3
        return _scored(PatternType.ADVANCED_MOMENTUM, score, 0.75, "30m", MomentumMetadata(
            momentum_strength=macd_strength,
            volume_confirmation=volume_momentum,
            technical_alignment=alignment,
        ))

    def _neural(self, f: FeatureVector, prices: Sequence[float]) -> Optional[PatternCandidate]:
        # Fixed-weight sigmoid composite over the leading technical inputs.
        inputs = [sigmoid(x / 100) for x in f.technical] + [sigmoid(x) for x in f.sentiment] + [sigmoid(x) for x in f.pattern]
        composite = sum(a * w for a, w in zip(inputs[:len(NEURAL_WEIGHTS)], NEURAL_WEIGHTS))
        complexity = pattern_complexity(prices)
        score = min(composite + complexity * 0.2, 1.0)
        return _scored(PatternType.NEURAL_NETWORK, score, 0.72, "45m", NeuralMetadata(
            layer_activations=inputs[:len(f.technical) + len(f.sentiment)],
            pattern_complexity=complexity,
            composite_score=composite,
        ))

    def _support_resistance(self, prices: Sequence[float], f: FeatureVector) -> Optional[PatternCandidate]:
        current = prices[-1]
        levels = key_levels(prices)
        nearby = [level for level in levels if abs(level - current) / current < 0.05]
        if not nearby:
            return None
        strength = level_strength(prices)
        score = strength * 0.5 + f.volume_profile * 0.3 + abs(f.volume_weighted_momentum) * 0.2
        return _scored(PatternType.SUPPORT_RESISTANCE, score, 0.68, "2h", SupportResistanceMetadata(
            key_levels=levels,
            level_strength=strength,
            bounce_probability=min(score, 1.0),
        ))

    def _fibonacci(self, prices: Sequence[float], f: FeatureVector) -> Optional[PatternCandidate]:
        levels = fibonacci_levels(prices)
        if not levels:
            return None
        current = prices[-1]
        near = sum(1 for ratio in KEY_FIB_RATIOS if abs(levels[str(ratio)] - current) / current < 0.03)
        score = min(near * 0.2 + f.divergence * 0.3, 1.0)
        return _scored(PatternType.FIBONACCI, score, 0.70, "1h", FibonacciMetadata(
            fib_levels=levels,
            retracement_level=retracement_level(prices),
            extension_target=extension_target(prices),
        ))

    def _volume_profile(self, bundle: IndicatorBundle, f: FeatureVector) -> Optional[PatternCandidate]:
        current = bundle.current_price
        nodes = volume_nodes(bundle.prices, bundle.volumes)
        poc = point_of_control(bundle.prices, bundle.volumes)
        node_score = sum(1 for node in nodes if abs(node.price - current) / current < 0.02) * 0.25
        poc_score = 0.3 if abs(poc - current) / current < 0.03 else 0.0
        score = min(node_score + poc_score + f.volume_profile * 0.45, 1.0)
        return _scored(PatternType.VOLUME_PROFILE, score, 0.69, "30m", VolumeProfileMetadata(
            volume_nodes=nodes[:5],
            poc_level=poc,
            imbalance_areas=volume_imbalances(nodes),
        ))

    def _market_sentiment(self, bundle: IndicatorBundle, f: FeatureVector) -> Optional[PatternCandidate]:
        sentiment_index = (f.rsi / 100 + f.divergence + f.volume_profile) / 3
        fear_greed = (min(bundle.volatility / 10, 1.0) + abs(f.volume_weighted_momentum / 100) + f.volume_profile) / 3
        acceleration = f.sentiment[0]
        extreme = 0.8 if acceleration > 0.8 or acceleration < 0.2 else 0.4
        crowd = (abs(f.volume_weighted_momentum) + extreme) / 2
        score = sentiment_index * 0.4 + fear_greed * 0.35 + crowd * 0.25
        return _scored(PatternType.MARKET_SENTIMENT, score, 0.71, "1h", SentimentMetadata(
            sentiment_index=sentiment_index,
            fear_greed_index=fear_greed,
            crowd_behavior=crowd,
        ))

    def _multi_timeframe(self, prices: Sequence[float]) -> Optional[PatternCandidate]:
        short, medium, long_ = window_trend(prices, 5), window_trend(prices, 10), window_trend(prices, 20)
        signs = [np.sign(short), np.sign(medium), np.sign(long_)]

        def agree(a: float, b: float) -> bool:
            return a != 0 and a == b

        alignment = (
            (0.33 if agree(signs[0], signs[1]) else 0.0)
            + (0.33 if agree(signs[1], signs[2]) else 0.0)
            + (0.34 if agree(signs[0], signs[2]) else 0.0)
        )
        score = min(alignment + (0.2 if alignment > 0.8 else 0.0), 1.0)
        return _scored(PatternType.MULTI_TIMEFRAME, score, 0.73, "4h", MultiTimeframeMetadata(
            short_term_trend=short,
            medium_term_trend=medium,
            long_term_trend=long_,
            alignment_score=alignment,
        ))

    def _volatility_expansion(self, bundle: IndicatorBundle) -> Optional[PatternCandidate]:
        vol = bundle.volatility
        breakout = min(vol / 9, 1.0) if vol > 4.5 else 0.0
        magnitude = min(vol / 10, 1.0)
        contraction = 0.8 if vol < 2 else 0.2
        squeeze = 0.0
        bands = bundle.bollinger
        if bands.upper and last(bands.middle) > 0:
            width_pct = (last(bands.upper) - last(bands.lower)) / last(bands.middle) * 100
            squeeze = 0.8 if width_pct < 3.5 else 0.2
        score = breakout * 0.3 + magnitude * 0.3 + contraction * 0.2 + squeeze * 0.2
        return _scored(PatternType.VOLATILITY_EXPANSION, score, 0.67, "15m", VolatilityExpansionMetadata(
            volatility_breakout=breakout,
            expansion_magnitude=magnitude,
            contraction_period=contraction,
            bollinger_squeeze=squeeze,
        ))

    def _mean_reversion(self, bundle: IndicatorBundle) -> Optional[PatternCandidate]:
        prices = bundle.prices
        mean = float(np.mean(prices))
        if mean <= 0:
            return None
        deviation = (prices[-1] - mean) / mean
        extreme_deviation = 0.4 if abs(deviation) > 2 else abs(deviation) * 0.2
        rsi_extreme = 0.3 if bundle.rsi > 70 or bundle.rsi < 30 else 0.0
        band_position = 0.0
        if bundle.bollinger.upper:
            outside = prices[-1] > last(bundle.bollinger.upper) or prices[-1] < last(bundle.bollinger.lower)
            band_position = 0.8 if outside else 0.2
        score = min(extreme_deviation + rsi_extreme + band_position, 1.0)
        return _scored(PatternType.MEAN_REVERSION, score, 0.70, "2h", MeanReversionMetadata(
            deviation_from_mean=deviation,
            reversion_probability=score,
            target_price=mean,
        ))

    def harmonic_ratio(self, prices: Sequence[float]) -> tuple[float, float, float]:
        """Ratio of the last two swing legs, the nearest harmonic ratio and the accuracy."""
        swings = swing_points(prices)
        if len(swings) < 3:
            return 0.0, 0.0, 0.0
        a, b, c = (prices[i] for i in swings[-3:])
        ab = abs(b - a)
        if ab == 0:
            return 0.0, 0.0, 0.0
        ratio = abs(c - b) / ab
        nearest = min(HARMONIC_RATIOS, key=lambda r: abs(ratio - r))
        accuracy = max(0.0, 1 - abs(ratio - nearest) / nearest)
        return ratio, nearest, accuracy

    def _harmonic(self, prices: Sequence[float], f: FeatureVector) -> Optional[PatternCandidate]:
        peaks, valleys = local_maxima(prices), local_minima(prices)
        if len(peaks) < 2 or len(valleys) < 2:
            return None
        harmonic_type = "bullish_abcd" if peaks[-1] > valleys[-1] else "bearish_abcd"
        ratio, nearest, accuracy = self.harmonic_ratio(prices)
        if accuracy < 0.5:
            return None
        score = min(accuracy + (0.3 if accuracy > 0.8 else 0.0) + f.volume_profile * 0.3, 1.0)
        span = max(prices) - min(prices)
        projection = prices[-1] + span * 0.618 if harmonic_type == "bullish_abcd" else prices[-1] - span * 0.618
        return _scored(PatternType.HARMONIC, score, 0.68, "3h", HarmonicMetadata(
            harmonic_type=harmonic_type,
            leg_ratio=ratio,
            nearest_ratio=nearest,
            ratio_accuracy=accuracy,
            price_projection=projection,
        ))

    def _liquidity_flow(self, bundle: IndicatorBundle, f: FeatureVector) -> Optional[PatternCandidate]:
        levels = min(f.volume_profile + bundle.volatility / 10, 1.0)
        flow = f.volume_weighted_momentum * f.volume_profile
        institutional = (0.6 if f.volume_profile > 0.7 else 0.2) + (0.4 if bundle.volatility < 3 else 0.2)
        score = levels * 0.4 + abs(flow) * 0.3 + institutional * 0.3
        return _scored(PatternType.LIQUIDITY_FLOW, score, 0.69, "1h", LiquidityFlowMetadata(
            liquidity_levels=levels,
            flow_direction=flow,
            institutional_activity=institutional,
        ))

    # ── Classic patterns boosted by regime ──

    def enhanced_patterns(self, bundle: IndicatorBundle, sentiment: MarketSentiment) -> list[PatternCandidate]:
        found: list[PatternCandidate] = []
        prices, volumes = bundle.prices, bundle.volumes

        flag = self.bull_flag_confidence(prices, volumes)
        if flag is not None and flag[0] > 50:
            confidence, move_pct, consolidation = flag
            if sentiment.market_regime == MarketRegime.BULLISH:
                confidence += 20
            if sentiment.volatility_regime == VolatilityRegime.MEDIUM:
                confidence += 15
            found.append(PatternCandidate(
                PatternType.BULL_FLAG,
                min(confidence, MAX_HEURISTIC_CONFIDENCE),
                "1h",
                BullFlagMetadata(
                    initial_move_pct=move_pct,
                    consolidation_strength=consolidation,
                    market_regime=sentiment.market_regime.value,
                    trend_strength=sentiment.trend_strength,
                ),
            ))

        spike = self.volume_spike(volumes)
        if spike is not None and spike[0] > 60:
            confidence, increase_pct, avg_recent, avg_baseline = spike
            momentum_now = last(bundle.momentum)
            if abs(momentum_now) > 5:
                confidence += 20
            found.append(PatternCandidate(
                PatternType.VOLUME_BREAKOUT,
                min(confidence, MAX_HEURISTIC_CONFIDENCE),
                "30m",
                VolumeBreakoutMetadata(
                    volume_increase_pct=increase_pct,
                    avg_recent=avg_recent,
                    avg_baseline=avg_baseline,
                    price_acceleration=sentiment.price_acceleration,
                    momentum_confirmation=momentum_now,
                ),
            ))
        return found

    @staticmethod
    def bull_flag_confidence(prices: Sequence[float], volumes: Sequence[float]) -> Optional[tuple[float, float, float]]:
        """(confidence, initial move %, consolidation strength %) or None when too short."""
        if len(prices) < 20:
            return None
        recent, earlier = list(prices[-10:]), list(prices[-20:-10])
        low = min(earlier)
        if low <= 0:
            return None
        initial_move = (max(earlier) - low) / low
        recent_vol, earlier_vol = volatility(recent), volatility(earlier)

        confidence = 0.0
        if initial_move > 0.2:
            confidence += 30
        if recent_vol < earlier_vol * 0.7:
            confidence += 40
        tail = list(volumes[-6:])
        if len(tail) == 6 and all(tail[i] >= tail[i - 1] for i in range(2, 6)):
            confidence += 17
        consolidation = (earlier_vol - recent_vol) / earlier_vol * 100 if earlier_vol > 0 else 0.0
        return min(confidence, MAX_HEURISTIC_CONFIDENCE), initial_move * 100, consolidation

    @staticmethod
    def volume_spike(volumes: Sequence[float]) -> Optional[tuple[float, float, float, float]]:
        """(confidence, increase %, recent avg, baseline avg) or None without a baseline."""
        if len(volumes) < 10:
            return None
        avg_recent = float(np.mean(volumes[-3:]))
        avg_baseline = float(np.mean(volumes[-10:-3]))
        if avg_baseline == 0:
            return None
        increase = (avg_recent - avg_baseline) / avg_baseline
        confidence = 0.0
        if increase > 2:
            confidence += 60
        if increase > 4:
            confidence += 32
        return min(confidence, MAX_HEURISTIC_CONFIDENCE), increase * 100, avg_recent, avg_baseline

    # ── Oscillator crosses ──

    def momentum_patterns(self, bundle: IndicatorBundle, sentiment: MarketSentiment) -> list[PatternCandidate]:
        found: list[PatternCandidate] = []
        macd_line, signal_line = bundle.macd.macd_line, bundle.macd.signal_line
        if len(macd_line) >= 2 and len(signal_line) >= 2:
            if macd_line[-2] <= signal_line[-2] and macd_line[-1] > signal_line[-1]:
                bullish = sentiment.market_regime == MarketRegime.BULLISH
                found.append(PatternCandidate(
                    PatternType.MACD_GOLDEN_CROSS,
                    75.0 + (25.0 if bullish else 0.0),
                    "1h",
                    MacdCrossMetadata(
                        macd_value=macd_line[-1],
                        signal_value=signal_line[-1],
                        histogram=last(bundle.macd.histogram),
                        trend_alignment=sentiment.market_regime.value,
                    ),
                ))

        k, d = bundle.stochastic.k, bundle.stochastic.d
        if k and d and k[-1] < 20 and d[-1] < 20 and k[-1] > d[-1]:
            found.append(PatternCandidate(
                PatternType.STOCHASTIC_OVERSOLD,
                80.0,
                "1h",
                StochasticReversalMetadata(stoch_k=k[-1], stoch_d=d[-1]),
            ))
        return found

    # ── Price action ──

    def price_action_patterns(self, prices: Sequence[float], volumes: Sequence[float]) -> list[PatternCandidate]:
        if len(prices) < 10 or len(volumes) < 10 or min(prices[-10:]) <= 0:
            return []
        found: list[PatternCandidate] = []
        curr, prev, prev2, prev3 = prices[-1], prices[-2], prices[-3], prices[-4]

        decline = (prev2 - prev3) / prev3
        recovery = (curr - prev) / prev
        if decline < -0.03 and recovery > 0.025:
            found.append(PatternCandidate(
                PatternType.V_SHAPED_REVERSAL, 78.0, "1h",
                VReversalMetadata(decline_pct=decline * 100, recovery_pct=recovery * 100),
            ))

        momentum = self.bullish_momentum(prices, volumes)
        if momentum is not None:
            found.append(momentum)

        stability = abs(curr - prices[-6]) / prices[-6]
        avg_recent_vol = float(np.mean(volumes[-3:]))
        avg_older_vol = float(np.mean(volumes[-6:-3]))
        if stability < 0.02 and avg_older_vol > 0 and avg_recent_vol > avg_older_vol * 1.3:
            found.append(PatternCandidate(
                PatternType.ACCUMULATION, 76.0, "2h",
                AccumulationMetadata(
                    price_stability_pct=stability * 100,
                    volume_increase_pct=(avg_recent_vol / avg_older_vol - 1) * 100,
                ),
            ))

        # Consolidation is measured on the five samples before the breakout tick.
        base = prices[-6:-1]
        base_avg = float(np.mean(base))
        base_range = (max(base) - min(base)) / base_avg
        breakout = (curr - base_avg) / base_avg
        if base_range < 0.015 and breakout > 0.02:
            found.append(PatternCandidate(
                PatternType.CONSOLIDATION_BREAKOUT, 80.0, "1h",
                ConsolidationBreakoutMetadata(
                    consolidation_range_pct=base_range * 100,
                    breakout_size_pct=breakout * 100,
                ),
            ))
        return found

    @staticmethod
    def bullish_momentum(prices: Sequence[float], volumes: Sequence[float]) -> Optional[PatternCandidate]:
        """Last three closes strictly rising with the final volume at least 1.2x the prior."""
        if len(prices) < 3 or len(volumes) < 2:
            return None
        if not (prices[-3] < prices[-2] < prices[-1]):
            return None
        if volumes[-1] <= 0 or volumes[-1] < volumes[-2] * 1.2:
            return None
        ups = 0
        for i in range(len(prices) - 1, 0, -1):
            if prices[i] > prices[i - 1]:
                ups += 1
            else:
                break
        increase = (volumes[-1] / volumes[-2] - 1) * 100 if volumes[-2] > 0 else 0.0
        return PatternCandidate(
            PatternType.STRONG_BULLISH_MOMENTUM, 82.0, "1h",
            BullishMomentumMetadata(consecutive_ups=ups, volume_increase_pct=increase),
        )

    # ── Order flow ──

    def order_flow_patterns(self, bundle: IndicatorBundle) -> list[PatternCandidate]:
        prices, volumes = bundle.prices, bundle.volumes
        if len(prices) < 10 or len(volumes) < 10:
            return []
        found: list[PatternCandidate] = []

        recent_prices = np.asarray(prices[-10:], dtype=float)
        recent_volumes = np.asarray(volumes[-10:], dtype=float)
        rising = np.diff(recent_prices) > 0
        buy_volume = float(recent_volumes[1:][rising].sum())
        sell_volume = float(recent_volumes[1:][~rising].sum())
        total = buy_volume + sell_volume
        pressure = buy_volume / total * 100 if total > 0 else 0.0
        if pressure > 65:
            found.append(PatternCandidate(
                PatternType.STRONG_BUY_PRESSURE, min(pressure, MAX_HEURISTIC_CONFIDENCE), "1h",
                BuyPressureMetadata(
                    buy_pressure=pressure,
                    buy_volume=buy_volume,
                    sell_volume=sell_volume,
                    volume_ratio=buy_volume / (sell_volume or 1),
                ),
            ))

        obv_tail = bundle.obv[-5:]
        obv_rising = (
            len(obv_tail) == 5
            and all(b >= a for a, b in zip(obv_tail, obv_tail[1:]))
            and obv_tail[-1] > obv_tail[0]
        )
        price_change = abs(recent_prices[-1] - recent_prices[0]) / recent_prices[0] if recent_prices[0] > 0 else 1.0
        if obv_rising and price_change < 0.02:
            found.append(PatternCandidate(
                PatternType.INSTITUTIONAL_ACCUMULATION, 78.0, "2h",
                InstitutionalAccumulationMetadata(
                    obv_change=obv_tail[-1] - obv_tail[0],
                    price_change_pct=price_change * 100,
                ),
            ))
        return found

    # ── Ensemble ──

    def ensemble(self, candidates: Sequence[PatternCandidate], bundle: IndicatorBundle) -> Optional[PatternCandidate]:
        """Weighted consensus of at least three candidates, capped at 95 and emitted from 80."""
        members = [c for c in candidates if c.pattern_type != PatternType.ENSEMBLE]
        if len(members) < ENSEMBLE_MIN_PATTERNS:
            return None
        weights = [ENSEMBLE_WEIGHTS.get(c.pattern_type, 1.0) for c in members]
        base = sum(c.confidence * w for c, w in zip(members, weights)) / sum(weights)
        trend_boost = 5.0 if bundle.adx > 25 else 0.0
        ichimoku_boost = 5.0 if bundle.cloud_signal == 1 else 0.0
        confidence = min(base + trend_boost + ichimoku_boost, MAX_HEURISTIC_CONFIDENCE)
        if confidence < ENSEMBLE_MIN_CONFIDENCE:
            return None
        return PatternCandidate(
            PatternType.ENSEMBLE, confidence, "1h",
            EnsembleMetadata(
                pattern_count=len(members),
                contributing_patterns=[c.pattern_type.value for c in members],
                base_score=base,
                trend_strength=bundle.adx,
                trend_boost=trend_boost,
                ichimoku_boost=ichimoku_boost,
            ),
        )


class PatternDetector:
    """Periodic pattern detection over every active token.

    Each cycle reads the lookback window per token, scores it, keeps
    candidates whose raw confidence clears the static floor and whose
    multiplier-adjusted confidence clears the dynamic threshold, then
    persists and publishes them. One failing token never aborts the cycle.
    """

    def __init__(
        self,
        storage: Storage,
        bus: EventBus,
        settings: Optional[Settings] = None,
        engine: Optional[PatternEngine] = None,
        indicators: Optional[IndicatorEngine] = None,
    ):
        self.storage = storage
        self.bus = bus
        self.settings = settings or get_settings()
        self.engine = engine or PatternEngine()
        self.indicators = indicators or IndicatorEngine()
        self._job: Optional[PeriodicJob] = None

    async def get_min_confidence(self) -> float:
        """Dynamic threshold from the learning params, clamped to its allowed band."""
        value = await self.storage.get_ml_learning_param(MIN_CONFIDENCE_PARAM)
        if value is None:
            value = self.settings.default_min_confidence
        return min(max(value, self.settings.min_confidence_floor), self.settings.min_confidence_ceiling)

    async def load_window(self, token: Token) -> list[PriceHistoryPoint]:
        since = utcnow() - timedelta(hours=self.settings.pattern_lookback_hours)
        history = await self.storage.get_price_history(token.id, start=since)
        history = history[-self.settings.pattern_max_points:]
        if len(history) < self.settings.min_price_points:
            raise InsufficientDataError(token.id, len(history), self.settings.min_price_points)
        return history

    async def analyze_token(self, token: Token) -> list[Pattern]:
        try:
            history = await self.load_window(token)
        except InsufficientDataError as exc:
            log.debug("pattern_detector.insufficient_data", token=token.symbol, available=exc.available)
            return []

        bundle = self.indicators.compute(history)
        threshold = await self.get_min_confidence()
        multipliers: dict[tuple[str, str], float] = {}

        async def adjusted(candidate: PatternCandidate) -> Optional[float]:
            if candidate.confidence <= self.settings.static_confidence_floor:
                return None
            key = (candidate.pattern_type.value, candidate.timeframe)
            if key not in multipliers:
                record = await self.storage.get_pattern_performance(*key)
                multipliers[key] = record.confidence_multiplier if record else 1.0
            value = min(candidate.confidence * multipliers[key], 100.0)
            return value if value >= threshold else None

        retained: list[tuple[PatternCandidate, float]] = []
        for candidate in self.engine.detect(bundle):
            value = await adjusted(candidate)
            if value is not None:
                retained.append((candidate, value))

        combined = self.engine.ensemble([c for c, _ in retained], bundle)
        if combined is not None:
            value = await adjusted(combined)
            if value is not None:
                retained.append((combined, value))

        saved: list[Pattern] = []
        for candidate, adjusted_confidence in retained:
            pattern = Pattern(
                token_id=token.id,
                pattern_type=candidate.pattern_type,
                confidence=candidate.confidence,
                timeframe=candidate.timeframe,
                metadata=candidate.metadata,
                adjusted_confidence=adjusted_confidence,
            )
            try:
                stored = await self.storage.create_pattern(pattern)
            except Exception as exc:
                log.error("pattern_detector.save_failed", token=token.symbol, pattern=candidate.pattern_type.value, error=str(exc))
                continue
            saved.append(stored)
            await self.bus.publish(PatternDetected(pattern=stored, token_symbol=token.symbol))
            log.info(
                "pattern_detector.pattern_detected",
                token=token.symbol,
                pattern=stored.pattern_type.value,
                confidence=round(stored.confidence, 1),
                adjusted=round(adjusted_confidence, 1),
            )
        return saved

    async def run_cycle(self) -> int:
        tokens = await self.storage.get_active_tokens()
        detected = 0
        for token in tokens:
            try:
                detected += len(await self.analyze_token(token))
            except Exception as exc:
                log.error("pattern_detector.token_failed", token=token.symbol, error=str(exc))
        log.info("pattern_detector.cycle_complete", tokens=len(tokens), patterns=detected)
        return detected

    def start(self) -> None:
        if self._job is None:
            self._job = PeriodicJob("pattern_detector", self.settings.pattern_interval, self.run_cycle)
        self._job.start()

    async def stop(self) -> None:
        if self._job is not None:
            await self._job.stop()
