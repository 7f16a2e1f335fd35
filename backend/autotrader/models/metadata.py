"""
AutoTrader - Pattern Metadata

One explanatory payload per pattern type, discriminated on ``kind`` so a
consumer that matches on the kind knows exactly which fields exist.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class VolumeNode(BaseModel):
    """A price bucket and the volume traded inside it."""
    price: float
    volume: float


# ──────────────────────────────────────────────
# Feature-driven heuristics
# ──────────────────────────────────────────────

class BreakoutMetadata(BaseModel):
    kind: Literal["ml_breakout"] = "ml_breakout"
    technical_score: float
    sentiment_score: float
    pattern_score: float
    momentum_score: float


class ReversalMetadata(BaseModel):
    kind: Literal["ml_reversal"] = "ml_reversal"
    divergence_strength: float
    volume_pattern: float
    trend_exhaustion: float
    rsi: float


class MomentumMetadata(BaseModel):
    kind: Literal["advanced_momentum"] = "advanced_momentum"
    momentum_strength: float
    volume_confirmation: float
    technical_alignment: float


class NeuralMetadata(BaseModel):
    """Inputs of the sigmoid-weighted composite. The weights are fixed, not learned."""
    kind: Literal["neural_network_pattern"] = "neural_network_pattern"
    layer_activations: list[float] = Field(default_factory=list)
    pattern_complexity: float
    composite_score: float


class SupportResistanceMetadata(BaseModel):
    kind: Literal["ml_support_resistance"] = "ml_support_resistance"
    key_levels: list[float] = Field(default_factory=list)
    level_strength: float
    bounce_probability: float


class FibonacciMetadata(BaseModel):
    kind: Literal["fibonacci_ml_pattern"] = "fibonacci_ml_pattern"
    fib_levels: dict[str, float] = Field(default_factory=dict)
    retracement_level: float
    extension_target: float


class VolumeProfileMetadata(BaseModel):
    kind: Literal["volume_profile_ml"] = "volume_profile_ml"
    volume_nodes: list[VolumeNode] = Field(default_factory=list)
    poc_level: float
    imbalance_areas: list[VolumeNode] = Field(default_factory=list)


class SentimentMetadata(BaseModel):
    kind: Literal["market_sentiment_ml"] = "market_sentiment_ml"
    sentiment_index: float
    fear_greed_index: float
    crowd_behavior: float


class MultiTimeframeMetadata(BaseModel):
    kind: Literal["multi_timeframe_ml"] = "multi_timeframe_ml"
    short_term_trend: float
    medium_term_trend: float
    long_term_trend: float
    alignment_score: float


class VolatilityExpansionMetadata(BaseModel):
    kind: Literal["volatility_expansion_ml"] = "volatility_expansion_ml"
    volatility_breakout: float
    expansion_magnitude: float
    contraction_period: float
    bollinger_squeeze: float


class MeanReversionMetadata(BaseModel):
    kind: Literal["mean_reversion_ml"] = "mean_reversion_ml"
    deviation_from_mean: float
    reversion_probability: float
    target_price: float


class HarmonicMetadata(BaseModel):
    kind: Literal["harmonic_pattern_ml"] = "harmonic_pattern_ml"
    harmonic_type: str
    leg_ratio: float
    nearest_ratio: float
    ratio_accuracy: float
    price_projection: float


class LiquidityFlowMetadata(BaseModel):
    kind: Literal["liquidity_flow_ml"] = "liquidity_flow_ml"
    liquidity_levels: float
    flow_direction: float
    institutional_activity: float


# ──────────────────────────────────────────────
# Classic and momentum patterns
# ──────────────────────────────────────────────

class BullFlagMetadata(BaseModel):
    kind: Literal["enhanced_bull_flag"] = "enhanced_bull_flag"
    initial_move_pct: float
    consolidation_strength: float
    market_regime: str
    trend_strength: float


class VolumeBreakoutMetadata(BaseModel):
    kind: Literal["enhanced_volume_breakout"] = "enhanced_volume_breakout"
    volume_increase_pct: float
    avg_recent: float
    avg_baseline: float
    price_acceleration: float
    momentum_confirmation: float


class MacdCrossMetadata(BaseModel):
    kind: Literal["macd_golden_cross"] = "macd_golden_cross"
    macd_value: float
    signal_value: float
    histogram: float
    trend_alignment: str


class StochasticReversalMetadata(BaseModel):
    kind: Literal["stochastic_oversold_reversal"] = "stochastic_oversold_reversal"
    stoch_k: float
    stoch_d: float
    oversold_level: float = 20.0


# ──────────────────────────────────────────────
# Price action and order flow
# ──────────────────────────────────────────────

class VReversalMetadata(BaseModel):
    kind: Literal["v_shaped_reversal"] = "v_shaped_reversal"
    decline_pct: float
    recovery_pct: float


class BullishMomentumMetadata(BaseModel):
    kind: Literal["strong_bullish_momentum"] = "strong_bullish_momentum"
    consecutive_ups: int
    volume_increase_pct: float


class AccumulationMetadata(BaseModel):
    kind: Literal["accumulation_pattern"] = "accumulation_pattern"
    price_stability_pct: float
    volume_increase_pct: float


class ConsolidationBreakoutMetadata(BaseModel):
    kind: Literal["consolidation_breakout"] = "consolidation_breakout"
    consolidation_range_pct: float
    breakout_size_pct: float


class BuyPressureMetadata(BaseModel):
    kind: Literal["strong_buy_pressure"] = "strong_buy_pressure"
    buy_pressure: float
    buy_volume: float
    sell_volume: float
    volume_ratio: float


class InstitutionalAccumulationMetadata(BaseModel):
    kind: Literal["institutional_accumulation"] = "institutional_accumulation"
    obv_change: float
    price_change_pct: float


class EnsembleMetadata(BaseModel):
    kind: Literal["ensemble"] = "ensemble"
    pattern_count: int
    contributing_patterns: list[str] = Field(default_factory=list)
    base_score: float
    trend_strength: float
    trend_boost: float
    ichimoku_boost: float
    signal_quality: Optional[str] = "high"


PatternMetadata = Annotated[
    Union[
        BreakoutMetadata,
        ReversalMetadata,
        MomentumMetadata,
        NeuralMetadata,
        SupportResistanceMetadata,
        FibonacciMetadata,
        VolumeProfileMetadata,
        SentimentMetadata,
        MultiTimeframeMetadata,
        VolatilityExpansionMetadata,
        MeanReversionMetadata,
        HarmonicMetadata,
        LiquidityFlowMetadata,
        BullFlagMetadata,
        VolumeBreakoutMetadata,
        MacdCrossMetadata,
        StochasticReversalMetadata,
        VReversalMetadata,
        BullishMomentumMetadata,
        AccumulationMetadata,
        ConsolidationBreakoutMetadata,
        BuyPressureMetadata,
        InstitutionalAccumulationMetadata,
        EnsembleMetadata,
    ],
    Field(discriminator="kind"),
]
