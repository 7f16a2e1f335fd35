"""
AutoTrader - Pydantic Models

All persisted records and engine result schemas. Storage returns these,
engines consume and produce these, events carry these.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from autotrader.models.metadata import (
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
    MeanReversionMetadata,
    MomentumMetadata,
    MultiTimeframeMetadata,
    NeuralMetadata,
    PatternMetadata,
    ReversalMetadata,
    SentimentMetadata,
    StochasticReversalMetadata,
    SupportResistanceMetadata,
    VReversalMetadata,
    VolatilityExpansionMetadata,
    VolumeBreakoutMetadata,
    VolumeNode,
    VolumeProfileMetadata,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class PatternType(str, Enum):
    """Every pattern the detector can emit."""
    ML_BREAKOUT = "ml_breakout"
    ML_REVERSAL = "ml_reversal"
    ADVANCED_MOMENTUM = "advanced_momentum"
    NEURAL_NETWORK = "neural_network_pattern"
    SUPPORT_RESISTANCE = "ml_support_resistance"
    FIBONACCI = "fibonacci_ml_pattern"
    VOLUME_PROFILE = "volume_profile_ml"
    MARKET_SENTIMENT = "market_sentiment_ml"
    MULTI_TIMEFRAME = "multi_timeframe_ml"
    VOLATILITY_EXPANSION = "volatility_expansion_ml"
    MEAN_REVERSION = "mean_reversion_ml"
    HARMONIC = "harmonic_pattern_ml"
    LIQUIDITY_FLOW = "liquidity_flow_ml"
    BULL_FLAG = "enhanced_bull_flag"
    VOLUME_BREAKOUT = "enhanced_volume_breakout"
    MACD_GOLDEN_CROSS = "macd_golden_cross"
    STOCHASTIC_OVERSOLD = "stochastic_oversold_reversal"
    V_SHAPED_REVERSAL = "v_shaped_reversal"
    STRONG_BULLISH_MOMENTUM = "strong_bullish_momentum"
    ACCUMULATION = "accumulation_pattern"
    CONSOLIDATION_BREAKOUT = "consolidation_breakout"
    STRONG_BUY_PRESSURE = "strong_buy_pressure"
    INSTITUTIONAL_ACCUMULATION = "institutional_accumulation"
    ENSEMBLE = "ensemble"


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class MarketRegime(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    SIDEWAYS = "sideways"


class VolatilityRegime(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskLimitType(str, Enum):
    """Which portfolio limit a monitoring tick found breached."""
    DRAWDOWN = "drawdown"
    CONCENTRATION = "concentration"
    DAILY_LOSS = "daily_loss"


class AlertType(str, Enum):
    PRICE_SPIKE = "price_spike"
    VOLUME_SURGE = "volume_surge"
    NEW_TOKEN = "new_token"


class HealthRecommendation(str, Enum):
    TRADE_NORMALLY = "trade_normally"
    TRADE_CAUTIOUSLY = "trade_cautiously"
    MINIMIZE_TRADING = "minimize_trading"
    HALT_TRADING = "halt_trading"


# ──────────────────────────────────────────────
# Market Data Models
# ──────────────────────────────────────────────

class Token(BaseModel):
    """A tradable token as maintained by the ingestion collaborator."""
    id: str = Field(default_factory=new_id)
    symbol: str
    name: str = ""
    current_price: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    price_change_24h: float = 0.0
    is_active: bool = True


class PriceHistoryPoint(BaseModel):
    """Single price/volume sample."""
    token_id: str
    timestamp: datetime
    price: float
    volume: float = 0.0


class Pattern(BaseModel):
    """A detected pattern. ``confidence`` is the raw score and never changes."""
    id: str = Field(default_factory=new_id)
    token_id: str
    pattern_type: PatternType
    confidence: float = Field(ge=0, le=100)
    timeframe: str
    metadata: PatternMetadata
    detected_at: datetime = Field(default_factory=utcnow)
    adjusted_confidence: Optional[float] = None


# ──────────────────────────────────────────────
# Portfolio Models
# ──────────────────────────────────────────────

class Portfolio(BaseModel):
    """Simulated portfolio. ``win_rate`` is a percentage (0-100)."""
    id: str = Field(default_factory=new_id)
    name: str = "Paper Portfolio"
    cash_balance: float = 10_000.0
    total_value: float = 10_000.0
    starting_capital: float = 10_000.0
    daily_pnl: float = 0.0
    total_pnl: float = 0.0
    realized_pnl: float = 0.0
    win_rate: float = 0.0
    pnl_day: Optional[date] = None
    auto_trading_enabled: bool = True
    risk_profile: Optional[str] = None


class Position(BaseModel):
    """Holding of one token in one portfolio. Zero amount marks it closed."""
    id: str = Field(default_factory=new_id)
    portfolio_id: str
    token_id: str
    amount: float = Field(default=0.0, ge=0)
    avg_buy_price: float
    take_profit_stage: int = 0
    opened_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.amount > 0


class Trade(BaseModel):
    """An executed simulated trade. Exit fields are written at most once."""
    id: str = Field(default_factory=new_id)
    portfolio_id: str
    token_id: str
    pattern_id: Optional[str] = None
    type: TradeType
    amount: float
    price: float
    total_value: float
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    closed_at: Optional[datetime] = None
    trigger: str = "signal"
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None and self.realized_pnl is not None


class PatternPerformanceRecord(BaseModel):
    """Realized outcome statistics for one (pattern type, timeframe) pair."""
    pattern_type: str
    timeframe: str
    total_trades: int = 0
    successful_trades: int = 0
    total_profit: float = 0.0
    win_rate: float = 0.0
    average_return: float = 0.0
    confidence_multiplier: float = Field(default=1.0, ge=0.3, le=2.0)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────
# Risk Models
# ──────────────────────────────────────────────

class RiskLimits(BaseModel):
    """Portfolio risk profile. Percentages are expressed 0-100."""
    max_position_size_pct: float = 10.0
    max_daily_loss_pct: float = 5.0
    max_drawdown_pct: float = 20.0
    max_concentration_pct: float = 25.0
    stop_loss_pct: float = 8.0
    take_profit_pct: float = 15.0
    max_open_positions: int = 15
    min_confidence: float = 75.0
    min_cash_pct: float = 5.0
    min_pattern_win_rate: float = 0.0
    take_profit_stages: list[float] = Field(default_factory=list)
    kelly_multiplier: float = 1.0


class RiskMetrics(BaseModel):
    """Portfolio-level risk snapshot."""
    portfolio_id: str
    portfolio_value: float
    total_pnl: float
    win_rate: float
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    volatility: float = 0.0
    var_95: float = 0.0
    concentration_risk: float = 0.0
    open_positions: int = 0
    daily_pnl: float = 0.0


class PositionSizing(BaseModel):
    """Position sizing recommendation. Sizes are in token units."""
    kelly_pct: float
    volatility_adjustment: float = 1.0
    recommended_pct: float
    recommended_size: float = 0.0
    max_position_size: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    reasoning: str = ""


class TradeRiskAnalysis(BaseModel):
    """Risk gate verdict for one candidate trade."""
    allowed: bool
    reason: Optional[str] = None
    limit_type: Optional[str] = None
    suggested_size: Optional[float] = None
    stop_loss_price: Optional[float] = None
    risk_reward_ratio: Optional[float] = None


class TradingSignal(BaseModel):
    """A buy/sell intent derived from a pattern, an alert or a monitor exit."""
    token_id: str
    type: TradeType
    confidence: float = 0.0
    source: str
    price: float
    reason: str = ""
    pattern_id: Optional[str] = None


class PatternStats(BaseModel):
    """Performance aggregation result for one (pattern type, timeframe)."""
    pattern_type: str
    timeframe: str
    total_trades: int
    closed_trades: int
    successful_trades: int
    total_profit: float
    win_rate: float
    average_return: float
    confidence_multiplier: float


class MarketHealth(BaseModel):
    """Market-wide conditions across active tokens. ``trend`` uses SIDEWAYS for neutral."""
    health_score: float = 50.0
    volatility: float = 0.0
    trend: MarketRegime = MarketRegime.SIDEWAYS
    breadth: float = 50.0
    volume_health: float = 50.0
    correlation: float = 50.0
    recommendation: HealthRecommendation = HealthRecommendation.TRADE_CAUTIOUSLY
    factors: list[str] = Field(default_factory=list)
    tokens_analyzed: int = 0
    checked_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "AccumulationMetadata",
    "AlertType",
    "BreakoutMetadata",
    "BullFlagMetadata",
    "BullishMomentumMetadata",
    "BuyPressureMetadata",
    "ConsolidationBreakoutMetadata",
    "EnsembleMetadata",
    "FibonacciMetadata",
    "HarmonicMetadata",
    "HealthRecommendation",
    "InstitutionalAccumulationMetadata",
    "LiquidityFlowMetadata",
    "MacdCrossMetadata",
    "MarketHealth",
    "MarketRegime",
    "MeanReversionMetadata",
    "MomentumMetadata",
    "MultiTimeframeMetadata",
    "NeuralMetadata",
    "Pattern",
    "PatternMetadata",
    "PatternPerformanceRecord",
    "PatternStats",
    "PatternType",
    "Portfolio",
    "Position",
    "PositionSizing",
    "PriceHistoryPoint",
    "ReversalMetadata",
    "RiskLevel",
    "RiskLimitType",
    "RiskLimits",
    "RiskMetrics",
    "SentimentMetadata",
    "StochasticReversalMetadata",
    "SupportResistanceMetadata",
    "Token",
    "Trade",
    "TradeRiskAnalysis",
    "TradeType",
    "TradingSignal",
    "VReversalMetadata",
    "VolatilityExpansionMetadata",
    "VolatilityRegime",
    "VolumeBreakoutMetadata",
    "VolumeNode",
    "VolumeProfileMetadata",
    "new_id",
    "utcnow",
]
