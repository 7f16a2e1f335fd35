"""
AutoTrader - Market Health Engine

Market-wide health score across active tokens: breadth, average 24h move,
volume health and co-movement, combined into a 0-100 score and a trading
recommendation. Results are cached so the pre-trade path stays cheap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Sequence

import numpy as np
import structlog

from autotrader.config import Settings, get_settings
from autotrader.models import HealthRecommendation, MarketHealth, MarketRegime, PriceHistoryPoint, utcnow
from autotrader.storage import Storage

log = structlog.get_logger(__name__)

# Minimum confidence a buy needs under each recommendation; None blocks buying.
CONFIDENCE_FLOOR: dict[HealthRecommendation, Optional[float]] = {
    HealthRecommendation.TRADE_NORMALLY: 0.0,
    HealthRecommendation.TRADE_CAUTIOUSLY: 0.0,
    HealthRecommendation.MINIMIZE_TRADING: 90.0,
    HealthRecommendation.HALT_TRADING: None,
}


@dataclass
class TokenMove:
    symbol: str
    price_change: float
    volume_change: float


def token_move(symbol: str, history: Sequence[PriceHistoryPoint]) -> Optional[TokenMove]:
    """24h price change and recent-vs-older volume change, or None when unusable."""
    if len(history) < 2:
        return None
    current = history[-1].price
    day_ago = history[max(0, len(history) - 24)].price
    if current <= 0 or day_ago <= 0:
        return None
    price_change = (current - day_ago) / day_ago * 100
    if not np.isfinite(price_change):
        return None

    volumes = [p.volume for p in history]
    recent = sum(volumes[-6:]) / 6
    older = sum(volumes[-24:-6]) / 18
    volume_change = (recent - older) / older * 100 if older > 0 else 0.0
    return TokenMove(symbol, price_change, volume_change)


# ── Components ──

def market_volatility(moves: Sequence[TokenMove]) -> float:
    changes = np.abs([m.price_change for m in moves])
    return float(changes.mean()) if len(changes) else 0.0


def market_breadth(moves: Sequence[TokenMove]) -> float:
    """Percentage of tokens advancing."""
    if not moves:
        return 50.0
    return sum(1 for m in moves if m.price_change > 0) / len(moves) * 100


def market_trend(breadth: float) -> MarketRegime:
    if breadth >= 60:
        return MarketRegime.BULLISH
    if breadth <= 40:
        return MarketRegime.BEARISH
    return MarketRegime.SIDEWAYS


def volume_health(moves: Sequence[TokenMove]) -> float:
    changes = np.asarray([m.volume_change for m in moves], dtype=float)
    if not len(changes):
        return 50.0
    rising = float(np.mean(changes > 0))
    stability = max(0.0, 100 - float(np.mean(np.abs(changes))))
    return rising * 50 + stability * 0.5


def co_movement(moves: Sequence[TokenMove]) -> float:
    """100 when every token moved alike, falling as 24h changes diverge."""
    changes = np.asarray([m.price_change for m in moves], dtype=float)
    if not len(changes):
        return 50.0
    return max(0.0, 100 - float(changes.std()) * 2)


def health_score(volatility: float, trend: MarketRegime, breadth: float, volume: float, correlation: float) -> float:
    if volatility <= 8:
        score = 25.0
    elif volatility <= 15:
        score = 25 - (volatility - 8) / 7 * 15
    else:
        score = 10 - min(10.0, (volatility - 15) * 0.5)

    score += {MarketRegime.BULLISH: 25, MarketRegime.SIDEWAYS: 15, MarketRegime.BEARISH: 5}[trend]
    score += breadth / 100 * 25
    score += volume / 100 * 15

    if 40 <= correlation <= 70:
        score += 10
    elif 20 <= correlation <= 80:
        score += 5
    return max(0.0, min(100.0, score))


def recommend(score: float, volatility: float, breadth: float, volume: float, trend: MarketRegime) -> tuple[HealthRecommendation, list[str]]:
    """Recommendation from the score and the number of critical factors."""
    factors: list[str] = []
    if volatility > 20:
        factors.append("extreme volatility")
    if breadth < 20 and trend == MarketRegime.BEARISH:
        factors.append("severe bearish breadth")
    if volume < 30:
        factors.append("unhealthy volume")

    if score >= 70 and not factors:
        return HealthRecommendation.TRADE_NORMALLY, ["favorable conditions"]
    if score >= 50 and len(factors) <= 1:
        return HealthRecommendation.TRADE_CAUTIOUSLY, factors or ["moderate conditions"]
    if score >= 30 and len(factors) <= 2:
        return HealthRecommendation.MINIMIZE_TRADING, factors or ["poor conditions"]
    return HealthRecommendation.HALT_TRADING, factors or ["critical conditions"]


def assess(moves: Sequence[TokenMove]) -> MarketHealth:
    volatility = market_volatility(moves)
    breadth = market_breadth(moves)
    trend = market_trend(breadth)
    volume = volume_health(moves)
    correlation = co_movement(moves)
    score = health_score(volatility, trend, breadth, volume, correlation)
    recommendation, factors = recommend(score, volatility, breadth, volume, trend)
    return MarketHealth(
        health_score=score,
        volatility=volatility,
        trend=trend,
        breadth=breadth,
        volume_health=volume,
        correlation=correlation,
        recommendation=recommendation,
        factors=factors,
        tokens_analyzed=len(moves),
    )


# ──────────────────────────────────────────────
# Analyzer
# ──────────────────────────────────────────────

class MarketHealthAnalyzer:
    """Cached market health over every active token.

    Usage:
        analyzer = MarketHealthAnalyzer(storage)
        health = await analyzer.analyze()
        if analyzer.allows_buy(confidence, health): ...
    """

    def __init__(self, storage: Storage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self._last: Optional[MarketHealth] = None

    @property
    def last(self) -> Optional[MarketHealth]:
        return self._last

    def invalidate(self) -> None:
        self._last = None

    def _fresh(self) -> bool:
        if self._last is None:
            return False
        age = (utcnow() - self._last.checked_at).total_seconds()
        return age < self.settings.market_health_cache_seconds

    async def analyze(self) -> MarketHealth:
        if self._fresh():
            return self._last

        since = utcnow() - timedelta(hours=self.settings.market_health_lookback_hours)
        moves: list[TokenMove] = []
        for token in await self.storage.get_active_tokens():
            history = await self.storage.get_price_history(token.id, start=since)
            move = token_move(token.symbol, history)
            if move is not None:
                moves.append(move)

        if len(moves) < self.settings.market_health_min_tokens:
            log.info("market_health.insufficient_data", tokens=len(moves))
            health = MarketHealth(factors=["insufficient data"], tokens_analyzed=len(moves))
        else:
            health = assess(moves)
            log.info(
                "market_health.assessed",
                score=round(health.health_score, 1),
                recommendation=health.recommendation.value,
                trend=health.trend.value,
                breadth=round(health.breadth, 1),
            )
        self._last = health
        return health

    @staticmethod
    def allows_buy(confidence: float, health: MarketHealth) -> bool:
        floor = CONFIDENCE_FLOOR[health.recommendation]
        return floor is not None and confidence >= floor
