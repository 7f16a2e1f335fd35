"""
AutoTrader - Performance Tracker

Feeds realized trade outcomes back into detection:
  - per (pattern type, timeframe) confidence multipliers
  - one global minimum-confidence threshold
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import structlog

from autotrader.config import Settings, get_settings
from autotrader.engines.pattern_engine import MIN_CONFIDENCE_PARAM
from autotrader.errors import StorageError
from autotrader.events import EventBus, ThresholdUpdated
from autotrader.models import PatternPerformanceRecord, PatternStats, Trade, TradeType, utcnow
from autotrader.scheduler import PeriodicJob
from autotrader.storage import Storage

log = structlog.get_logger(__name__)

BOOST_FACTOR = 1.2
PENALTY_FACTOR = 0.9
MAX_MULTIPLIER = 2.0
MIN_MULTIPLIER = 0.3
THRESHOLD_STEP = 15.0


def closed_trades(trades: Sequence[Trade]) -> list[Trade]:
    """Sell trades that carry a realized P&L."""
    return [t for t in trades if t.type == TradeType.SELL and t.realized_pnl is not None]


def trade_return(trade: Trade) -> float:
    """Realized P&L as a fraction of the cost basis of the units sold."""
    cost_basis = trade.total_value - trade.realized_pnl
    if cost_basis <= 0:
        return 0.0
    return trade.realized_pnl / cost_basis


class PerformanceTracker:
    """Learns from closed trades.

    Usage:
        tracker = PerformanceTracker(storage, bus)
        await tracker.analyze_all_patterns()
        threshold = await tracker.get_current_min_confidence()
    """

    def __init__(self, storage: Storage, bus: EventBus, settings: Optional[Settings] = None):
        self.storage = storage
        self.bus = bus
        self.settings = settings or get_settings()
        self._job: Optional[PeriodicJob] = None

    @staticmethod
    def next_multiplier(previous: float, win_rate: float, average_return: float) -> float:
        """Compound the stored multiplier up or down; unchanged in the neutral band."""
        if win_rate > 0.6 and average_return > 0.02:
            return min(previous * BOOST_FACTOR, MAX_MULTIPLIER)
        if win_rate < 0.4 or average_return < -0.02:
            return max(previous * PENALTY_FACTOR, MIN_MULTIPLIER)
        return previous

    async def analyze_pattern_performance(self, pattern_type: str, timeframe: str) -> Optional[PatternStats]:
        trades = await self.storage.get_trades_by_pattern_type(pattern_type, timeframe)
        closed = closed_trades(trades)
        if len(closed) < self.settings.min_trades_for_learning:
            return None

        pnl = np.asarray([t.realized_pnl for t in closed], dtype=float)
        returns = np.asarray([trade_return(t) for t in closed], dtype=float)
        win_rate = float((pnl > 0).sum() / len(closed))
        average_return = float(returns.mean())

        record = await self.storage.get_pattern_performance(pattern_type, timeframe)
        previous = record.confidence_multiplier if record else 1.0
        return PatternStats(
            pattern_type=pattern_type,
            timeframe=timeframe,
            total_trades=len(trades),
            closed_trades=len(closed),
            successful_trades=int((pnl > 0).sum()),
            total_profit=float(pnl.sum()),
            win_rate=win_rate,
            average_return=average_return,
            confidence_multiplier=self.next_multiplier(previous, win_rate, average_return),
        )

    async def update_pattern_performance(self, stats: PatternStats) -> PatternPerformanceRecord:
        record = await self.storage.upsert_pattern_performance(PatternPerformanceRecord(
            pattern_type=stats.pattern_type,
            timeframe=stats.timeframe,
            total_trades=stats.closed_trades,
            successful_trades=stats.successful_trades,
            total_profit=stats.total_profit,
            win_rate=stats.win_rate,
            average_return=stats.average_return,
            confidence_multiplier=stats.confidence_multiplier,
            updated_at=utcnow(),
        ))
        touched = await self.storage.update_pattern_confidence_multiplier(
            stats.pattern_type, stats.timeframe, stats.confidence_multiplier,
        )
        log.info(
            "performance_tracker.pattern_updated",
            pattern_type=stats.pattern_type,
            timeframe=stats.timeframe,
            win_rate=round(stats.win_rate, 3),
            average_return=round(stats.average_return, 4),
            multiplier=round(stats.confidence_multiplier, 3),
            patterns_rescaled=touched,
        )
        return record

    async def analyze_all_patterns(self) -> int:
        """Update every (type, timeframe) group, then the global threshold. Returns groups updated."""
        groups = sorted({(p.pattern_type.value, p.timeframe) for p in await self.storage.get_all_patterns()})
        updated = 0
        for pattern_type, timeframe in groups:
            try:
                stats = await self.analyze_pattern_performance(pattern_type, timeframe)
                if stats is None:
                    continue
                await self.update_pattern_performance(stats)
                updated += 1
            except Exception as exc:
                log.error("performance_tracker.pattern_failed", pattern_type=pattern_type, timeframe=timeframe, error=str(exc))

        try:
            await self.adjust_global_threshold()
        except StorageError as exc:
            log.error("performance_tracker.threshold_failed", error=str(exc))
        return updated

    async def adjust_global_threshold(self) -> Optional[float]:
        """Raise the bar after losing streaks, lower it after winning ones.

        Uses the closed trades among the most recent ``recent_trades_window``
        trades. Returns None, leaving the stored value alone, when fewer than
        ``min_recent_closed_trades`` are available.
        """
        recent = closed_trades(await self.storage.get_recent_trades(self.settings.recent_trades_window))
        if len(recent) < self.settings.min_recent_closed_trades:
            return None

        win_rate = sum(1 for t in recent if t.realized_pnl > 0) / len(recent)
        baseline = self.settings.default_min_confidence
        if win_rate < 0.4:
            threshold = min(baseline + THRESHOLD_STEP, self.settings.min_confidence_ceiling)
        elif win_rate > 0.7:
            threshold = max(baseline - THRESHOLD_STEP, self.settings.min_confidence_floor)
        else:
            threshold = baseline

        await self.storage.update_ml_learning_param(MIN_CONFIDENCE_PARAM, threshold)
        log.info("performance_tracker.threshold_updated", min_confidence=threshold, recent_win_rate=round(win_rate, 3), closed_trades=len(recent))
        await self.bus.publish(ThresholdUpdated(
            min_confidence=threshold, recent_win_rate=win_rate, closed_trades=len(recent),
        ))
        return threshold

    async def get_current_min_confidence(self) -> float:
        value = await self.storage.get_ml_learning_param(MIN_CONFIDENCE_PARAM)
        return value if value is not None else self.settings.default_min_confidence

    async def get_pattern_stats(self, pattern_type: str, timeframe: str) -> Optional[PatternPerformanceRecord]:
        return await self.storage.get_pattern_performance(pattern_type, timeframe)

    async def summary(self) -> dict[str, dict[str, float]]:
        """Stored multipliers keyed by "type:timeframe"."""
        out: dict[str, dict[str, float]] = {}
        for record in await self.storage.get_all_pattern_performance():
            out[f"{record.pattern_type}:{record.timeframe}"] = {
                "win_rate": record.win_rate,
                "average_return": record.average_return,
                "confidence_multiplier": record.confidence_multiplier,
                "total_trades": float(record.total_trades),
            }
        return out

    def start(self) -> None:
        if self._job is None:
            self._job = PeriodicJob("performance_tracker", self.settings.performance_interval, self.analyze_all_patterns)
        self._job.start()

    async def stop(self) -> None:
        if self._job is not None:
            await self._job.stop()
