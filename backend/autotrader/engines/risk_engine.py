"""
AutoTrader - Risk Gate

Portfolio risk metrics, Kelly-based position sizing, pre-trade risk
checks and periodic limit monitoring.

The gate never writes positions or trades itself. Stop-loss exits found
while monitoring are handed to a bound ``PositionCloser`` (the execution
engine), which owns every portfolio mutation.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import timedelta
from typing import Optional, Protocol, Sequence

import numpy as np
import structlog

from autotrader.config import Settings, get_risk_limits, get_settings
from autotrader.errors import TradeRejectedError
from autotrader.events import EventBus, RiskLimitExceeded, StopLossTriggered
from autotrader.models import (
    Portfolio,
    Position,
    PositionSizing,
    RiskLevel,
    RiskLimitType,
    RiskLimits,
    RiskMetrics,
    Token,
    Trade,
    TradeRiskAnalysis,
    TradeType,
    utcnow,
)
from autotrader.scheduler import PeriodicJob
from autotrader.storage import Storage

log = structlog.get_logger(__name__)

REWARD_RISK_RATIO = 2.0
TRADING_DAYS = 252
VAR_95_Z = 1.645
MIN_TRADES_FOR_SHARPE = 30
MIN_VOLATILITY_SAMPLES = 10
DEFAULT_TOKEN_VOLATILITY = 20.0


class PositionCloser(Protocol):
    """Whoever may sell a position on the risk gate's behalf."""

    async def close_position(
        self,
        portfolio_id: str,
        position_id: str,
        trigger: str,
        reason: str = "",
    ) -> Optional[Trade]: ...


def percent_move(entry: float, current: float) -> float:
    """Percent change from ``entry`` to ``current``, rounded to absorb float noise."""
    if entry <= 0:
        return 0.0
    return round((current - entry) / entry * 100, 9)


def _reject(reason: str, limit_type: Optional[str] = None, suggested_size: Optional[float] = None) -> TradeRiskAnalysis:
    return TradeRiskAnalysis(allowed=False, reason=reason, limit_type=limit_type, suggested_size=suggested_size)


# ──────────────────────────────────────────────
# Pure calculations
# ──────────────────────────────────────────────

def kelly_percentage(confidence: float, stop_loss_pct: float, kelly_multiplier: float = 1.0) -> float:
    """Kelly stake in percent of portfolio, assuming a 2:1 reward/risk target.

    f = (p * b - q) / b, scaled by the stop-loss risk per trade and clamped
    to [0, 15]. ``confidence`` is a win probability in [0, 1].
    """
    if not all(math.isfinite(x) for x in (confidence, stop_loss_pct, kelly_multiplier)) or stop_loss_pct <= 0:
        return 0.0
    p = min(max(confidence, 0.0), 1.0)
    q = 1 - p
    fraction = (p * REWARD_RISK_RATIO - q) / REWARD_RISK_RATIO
    pct = fraction / (stop_loss_pct / 100) * 100 * kelly_multiplier
    return max(0.0, min(pct, 15.0))


def volatility_adjustment(token_volatility: float) -> float:
    if token_volatility > 15:
        return 0.5
    if token_volatility > 10:
        return 0.7
    if token_volatility > 5:
        return 0.85
    return 1.0


def determine_risk_level(position_pct: float, token_volatility: float, confidence: float) -> RiskLevel:
    score = position_pct / 10 + token_volatility / 20 + (1 - confidence) * 2
    if score > 1.5:
        return RiskLevel.HIGH
    if score > 0.8:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def sizing_reasoning(kelly_pct: float, adjustment: float, confidence: float, token_volatility: float) -> str:
    reasoning = f"Kelly Criterion suggests {kelly_pct:.1f}% allocation. "
    if adjustment < 1:
        reasoning += f"Reduced by {(1 - adjustment) * 100:.0f}% due to high volatility ({token_volatility:.1f}%). "
    return reasoning + f"Pattern confidence: {confidence * 100:.0f}%."


def calculate_position_sizing(
    confidence: float,
    stop_loss_pct: float,
    *,
    portfolio_value: float,
    entry_price: float,
    open_exposure: float = 0.0,
    token_volatility: float = 0.0,
    limits: Optional[RiskLimits] = None,
) -> PositionSizing:
    """Recommended position for one entry.

    The Kelly stake is capped by the remaining capacity (keeping
    ``min_cash_pct`` in cash) and by ``max_position_size_pct``, then scaled
    down for volatile tokens.
    """
    limits = limits or get_risk_limits()
    kelly = kelly_percentage(confidence, stop_loss_pct, limits.kelly_multiplier)
    used_pct = open_exposure / portfolio_value * 100 if portfolio_value > 0 else 100.0
    capacity = min(max(0.0, 100 - limits.min_cash_pct - used_pct), limits.max_position_size_pct)
    adjustment = volatility_adjustment(token_volatility)
    final_pct = min(kelly, limits.max_position_size_pct, capacity) * adjustment

    size = max(0.0, final_pct / 100 * portfolio_value / entry_price) if entry_price > 0 else 0.0
    max_size = limits.max_position_size_pct / 100 * portfolio_value / entry_price if entry_price > 0 else 0.0
    return PositionSizing(
        kelly_pct=kelly,
        volatility_adjustment=adjustment,
        recommended_pct=final_pct,
        recommended_size=size,
        max_position_size=max_size,
        risk_level=determine_risk_level(final_pct, token_volatility, confidence),
        reasoning=sizing_reasoning(kelly, adjustment, confidence, token_volatility),
    )


def _daily_returns(trades: Sequence[Trade], starting_capital: float) -> list[float]:
    daily: dict = defaultdict(float)
    for trade in trades:
        if trade.type == TradeType.SELL and trade.realized_pnl is not None:
            day = (trade.closed_at or trade.created_at).date()
            daily[day] += trade.realized_pnl
    if starting_capital <= 0:
        return []
    return [daily[day] / starting_capital for day in sorted(daily)]


def max_drawdown(trades: Sequence[Trade], starting_capital: float) -> float:
    """Largest peak-to-trough decline of realized equity, in percent."""
    equity = peak = starting_capital
    worst = 0.0
    for trade in sorted(trades, key=lambda t: t.created_at):
        if trade.type != TradeType.SELL or trade.realized_pnl is None:
            continue
        equity += trade.realized_pnl
        peak = max(peak, equity)
        if peak > 0:
            worst = max(worst, (peak - equity) / peak * 100)
    return worst


def sharpe_ratio(trades: Sequence[Trade], starting_capital: float) -> float:
    """Annualized Sharpe of daily realized returns; 0 below 30 trades of any side."""
    if len(trades) < MIN_TRADES_FOR_SHARPE:
        return 0.0
    returns = np.asarray(_daily_returns(trades, starting_capital))
    if len(returns) < 2 or returns.std() == 0:
        return 0.0
    return float(returns.mean() / returns.std() * math.sqrt(TRADING_DAYS))


def return_volatility(trades: Sequence[Trade], starting_capital: float) -> float:
    returns = _daily_returns(trades, starting_capital)
    if len(returns) < 2:
        return 0.0
    return float(np.std(returns) * 100)


# ──────────────────────────────────────────────
# Risk Gate
# ──────────────────────────────────────────────

class RiskGate:
    """Pre-trade checks, sizing and periodic limit monitoring.

    Usage:
        gate = RiskGate(storage, bus)
        gate.bind_closer(execution_engine)
        analysis = await gate.analyze_trade_risk(portfolio, token_id, TradeType.BUY, amount, price)
    """

    def __init__(self, storage: Storage, bus: EventBus, settings: Optional[Settings] = None):
        self.storage = storage
        self.bus = bus
        self.settings = settings or get_settings()
        self._closer: Optional[PositionCloser] = None
        self._job: Optional[PeriodicJob] = None

    def bind_closer(self, closer: PositionCloser) -> None:
        self._closer = closer

    def limits_for(self, portfolio: Portfolio) -> RiskLimits:
        return get_risk_limits(portfolio.risk_profile or self.settings.risk_profile)

    async def _mark_price(self, position: Position) -> float:
        token = await self.storage.get_token(position.token_id)
        if token is not None and token.current_price > 0:
            return token.current_price
        return position.avg_buy_price

    async def _open_position_values(self, portfolio_id: str) -> dict[str, float]:
        values: dict[str, float] = {}
        for position in await self.storage.get_positions_by_portfolio(portfolio_id):
            if position.is_open:
                values[position.token_id] = position.amount * await self._mark_price(position)
        return values

    # ── Metrics ──

    async def analyze_portfolio_risk(self, portfolio: Portfolio) -> RiskMetrics:
        trades = await self.storage.get_trades_by_portfolio(portfolio.id)
        values = await self._open_position_values(portfolio.id)
        portfolio_value = portfolio.total_value
        vol = return_volatility(trades, portfolio.starting_capital)
        concentration = max(values.values()) / portfolio_value * 100 if values and portfolio_value > 0 else 0.0

        return RiskMetrics(
            portfolio_id=portfolio.id,
            portfolio_value=portfolio_value,
            total_pnl=portfolio.total_pnl,
            win_rate=portfolio.win_rate,
            max_drawdown=max_drawdown(trades, portfolio.starting_capital),
            sharpe_ratio=sharpe_ratio(trades, portfolio.starting_capital),
            volatility=vol,
            var_95=portfolio_value * vol / 100 * VAR_95_Z,
            concentration_risk=concentration,
            open_positions=len(values),
            daily_pnl=portfolio.daily_pnl,
        )

    # ── Sizing ──

    async def get_token_volatility(self, token_id: str) -> float:
        since = utcnow() - timedelta(hours=self.settings.volatility_lookback_hours)
        history = await self.storage.get_price_history(token_id, start=since)
        if len(history) < MIN_VOLATILITY_SAMPLES:
            return DEFAULT_TOKEN_VOLATILITY
        prices = np.asarray([p.price for p in history], dtype=float)
        previous = prices[:-1]
        returns = np.divide(np.diff(prices), previous, out=np.zeros(len(previous)), where=previous != 0)
        return float(np.std(returns) * 100)

    async def size_position(self, portfolio: Portfolio, token: Token, confidence: float) -> PositionSizing:
        """Size an entry into ``token``; ``confidence`` is a fraction in [0, 1]."""
        limits = self.limits_for(portfolio)
        values = await self._open_position_values(portfolio.id)
        return calculate_position_sizing(
            confidence,
            limits.stop_loss_pct,
            portfolio_value=portfolio.total_value,
            entry_price=token.current_price,
            open_exposure=sum(values.values()),
            token_volatility=await self.get_token_volatility(token.id),
            limits=limits,
        )

    # ── Pre-trade checks ──

    async def analyze_trade_risk(
        self,
        portfolio: Portfolio,
        token_id: str,
        side: TradeType,
        amount: float,
        price: float,
    ) -> TradeRiskAnalysis:
        """Check a candidate trade against the portfolio's limits.

        Sells only need a position large enough to cover them. Buys are
        checked for concentration, position size, open position count and
        daily loss, in that order; the first breach is reported.
        """
        limits = self.limits_for(portfolio)
        if not (math.isfinite(amount) and math.isfinite(price)) or amount <= 0 or price <= 0:
            return _reject("Trade amount and price must be positive")

        position = await self.storage.get_position_by_portfolio_and_token(portfolio.id, token_id)
        held = position.amount if position is not None else 0.0

        if side == TradeType.SELL:
            if held <= 0:
                return _reject("Cannot sell - no existing position found for this token", suggested_size=0.0)
            if amount > held:
                return _reject(f"Cannot sell {amount:g} tokens - only {held:g} available", suggested_size=held)
            return TradeRiskAnalysis(
                allowed=True,
                stop_loss_price=price * (1 + limits.stop_loss_pct / 100),
                risk_reward_ratio=REWARD_RISK_RATIO,
            )

        portfolio_value = portfolio.total_value
        if portfolio_value <= 0:
            return _reject("Portfolio has no value to trade against")

        trade_value = amount * price
        values = await self._open_position_values(portfolio.id)
        current_value = values.get(token_id, 0.0)
        prospective = dict(values)
        prospective[token_id] = current_value + trade_value

        concentration = max(prospective.values()) / portfolio_value * 100
        if concentration > limits.max_concentration_pct:
            room = max(0.0, limits.max_concentration_pct / 100 * portfolio_value - current_value)
            return _reject(
                f"Trade would raise concentration to {concentration:.1f}%, "
                f"above the {limits.max_concentration_pct:g}% concentration limit",
                limit_type="concentration",
                suggested_size=room / price,
            )

        position_pct = prospective[token_id] / portfolio_value * 100
        if position_pct > limits.max_position_size_pct:
            room = max(0.0, limits.max_position_size_pct / 100 * portfolio_value - current_value)
            return _reject(
                f"Position would be {position_pct:.1f}% of portfolio, "
                f"above the {limits.max_position_size_pct:g}% max position size",
                limit_type="position_size",
                suggested_size=room / price,
            )

        if token_id not in values and len(values) >= limits.max_open_positions:
            return _reject(
                f"Maximum open positions reached ({len(values)}/{limits.max_open_positions})",
                limit_type="open_positions",
            )

        potential_loss = trade_value * limits.stop_loss_pct / 100
        realized_loss = max(0.0, -portfolio.daily_pnl)
        daily_limit = portfolio_value * limits.max_daily_loss_pct / 100
        if potential_loss + realized_loss > daily_limit:
            return _reject(
                f"Potential loss of ${potential_loss + realized_loss:.2f} today would exceed "
                f"the {limits.max_daily_loss_pct:g}% daily loss limit (${daily_limit:.2f})",
                limit_type="daily_loss",
            )

        return TradeRiskAnalysis(
            allowed=True,
            stop_loss_price=price * (1 - limits.stop_loss_pct / 100),
            risk_reward_ratio=REWARD_RISK_RATIO,
        )

    async def require_trade_allowed(
        self,
        portfolio: Portfolio,
        token_id: str,
        side: TradeType,
        amount: float,
        price: float,
    ) -> TradeRiskAnalysis:
        """Like ``analyze_trade_risk`` but raises ``TradeRejectedError`` on rejection."""
        analysis = await self.analyze_trade_risk(portfolio, token_id, side, amount, price)
        if not analysis.allowed:
            raise TradeRejectedError(analysis)
        return analysis

    # ── Monitoring ──

    async def monitor_risk_limits(self, portfolio: Portfolio) -> RiskMetrics:
        """Publish breached portfolio limits and force-close positions past their stop."""
        limits = self.limits_for(portfolio)
        metrics = await self.analyze_portfolio_risk(portfolio)

        breaches = [
            (RiskLimitType.DRAWDOWN, metrics.max_drawdown, limits.max_drawdown_pct),
            (RiskLimitType.CONCENTRATION, metrics.concentration_risk, limits.max_concentration_pct),
        ]
        if portfolio.total_value > 0:
            daily_loss_pct = max(0.0, -portfolio.daily_pnl) / portfolio.total_value * 100
            breaches.append((RiskLimitType.DAILY_LOSS, daily_loss_pct, limits.max_daily_loss_pct))
        for limit_type, current, limit in breaches:
            if current > limit:
                log.warning("risk_gate.limit_exceeded", portfolio=portfolio.id, limit_type=limit_type.value, current=round(current, 2), limit=limit)
                await self.bus.publish(RiskLimitExceeded(
                    portfolio_id=portfolio.id, limit_type=limit_type, current=current, limit=limit,
                ))

        for position in await self.storage.get_positions_by_portfolio(portfolio.id):
            if not position.is_open:
                continue
            try:
                await self._check_stop_loss(portfolio, position, limits)
            except Exception as exc:
                log.error("risk_gate.stop_loss_check_failed", position=position.id, error=str(exc))
        return metrics

    async def _check_stop_loss(self, portfolio: Portfolio, position: Position, limits: RiskLimits) -> None:
        token = await self.storage.get_token(position.token_id)
        if token is None or token.current_price <= 0:
            return
        if percent_move(position.avg_buy_price, token.current_price) > -limits.stop_loss_pct:
            return

        stop_price = position.avg_buy_price * (1 - limits.stop_loss_pct / 100)
        loss = (token.current_price - position.avg_buy_price) * position.amount
        if self._closer is None:
            log.warning("risk_gate.no_position_closer", position=position.id, token=token.symbol)
            return

        trade = await self._closer.close_position(
            portfolio.id,
            position.id,
            trigger="stop_loss",
            reason=f"Stop loss: price {token.current_price:g} at or below {stop_price:g}",
        )
        if trade is None:
            return
        log.warning("risk_gate.stop_loss_triggered", portfolio=portfolio.id, token=token.symbol, loss=round(loss, 2))
        await self.bus.publish(StopLossTriggered(
            portfolio_id=portfolio.id,
            position_id=position.id,
            token_id=token.id,
            token_symbol=token.symbol,
            stop_loss_price=stop_price,
            current_price=token.current_price,
            loss=loss,
        ))

    async def run_cycle(self) -> int:
        portfolios = await self.storage.get_all_portfolios()
        for portfolio in portfolios:
            try:
                await self.monitor_risk_limits(portfolio)
            except Exception as exc:
                log.error("risk_gate.portfolio_failed", portfolio=portfolio.id, error=str(exc))
        return len(portfolios)

    def start(self) -> None:
        if self._job is None:
            self._job = PeriodicJob("risk_monitor", self.settings.risk_monitor_interval, self.run_cycle)
        self._job.start()

    async def stop(self) -> None:
        if self._job is not None:
            await self._job.stop()
