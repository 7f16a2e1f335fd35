"""
AutoTrader - Execution Engine

Turns detected patterns and scanner alerts into simulated trades and
manages exits for open positions.

The only component that writes positions, trades and portfolio balances.
Read-then-write sequences on a position run under a per-(portfolio, token)
lock, and balance updates under a per-portfolio lock, so overlapping
signals, monitor ticks and risk-driven closes cannot interleave.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog

from autotrader.config import Settings, get_settings
from autotrader.engines.market_health import MarketHealthAnalyzer
from autotrader.engines.pattern_engine import MIN_CONFIDENCE_PARAM
from autotrader.engines.risk_engine import RiskGate, percent_move
from autotrader.events import AlertTriggered, EventBus, PatternDetected, StatsUpdate, Subscription, TradeExecuted
from autotrader.models import (
    AlertType,
    MarketHealth,
    Pattern,
    PatternType,
    Portfolio,
    Position,
    RiskLimits,
    Token,
    Trade,
    TradeType,
    TradingSignal,
    utcnow,
)
from autotrader.scheduler import PeriodicJob
from autotrader.storage import Storage

log = structlog.get_logger(__name__)

BULLISH_PATTERNS = frozenset({
    PatternType.BULL_FLAG.value,
    PatternType.MACD_GOLDEN_CROSS.value,
    PatternType.STOCHASTIC_OVERSOLD.value,
    PatternType.VOLUME_BREAKOUT.value,
    PatternType.STRONG_BULLISH_MOMENTUM.value,
    PatternType.CONSOLIDATION_BREAKOUT.value,
    PatternType.V_SHAPED_REVERSAL.value,
    PatternType.ACCUMULATION.value,
    PatternType.STRONG_BUY_PRESSURE.value,
    PatternType.INSTITUTIONAL_ACCUMULATION.value,
    PatternType.ENSEMBLE.value,
})
BEARISH_PATTERNS = frozenset({
    PatternType.ML_REVERSAL.value,
    "head_and_shoulders",
    "double_top",
    "bearish_flag",
    "volume_collapse",
})

# Share of the current holding sold at each take-profit stage; the last stage sells the rest.
TAKE_PROFIT_FRACTIONS = (0.3, 0.4)
DUST = 1e-12


def classify_pattern(pattern_type: str) -> Optional[TradeType]:
    value = getattr(pattern_type, "value", pattern_type)
    if value in BULLISH_PATTERNS:
        return TradeType.BUY
    if value in BEARISH_PATTERNS:
        return TradeType.SELL
    return None


def classify_alert(alert: AlertTriggered) -> Optional[TradeType]:
    if alert.alert_type == AlertType.VOLUME_SURGE:
        return TradeType.BUY
    if alert.alert_type == AlertType.PRICE_SPIKE and alert.change_pct > 0:
        return TradeType.BUY
    return None


def exit_decision(
    position: Position,
    current_price: float,
    limits: RiskLimits,
    sell_only: bool = False,
    cash_exit_pct: float = 2.0,
) -> Optional[tuple[str, float, int]]:
    """(trigger, fraction to sell, resulting take-profit stage) or None to hold.

    In sell-only mode any position more than ``cash_exit_pct`` in profit that
    no take-profit rule sells is exited in full to raise cash.
    """
    move = percent_move(position.avg_buy_price, current_price)
    if move <= -limits.stop_loss_pct:
        return "stop_loss", 1.0, position.take_profit_stage

    decision = _take_profit(position, move, limits)
    if decision is None and sell_only and move > cash_exit_pct:
        return "cash_generation", 1.0, 0
    return decision


def _take_profit(position: Position, move: float, limits: RiskLimits) -> Optional[tuple[str, float, int]]:
    stages = sorted(limits.take_profit_stages)
    if not stages:
        if move >= limits.take_profit_pct:
            return "take_profit", 1.0, 0
        return None

    for index in range(len(stages) - 1, -1, -1):
        if move < stages[index]:
            continue
        stage = index + 1
        if position.take_profit_stage >= stage:
            return None
        if stage == len(stages):
            fraction = 1.0
        else:
            fraction = TAKE_PROFIT_FRACTIONS[min(index, len(TAKE_PROFIT_FRACTIONS) - 1)]
        return f"take_profit_stage_{stage}", fraction, stage
    return None


def accumulate(position: Position, amount: float, price: float) -> dict:
    """Position changes for a buy of ``amount`` at ``price``.

    Adding to an open position keeps its stage and opening time and moves the
    average price to the amount-weighted mean. A flat position starts over.
    """
    if position.is_open:
        total = position.amount + amount
        return {
            "amount": total,
            "avg_buy_price": (position.amount * position.avg_buy_price + amount * price) / total,
        }
    return {
        "amount": amount,
        "avg_buy_price": price,
        "take_profit_stage": 0,
        "opened_at": utcnow(),
    }


class ExecutionEngine:
    """Simulated order execution against paper portfolios.

    Usage:
        engine = ExecutionEngine(storage, bus, risk_gate)
        risk_gate.bind_closer(engine)
        await engine.start()
    """

    def __init__(
        self,
        storage: Storage,
        bus: EventBus,
        risk_gate: RiskGate,
        settings: Optional[Settings] = None,
        market_health: Optional[MarketHealthAnalyzer] = None,
    ):
        self.storage = storage
        self.bus = bus
        self.risk_gate = risk_gate
        self.settings = settings or get_settings()
        self.market_health = market_health or MarketHealthAnalyzer(storage, self.settings)
        self._position_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._portfolio_locks: dict[str, asyncio.Lock] = {}
        self._sell_only: set[str] = set()
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None
        self._job: Optional[PeriodicJob] = None

    # ── Locking ──

    def _portfolio_lock(self, portfolio_id: str) -> asyncio.Lock:
        return self._portfolio_locks.setdefault(portfolio_id, asyncio.Lock())

    @asynccontextmanager
    async def _guard(self, portfolio_id: str, token_id: str):
        """Position lock, then portfolio lock. A position lock lives only while in use."""
        key = (portfolio_id, token_id)
        position_lock = self._position_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with position_lock:
                async with self._portfolio_lock(portfolio_id):
                    yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._position_locks[key]

    # ── Sell-only mode ──

    def is_sell_only(self, portfolio_id: str) -> bool:
        return portfolio_id in self._sell_only

    def update_sell_only_mode(self, portfolio: Portfolio) -> bool:
        """Stop buying below one trade's worth of cash; resume at twice that."""
        trade_value = self.settings.sell_only_trade_value
        was_sell_only = portfolio.id in self._sell_only
        if portfolio.cash_balance < trade_value:
            self._sell_only.add(portfolio.id)
            if not was_sell_only:
                log.warning("execution.sell_only_activated", portfolio=portfolio.id, cash=round(portfolio.cash_balance, 2))
        elif portfolio.cash_balance >= trade_value * 2:
            self._sell_only.discard(portfolio.id)
            if was_sell_only:
                log.info("execution.buy_mode_restored", portfolio=portfolio.id, cash=round(portfolio.cash_balance, 2))
        return portfolio.id in self._sell_only

    async def current_market_health(self) -> MarketHealth:
        try:
            return await self.market_health.analyze()
        except Exception as exc:
            log.error("execution.market_health_failed", error=str(exc))
            return MarketHealth(factors=["analysis error"])

    # ── Thresholds ──

    async def current_min_confidence(self, limits: RiskLimits) -> float:
        """Learned threshold when one is stored, else the profile minimum."""
        value = await self.storage.get_ml_learning_param(MIN_CONFIDENCE_PARAM)
        return value if value is not None else limits.min_confidence

    async def effective_confidence(self, pattern: Pattern) -> float:
        record = await self.storage.get_pattern_performance(pattern.pattern_type.value, pattern.timeframe)
        multiplier = record.confidence_multiplier if record else 1.0
        return min(pattern.confidence * multiplier, 100.0)

    # ── Signal intake ──

    async def handle_event(self, event) -> list[Trade]:
        if isinstance(event, PatternDetected):
            return await self.handle_pattern(event.pattern)
        if isinstance(event, AlertTriggered):
            return await self.handle_alert(event)
        return []

    async def handle_pattern(self, pattern: Pattern) -> list[Trade]:
        intent = classify_pattern(pattern.pattern_type)
        if intent is None:
            return []
        token = await self.storage.get_token(pattern.token_id)
        if token is None or token.current_price <= 0:
            log.debug("execution.no_price", token_id=pattern.token_id)
            return []

        confidence = await self.effective_confidence(pattern)
        record = await self.storage.get_pattern_performance(pattern.pattern_type.value, pattern.timeframe)
        signal = TradingSignal(
            token_id=token.id,
            type=intent,
            confidence=confidence,
            source=f"pattern:{pattern.pattern_type.value}",
            price=token.current_price,
            reason=f"{pattern.pattern_type.value} ({pattern.timeframe}) at {confidence:.1f}% confidence",
            pattern_id=pattern.id,
        )

        buys_allowed = True
        if intent == TradeType.BUY:
            health = await self.current_market_health()
            buys_allowed = self.market_health.allows_buy(confidence, health)
            if not buys_allowed:
                log.info(
                    "execution.market_health_block",
                    pattern=pattern.pattern_type.value,
                    confidence=round(confidence, 1),
                    recommendation=health.recommendation.value,
                    score=round(health.health_score, 1),
                )

        trades: list[Trade] = []
        for portfolio in await self.storage.get_all_portfolios():
            if not portfolio.auto_trading_enabled:
                continue
            limits = self.risk_gate.limits_for(portfolio)
            if confidence < await self.current_min_confidence(limits):
                log.debug("execution.below_threshold", portfolio=portfolio.id, pattern=pattern.pattern_type.value, confidence=round(confidence, 1))
                continue
            sell_only = intent == TradeType.BUY and self.update_sell_only_mode(portfolio)
            if intent == TradeType.BUY and not sell_only:
                if record is not None and record.win_rate < limits.min_pattern_win_rate:
                    log.info("execution.pattern_win_rate_low", portfolio=portfolio.id, pattern=pattern.pattern_type.value, win_rate=record.win_rate)
                    continue
                if not buys_allowed:
                    continue
            try:
                if sell_only:
                    trade = await self.take_profit_in_sell_only(portfolio.id, token, signal)
                else:
                    trade = await self.process_signal(portfolio.id, token, signal)
            except Exception as exc:
                log.error("execution.signal_failed", portfolio=portfolio.id, token=token.symbol, error=str(exc))
                continue
            if trade is not None:
                trades.append(trade)
        return trades

    async def handle_alert(self, alert: AlertTriggered) -> list[Trade]:
        intent = classify_alert(alert)
        if intent is None:
            return []
        token = await self.storage.get_token(alert.token_id)
        if token is None or token.current_price <= 0:
            return []
        signal = TradingSignal(
            token_id=token.id,
            type=intent,
            confidence=alert.confidence,
            source=f"alert:{alert.alert_type.value}",
            price=token.current_price,
            reason=alert.message,
        )

        trades: list[Trade] = []
        for portfolio in await self.storage.get_all_portfolios():
            if not portfolio.auto_trading_enabled:
                continue
            if alert.confidence < await self.current_min_confidence(self.risk_gate.limits_for(portfolio)):
                continue
            if self.update_sell_only_mode(portfolio):
                continue
            try:
                trade = await self.process_signal(portfolio.id, token, signal)
            except Exception as exc:
                log.error("execution.alert_failed", portfolio=portfolio.id, token=token.symbol, error=str(exc))
                continue
            if trade is not None:
                trades.append(trade)
        return trades

    async def process_signal(self, portfolio_id: str, token: Token, signal: TradingSignal) -> Optional[Trade]:
        """Buy only into tokens not held; sell only tokens that are held."""
        async with self._guard(portfolio_id, token.id):
            portfolio = await self._refresh_day(portfolio_id)
            position = await self.storage.get_position_by_portfolio_and_token(portfolio_id, token.id)
            held = position is not None and position.is_open

            if signal.type == TradeType.BUY:
                if held:
                    log.debug("execution.already_holding", portfolio=portfolio_id, token=token.symbol)
                    return None
                return await self._execute_buy(portfolio, token, signal)

            if not held:
                return None
            return await self._execute_sell(portfolio, position, token, signal, fraction=1.0, trigger=signal.source)

    async def take_profit_in_sell_only(self, portfolio_id: str, token: Token, signal: TradingSignal) -> Optional[Trade]:
        """Turn a strong bullish signal into a full exit of a held, profitable position."""
        if signal.confidence <= self.settings.sell_only_min_confidence:
            return None
        async with self._guard(portfolio_id, token.id):
            position = await self.storage.get_position_by_portfolio_and_token(portfolio_id, token.id)
            if position is None or not position.is_open:
                return None
            move = percent_move(position.avg_buy_price, token.current_price)
            if move <= self.settings.sell_only_take_profit_pct:
                return None
            portfolio = await self._refresh_day(portfolio_id)
            exit_signal = signal.model_copy(update={
                "type": TradeType.SELL,
                "confidence": signal.confidence * 0.8,
                "reason": f"sell-only profit taking at {move:.1f}%",
            })
            return await self._execute_sell(portfolio, position, token, exit_signal, fraction=1.0, trigger="sell_only_take_profit")

    async def close_position(
        self,
        portfolio_id: str,
        position_id: str,
        trigger: str,
        reason: str = "",
    ) -> Optional[Trade]:
        """Sell an entire position at the token's current price."""
        position = await self.storage.get_position(position_id)
        if position is None:
            return None
        async with self._guard(portfolio_id, position.token_id):
            position = await self.storage.get_position(position_id)
            if position is None or not position.is_open:
                return None
            token = await self.storage.get_token(position.token_id)
            if token is None or token.current_price <= 0:
                return None
            portfolio = await self._refresh_day(portfolio_id)
            signal = TradingSignal(
                token_id=token.id,
                type=TradeType.SELL,
                confidence=100.0,
                source=trigger,
                price=token.current_price,
                reason=reason,
            )
            return await self._execute_sell(portfolio, position, token, signal, fraction=1.0, trigger=trigger)

    # ── Fills (callers hold the guard) ──

    async def _execute_buy(self, portfolio: Portfolio, token: Token, signal: TradingSignal) -> Optional[Trade]:
        limits = self.risk_gate.limits_for(portfolio)
        price = token.current_price
        sizing = await self.risk_gate.size_position(portfolio, token, signal.confidence / 100)
        amount = sizing.recommended_size
        if amount <= 0:
            log.info("execution.zero_size", portfolio=portfolio.id, token=token.symbol, reasoning=sizing.reasoning)
            return None

        trade_value = amount * price
        min_cash = portfolio.total_value * limits.min_cash_pct / 100
        if trade_value > portfolio.cash_balance or portfolio.cash_balance - trade_value < min_cash:
            log.info("execution.cash_floor", portfolio=portfolio.id, token=token.symbol, cash=round(portfolio.cash_balance, 2), needed=round(trade_value, 2))
            return None

        analysis = await self.risk_gate.analyze_trade_risk(portfolio, token.id, TradeType.BUY, amount, price)
        if not analysis.allowed:
            log.info("execution.trade_rejected", portfolio=portfolio.id, token=token.symbol, reason=analysis.reason)
            return None

        trade = await self.storage.create_trade(Trade(
            portfolio_id=portfolio.id,
            token_id=token.id,
            pattern_id=signal.pattern_id,
            type=TradeType.BUY,
            amount=amount,
            price=price,
            total_value=trade_value,
            trigger=signal.source,
        ))

        existing = await self.storage.get_position_by_portfolio_and_token(portfolio.id, token.id)
        if existing is not None:
            await self.storage.update_position(existing.id, accumulate(existing, amount, price))
        else:
            await self.storage.create_position(Position(
                portfolio_id=portfolio.id,
                token_id=token.id,
                amount=amount,
                avg_buy_price=price,
            ))

        await self._apply_fill(portfolio.id, -trade_value)
        log.info("execution.buy", portfolio=portfolio.id, token=token.symbol, amount=amount, price=price, source=signal.source)
        await self.bus.publish(TradeExecuted(portfolio_id=portfolio.id, trade=trade, signal=signal, token=token))
        return trade

    async def _execute_sell(
        self,
        portfolio: Portfolio,
        position: Position,
        token: Token,
        signal: TradingSignal,
        fraction: float,
        trigger: str,
        next_stage: Optional[int] = None,
    ) -> Optional[Trade]:
        price = token.current_price
        amount = position.amount if fraction >= 1 else position.amount * fraction
        analysis = await self.risk_gate.analyze_trade_risk(portfolio, token.id, TradeType.SELL, amount, price)
        if not analysis.allowed:
            log.warning("execution.sell_rejected", portfolio=portfolio.id, token=token.symbol, reason=analysis.reason)
            return None

        sell_value = amount * price
        realized = sell_value - amount * position.avg_buy_price
        remaining = position.amount - amount
        if fraction >= 1 or remaining <= DUST:
            remaining = 0.0
        now = utcnow()

        origin = await self._originating_buy(portfolio.id, token.id)
        trade = await self.storage.create_trade(Trade(
            portfolio_id=portfolio.id,
            token_id=token.id,
            pattern_id=origin.pattern_id if origin is not None else signal.pattern_id,
            type=TradeType.SELL,
            amount=amount,
            price=price,
            total_value=sell_value,
            exit_price=price,
            realized_pnl=realized,
            closed_at=now,
            trigger=trigger,
        ))
        if origin is not None and origin.closed_at is None:
            await self.storage.update_trade(origin.id, {
                "exit_price": price,
                "realized_pnl": realized,
                "closed_at": now,
            })

        stage = next_stage if next_stage is not None else position.take_profit_stage
        await self.storage.update_position(position.id, {
            "amount": remaining,
            "take_profit_stage": stage if remaining > 0 else 0,
        })
        await self._apply_fill(portfolio.id, sell_value, realized)

        log.info("execution.sell", portfolio=portfolio.id, token=token.symbol, amount=amount, price=price, realized_pnl=round(realized, 2), trigger=trigger)
        await self.bus.publish(TradeExecuted(
            portfolio_id=portfolio.id, trade=trade, signal=signal, token=token, realized_pnl=realized,
        ))
        return trade

    async def _originating_buy(self, portfolio_id: str, token_id: str) -> Optional[Trade]:
        buys = [
            t for t in await self.storage.get_trades_by_portfolio(portfolio_id)
            if t.token_id == token_id and t.type == TradeType.BUY
        ]
        open_buys = [t for t in buys if t.closed_at is None]
        if open_buys:
            return open_buys[-1]
        return buys[-1] if buys else None

    async def _apply_fill(self, portfolio_id: str, cash_delta: float, realized: Optional[float] = None) -> Portfolio:
        portfolio = await self.storage.get_portfolio(portfolio_id)
        changes = {"cash_balance": portfolio.cash_balance + cash_delta}
        if realized is not None:
            changes["daily_pnl"] = portfolio.daily_pnl + realized
            changes["realized_pnl"] = portfolio.realized_pnl + realized
            changes["win_rate"] = await self._win_rate(portfolio_id)
        await self.storage.update_portfolio(portfolio_id, changes)
        return await self.mark_to_market(portfolio_id)

    async def _win_rate(self, portfolio_id: str) -> float:
        sells = [
            t for t in await self.storage.get_trades_by_portfolio(portfolio_id)
            if t.type == TradeType.SELL and t.realized_pnl is not None
        ]
        if not sells:
            return 0.0
        return sum(1 for t in sells if t.realized_pnl > 0) / len(sells) * 100

    async def _refresh_day(self, portfolio_id: str) -> Portfolio:
        """Reset daily P&L when the UTC day has changed."""
        portfolio = await self.storage.get_portfolio(portfolio_id)
        if portfolio is None:
            raise LookupError(f"portfolio '{portfolio_id}' not found")
        today = utcnow().date()
        if portfolio.pnl_day != today:
            portfolio = await self.storage.update_portfolio(portfolio_id, {"daily_pnl": 0.0, "pnl_day": today})
        return portfolio

    async def mark_to_market(self, portfolio_id: str) -> Portfolio:
        """total_value = cash + sum(amount * current price) over open positions."""
        portfolio = await self.storage.get_portfolio(portfolio_id)
        holdings = 0.0
        for position in await self.storage.get_positions_by_portfolio(portfolio_id):
            if not position.is_open:
                continue
            token = await self.storage.get_token(position.token_id)
            price = token.current_price if token is not None and token.current_price > 0 else position.avg_buy_price
            holdings += position.amount * price
        total = portfolio.cash_balance + holdings
        return await self.storage.update_portfolio(portfolio_id, {
            "total_value": total,
            "total_pnl": total - portfolio.starting_capital,
        })

    # ── Monitoring ──

    async def monitor_portfolio(self, portfolio_id: str) -> StatsUpdate:
        """Apply stop-loss and take-profit exits, then mark to market and report."""
        async with self._portfolio_lock(portfolio_id):
            portfolio = await self._refresh_day(portfolio_id)
        limits = self.risk_gate.limits_for(portfolio)
        sell_only = self.update_sell_only_mode(portfolio)

        for position in await self.storage.get_positions_by_portfolio(portfolio_id):
            if not position.is_open:
                continue
            try:
                await self._monitor_position(portfolio_id, position.id, position.token_id, limits, sell_only)
            except Exception as exc:
                log.error("execution.monitor_position_failed", position=position.id, error=str(exc))

        async with self._portfolio_lock(portfolio_id):
            portfolio = await self.mark_to_market(portfolio_id)
        trades = await self.storage.get_trades_by_portfolio(portfolio_id)
        positions = await self.storage.get_positions_by_portfolio(portfolio_id)
        stats = StatsUpdate(
            portfolio_id=portfolio_id,
            total_value=portfolio.total_value,
            total_pnl=portfolio.total_pnl,
            daily_pnl=portfolio.daily_pnl,
            total_trades=len(trades),
            active_positions=sum(1 for p in positions if p.is_open),
        )
        await self.bus.publish(stats)
        return stats

    async def _monitor_position(
        self,
        portfolio_id: str,
        position_id: str,
        token_id: str,
        limits: RiskLimits,
        sell_only: bool = False,
    ) -> Optional[Trade]:
        async with self._guard(portfolio_id, token_id):
            position = await self.storage.get_position(position_id)
            token = await self.storage.get_token(token_id)
            if position is None or not position.is_open or token is None or token.current_price <= 0:
                return None
            decision = exit_decision(position, token.current_price, limits, sell_only, self.settings.sell_only_exit_profit_pct)
            if decision is None:
                return None
            trigger, fraction, stage = decision
            portfolio = await self.storage.get_portfolio(portfolio_id)
            signal = TradingSignal(
                token_id=token.id,
                type=TradeType.SELL,
                confidence=100.0,
                source=trigger,
                price=token.current_price,
                reason=f"{trigger} at {percent_move(position.avg_buy_price, token.current_price):.2f}%",
            )
            return await self._execute_sell(portfolio, position, token, signal, fraction, trigger, next_stage=stage)

    async def run_monitor_cycle(self) -> int:
        portfolios = await self.storage.get_all_portfolios()
        for portfolio in portfolios:
            try:
                await self.monitor_portfolio(portfolio.id)
            except Exception as exc:
                log.error("execution.portfolio_failed", portfolio=portfolio.id, error=str(exc))
        return len(portfolios)

    # ── Lifecycle ──

    async def _consume(self) -> None:
        async for event in self._subscription:
            try:
                await self.handle_event(event)
            except Exception as exc:
                log.error("execution.event_failed", kind=getattr(event, "kind", None), error=str(exc))

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.bus.subscribe(PatternDetected, AlertTriggered)
            self._consumer = asyncio.create_task(self._consume(), name="execution:consumer")
        if self._job is None:
            self._job = PeriodicJob("execution_monitor", self.settings.execution_monitor_interval, self.run_monitor_cycle)
        self._job.start()
        log.info("execution.started")

    async def stop(self) -> None:
        """Detach from the bus and stop the monitor; queued signals are still processed."""
        if self._job is not None:
            await self._job.stop()
        if self._subscription is not None:
            self._subscription.close()
            if self._consumer is not None:
                await self._consumer
            self._subscription = None
            self._consumer = None
        log.info("execution.stopped")
