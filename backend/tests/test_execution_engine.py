"""
AutoTrader - Execution Engine Tests

Signal handling, simulated fills, exits and portfolio accounting.
"""

import asyncio
from datetime import timedelta

import pytest


def _settings(**overrides):
    from autotrader.config import Settings
    return Settings(_env_file=None, **overrides)


def _world(price: float = 1.0, **portfolio_fields):
    from autotrader.engines.execution_engine import ExecutionEngine
    from autotrader.engines.risk_engine import RiskGate
    from autotrader.events import EventBus
    from autotrader.models import Portfolio, Token
    from autotrader.storage import InMemoryStorage

    settings = _settings()
    storage = InMemoryStorage()
    bus = EventBus()
    token = storage.add_token(Token(symbol="EXEC", current_price=price))
    portfolio = storage.add_portfolio(Portfolio(**portfolio_fields))
    gate = RiskGate(storage, bus, settings)
    engine = ExecutionEngine(storage, bus, gate, settings)
    gate.bind_closer(engine)
    return storage, bus, token, portfolio, engine


def _hold(storage, portfolio, token, amount: float = 1_000.0, entry: float = 1.0):
    from autotrader.models import Position
    return asyncio.run(storage.create_position(
        Position(portfolio_id=portfolio.id, token_id=token.id, amount=amount, avg_buy_price=entry)
    ))


def _bullish(token_id: str, confidence: float = 82.0):
    from autotrader.models import BullishMomentumMetadata, Pattern, PatternType
    return Pattern(
        token_id=token_id,
        pattern_type=PatternType.STRONG_BULLISH_MOMENTUM,
        confidence=confidence,
        timeframe="1h",
        metadata=BullishMomentumMetadata(consecutive_ups=3, volume_increase_pct=30),
    )


def _bearish(token_id: str, confidence: float = 80.0):
    from autotrader.models import Pattern, PatternType, ReversalMetadata
    return Pattern(
        token_id=token_id,
        pattern_type=PatternType.ML_REVERSAL,
        confidence=confidence,
        timeframe="2h",
        metadata=ReversalMetadata(divergence_strength=0.8, volume_pattern=0.5, trend_exhaustion=1.0, rsi=78),
    )


# ──────────────────────────────────────────────
# Classification and exit rules
# ──────────────────────────────────────────────


class TestClassification:

    def test_pattern_directions(self):
        from autotrader.engines.execution_engine import classify_pattern
        from autotrader.models import PatternType, TradeType

        assert classify_pattern(PatternType.ENSEMBLE) == TradeType.BUY
        assert classify_pattern(PatternType.VOLUME_BREAKOUT) == TradeType.BUY
        assert classify_pattern("ml_reversal") == TradeType.SELL
        assert classify_pattern(PatternType.HARMONIC) is None

    def test_alert_directions(self):
        from autotrader.engines.execution_engine import classify_alert
        from autotrader.events import AlertTriggered
        from autotrader.models import AlertType, TradeType

        def alert(kind, change):
            return AlertTriggered(alert_type=kind, token_id="t", confidence=90, change_pct=change)

        assert classify_alert(alert(AlertType.VOLUME_SURGE, 250)) == TradeType.BUY
        assert classify_alert(alert(AlertType.PRICE_SPIKE, 60)) == TradeType.BUY
        assert classify_alert(alert(AlertType.PRICE_SPIKE, -60)) is None
        assert classify_alert(alert(AlertType.NEW_TOKEN, 0)) is None


class TestExitDecision:

    def _position(self, stage: int = 0):
        from autotrader.models import Position
        return Position(portfolio_id="p", token_id="t", amount=100, avg_buy_price=1.0, take_profit_stage=stage)

    def test_stop_loss_first(self):
        from autotrader.config import get_risk_limits
        from autotrader.engines.execution_engine import exit_decision

        assert exit_decision(self._position(), 0.92, get_risk_limits("default"))[:2] == ("stop_loss", 1.0)

    def test_single_take_profit_without_stages(self):
        from autotrader.config import get_risk_limits
        from autotrader.engines.execution_engine import exit_decision

        limits = get_risk_limits("default")
        assert exit_decision(self._position(), 1.14, limits) is None
        assert exit_decision(self._position(), 1.15, limits) == ("take_profit", 1.0, 0)

    def test_staged_take_profit(self):
        from autotrader.config import get_risk_limits
        from autotrader.engines.execution_engine import exit_decision

        limits = get_risk_limits("conservative")
        assert exit_decision(self._position(0), 1.05, limits) == ("take_profit_stage_1", 0.3, 1)
        assert exit_decision(self._position(1), 1.05, limits) is None
        assert exit_decision(self._position(1), 1.08, limits) == ("take_profit_stage_2", 0.4, 2)
        assert exit_decision(self._position(2), 1.11, limits) == ("take_profit_stage_3", 1.0, 3)

    def test_sell_only_exits_small_profit(self):
        from autotrader.config import get_risk_limits
        from autotrader.engines.execution_engine import exit_decision

        limits = get_risk_limits("default")
        assert exit_decision(self._position(), 1.03, limits) is None
        assert exit_decision(self._position(), 1.03, limits, sell_only=True) == ("cash_generation", 1.0, 0)
        assert exit_decision(self._position(), 1.02, limits, sell_only=True) is None
        assert exit_decision(self._position(), 1.15, limits, sell_only=True) == ("take_profit", 1.0, 0)


class TestAccumulate:

    def test_adding_to_open_position_averages_price(self):
        from autotrader.engines.execution_engine import accumulate
        from autotrader.models import Position

        position = Position(portfolio_id="p", token_id="t", amount=100, avg_buy_price=1.0, take_profit_stage=1)
        changes = accumulate(position, 100, 2.0)
        assert changes == {"amount": 200, "avg_buy_price": pytest.approx(1.5)}

    def test_flat_position_starts_over(self):
        from autotrader.engines.execution_engine import accumulate
        from autotrader.models import Position

        position = Position(portfolio_id="p", token_id="t", amount=0, avg_buy_price=1.0, take_profit_stage=2)
        changes = accumulate(position, 50, 3.0)
        assert (changes["amount"], changes["avg_buy_price"], changes["take_profit_stage"]) == (50, 3.0, 0)
        assert "opened_at" in changes


# ──────────────────────────────────────────────
# Pattern and alert handling
# ──────────────────────────────────────────────


class TestHandlePattern:

    def test_bullish_pattern_buys(self):
        from autotrader.events import TradeExecuted
        from autotrader.models import TradeType

        storage, bus, token, portfolio, engine = _world()
        sub = bus.subscribe(TradeExecuted)
        pattern = _bullish(token.id)

        async def scenario():
            trades = await engine.handle_pattern(pattern)
            return (
                trades,
                await storage.get_position_by_portfolio_and_token(portfolio.id, token.id),
                await storage.get_portfolio(portfolio.id),
                await sub.get(),
            )

        trades, position, after, event = asyncio.run(scenario())
        # 82% confidence -> Kelly 15% capped to 10%, halved for unknown volatility
        assert len(trades) == 1
        assert trades[0].type == TradeType.BUY
        assert trades[0].pattern_id == pattern.id
        assert trades[0].amount == pytest.approx(500.0)
        assert position.amount == pytest.approx(500.0)
        assert position.avg_buy_price == 1.0
        assert after.cash_balance == pytest.approx(9_500.0)
        assert after.total_value == pytest.approx(10_000.0)
        assert event.signal.source == "pattern:strong_bullish_momentum"

    def test_no_second_buy_while_holding(self):
        storage, bus, token, portfolio, engine = _world()
        _hold(storage, portfolio, token, amount=100)
        assert asyncio.run(engine.handle_pattern(_bullish(token.id))) == []

    def test_below_threshold_ignored(self):
        storage, bus, token, portfolio, engine = _world()
        assert asyncio.run(engine.handle_pattern(_bullish(token.id, confidence=70))) == []

    def test_multiplier_lifts_confidence_over_threshold(self):
        from autotrader.models import PatternPerformanceRecord

        storage, bus, token, portfolio, engine = _world()
        pattern = _bullish(token.id, confidence=70)

        async def scenario():
            await storage.upsert_pattern_performance(PatternPerformanceRecord(
                pattern_type="strong_bullish_momentum", timeframe="1h", win_rate=0.8, confidence_multiplier=1.2,
            ))
            return await engine.effective_confidence(pattern), await engine.handle_pattern(pattern)

        confidence, trades = asyncio.run(scenario())
        assert confidence == pytest.approx(84.0)
        assert len(trades) == 1

    def test_learned_threshold_overrides_profile(self):
        from autotrader.engines.pattern_engine import MIN_CONFIDENCE_PARAM

        storage, bus, token, portfolio, engine = _world()

        async def scenario():
            await storage.update_ml_learning_param(MIN_CONFIDENCE_PARAM, 90)
            return await engine.handle_pattern(_bullish(token.id, confidence=85))

        assert asyncio.run(scenario()) == []

    def test_auto_trading_disabled(self):
        storage, bus, token, portfolio, engine = _world(auto_trading_enabled=False)
        assert asyncio.run(engine.handle_pattern(_bullish(token.id))) == []

    def test_pattern_win_rate_gate(self):
        from autotrader.models import PatternPerformanceRecord

        storage, bus, token, portfolio, engine = _world(risk_profile="conservative")

        async def scenario():
            await storage.upsert_pattern_performance(PatternPerformanceRecord(
                pattern_type="strong_bullish_momentum", timeframe="1h", win_rate=0.5,
            ))
            return await engine.handle_pattern(_bullish(token.id, confidence=90))

        assert asyncio.run(scenario()) == []

    def test_cash_floor_skips_buy(self):
        storage, bus, token, portfolio, engine = _world(cash_balance=300.0)
        assert asyncio.run(engine.handle_pattern(_bullish(token.id))) == []

    def test_bearish_pattern_sells_and_closes_buy(self):
        from autotrader.models import TradeType

        storage, bus, token, portfolio, engine = _world()
        buy_pattern = _bullish(token.id)

        async def scenario():
            await storage.create_pattern(buy_pattern)
            [buy] = await engine.handle_pattern(buy_pattern)
            storage.set_token_price(token.id, 1.1)
            [sell] = await engine.handle_pattern(_bearish(token.id))
            trades = {t.id: t for t in await storage.get_trades_by_portfolio(portfolio.id)}
            return buy, sell, trades, await storage.get_portfolio(portfolio.id)

        buy, sell, trades, after = asyncio.run(scenario())
        assert sell.type == TradeType.SELL
        assert sell.amount == pytest.approx(buy.amount)
        assert sell.realized_pnl == pytest.approx(buy.amount * 0.1)
        assert sell.pattern_id == buy_pattern.id
        assert trades[buy.id].exit_price == 1.1
        assert trades[buy.id].closed_at is not None
        assert after.cash_balance == pytest.approx(10_000 + buy.amount * 0.1)
        assert after.realized_pnl == pytest.approx(buy.amount * 0.1)
        assert after.win_rate == 100.0

    def test_bearish_pattern_without_position_ignored(self):
        storage, bus, token, portfolio, engine = _world()
        assert asyncio.run(engine.handle_pattern(_bearish(token.id))) == []


class TestHandleAlert:

    def _alert(self, token_id, kind, change):
        from autotrader.events import AlertTriggered
        from autotrader.models import AlertType
        confidence = {AlertType.VOLUME_SURGE: 92.0, AlertType.PRICE_SPIKE: 85.0}[kind]
        return AlertTriggered(alert_type=kind, token_id=token_id, confidence=confidence, change_pct=change)

    def test_volume_surge_buys(self):
        from autotrader.models import AlertType

        storage, bus, token, portfolio, engine = _world()
        trades = asyncio.run(engine.handle_alert(self._alert(token.id, AlertType.VOLUME_SURGE, 300)))
        assert len(trades) == 1
        assert trades[0].trigger == "alert:volume_surge"

    def test_downward_spike_ignored(self):
        from autotrader.models import AlertType

        storage, bus, token, portfolio, engine = _world()
        assert asyncio.run(engine.handle_alert(self._alert(token.id, AlertType.PRICE_SPIKE, -55))) == []


# ──────────────────────────────────────────────
# Monitoring
# ──────────────────────────────────────────────


class TestMonitorPortfolio:

    def test_staged_take_profit_sequence(self):
        from autotrader.events import StatsUpdate

        storage, bus, token, portfolio, engine = _world(cash_balance=9_000.0, risk_profile="conservative")
        position = _hold(storage, portfolio, token, amount=1_000, entry=1.0)
        stats = bus.subscribe(StatsUpdate)

        async def step(price):
            storage.set_token_price(token.id, price)
            await engine.monitor_portfolio(portfolio.id)
            current = await storage.get_position(position.id)
            return current.amount, current.take_profit_stage

        async def scenario():
            steps = [await step(1.05), await step(1.05), await step(1.08), await step(1.11)]
            return steps, stats.pending, await storage.get_portfolio(portfolio.id)

        steps, published, after = asyncio.run(scenario())
        assert steps[0] == (pytest.approx(700.0), 1)
        assert steps[1] == (pytest.approx(700.0), 1)
        assert steps[2] == (pytest.approx(420.0), 2)
        assert steps[3] == (0.0, 0)
        assert published == 4
        expected_cash = 9_000 + 300 * 1.05 + 280 * 1.08 + 420 * 1.11
        assert after.cash_balance == pytest.approx(expected_cash)
        assert after.total_value == pytest.approx(expected_cash)

    def test_full_take_profit_without_stages(self):
        storage, bus, token, portfolio, engine = _world(cash_balance=9_000.0)
        position = _hold(storage, portfolio, token, amount=1_000, entry=1.0)

        async def scenario():
            storage.set_token_price(token.id, 1.15)
            stats = await engine.monitor_portfolio(portfolio.id)
            return stats, await storage.get_position(position.id)

        stats, closed = asyncio.run(scenario())
        assert closed.amount == 0
        assert stats.active_positions == 0
        assert stats.total_trades == 1
        assert stats.total_value == pytest.approx(10_150.0)
        assert stats.total_pnl == pytest.approx(150.0)

    def test_stop_loss_exit(self):
        storage, bus, token, portfolio, engine = _world(cash_balance=9_000.0)
        _hold(storage, portfolio, token, amount=1_000, entry=1.0)

        async def scenario():
            storage.set_token_price(token.id, 0.9)
            await engine.monitor_portfolio(portfolio.id)
            return await storage.get_trades_by_portfolio(portfolio.id), await storage.get_portfolio(portfolio.id)

        trades, after = asyncio.run(scenario())
        assert [t.trigger for t in trades] == ["stop_loss"]
        assert after.daily_pnl == pytest.approx(-100.0)
        assert after.win_rate == 0.0

    def test_holding_marks_to_market(self):
        storage, bus, token, portfolio, engine = _world(cash_balance=9_000.0)
        _hold(storage, portfolio, token, amount=1_000, entry=1.0)

        async def scenario():
            storage.set_token_price(token.id, 1.05)
            return await engine.monitor_portfolio(portfolio.id)

        stats = asyncio.run(scenario())
        assert stats.active_positions == 1
        assert stats.total_value == pytest.approx(10_050.0)

    def test_daily_pnl_resets_on_new_day(self):
        from autotrader.models import utcnow

        yesterday = (utcnow() - timedelta(days=1)).date()
        storage, bus, token, portfolio, engine = _world(daily_pnl=-120.0, pnl_day=yesterday)

        async def scenario():
            await engine.monitor_portfolio(portfolio.id)
            return await storage.get_portfolio(portfolio.id)

        after = asyncio.run(scenario())
        assert after.daily_pnl == 0.0
        assert after.pnl_day == utcnow().date()


class TestLifecycle:

    def test_queued_signal_processed_on_stop(self):
        from autotrader.events import PatternDetected

        storage, bus, token, portfolio, engine = _world()

        async def scenario():
            await engine.start()
            await bus.publish(PatternDetected(pattern=_bullish(token.id), token_symbol=token.symbol))
            await engine.stop()
            return await storage.get_trades_by_portfolio(portfolio.id), bus.subscriber_count

        trades, subscribers = asyncio.run(scenario())
        assert len(trades) == 1
        assert subscribers == 0

    def test_concurrent_signals_buy_once(self):
        storage, bus, token, portfolio, engine = _world()

        async def scenario():
            pattern = _bullish(token.id)
            results = await asyncio.gather(*(engine.handle_pattern(pattern) for _ in range(5)))
            return sum(len(r) for r in results)

        assert asyncio.run(scenario()) == 1

    def test_position_locks_released_after_use(self):
        storage, bus, token, portfolio, engine = _world()

        async def scenario():
            pattern = _bullish(token.id)
            await asyncio.gather(*(engine.handle_pattern(pattern) for _ in range(3)))
            storage.set_token_price(token.id, 0.5)
            await engine.monitor_portfolio(portfolio.id)
            return engine._position_locks, engine._lock_users

        assert asyncio.run(scenario()) == ({}, {})


# ──────────────────────────────────────────────
# Sell-only mode and market health
# ──────────────────────────────────────────────


class TestSellOnlyMode:

    def test_switches_with_hysteresis(self):
        storage, bus, token, portfolio, engine = _world()

        def switch(cash):
            return engine.update_sell_only_mode(portfolio.model_copy(update={"cash_balance": cash}))

        assert [switch(c) for c in (400.0, 800.0, 999.0, 1_000.0, 800.0)] == [True, True, True, False, False]
        assert engine.is_sell_only(portfolio.id) is False

    def test_bullish_pattern_takes_profit(self):
        from autotrader.models import TradeType

        storage, bus, token, portfolio, engine = _world(price=1.06, cash_balance=300.0)
        _hold(storage, portfolio, token, amount=1_000, entry=1.0)

        [trade] = asyncio.run(engine.handle_pattern(_bullish(token.id, confidence=85)))
        assert trade.type == TradeType.SELL
        assert trade.trigger == "sell_only_take_profit"
        assert trade.realized_pnl == pytest.approx(60.0)
        assert engine.is_sell_only(portfolio.id)

    def test_bullish_pattern_holds_below_profit_target(self):
        storage, bus, token, portfolio, engine = _world(price=1.04, cash_balance=300.0)
        _hold(storage, portfolio, token, amount=1_000, entry=1.0)
        assert asyncio.run(engine.handle_pattern(_bullish(token.id, confidence=85))) == []

    def test_alerts_do_not_buy(self):
        from autotrader.events import AlertTriggered
        from autotrader.models import AlertType

        storage, bus, token, portfolio, engine = _world(cash_balance=300.0)
        alert = AlertTriggered(alert_type=AlertType.VOLUME_SURGE, token_id=token.id, confidence=92, change_pct=300)
        assert asyncio.run(engine.handle_alert(alert)) == []

    def test_monitor_generates_cash_then_restores_buying(self):
        storage, bus, token, portfolio, engine = _world(price=1.03, cash_balance=300.0)
        position = _hold(storage, portfolio, token, amount=1_000, entry=1.0)

        async def scenario():
            await engine.monitor_portfolio(portfolio.id)
            trades = await storage.get_trades_by_portfolio(portfolio.id)
            await engine.monitor_portfolio(portfolio.id)
            return trades, await storage.get_position(position.id), engine.is_sell_only(portfolio.id)

        trades, closed, sell_only = asyncio.run(scenario())
        assert [t.trigger for t in trades] == ["cash_generation"]
        assert closed.amount == 0
        assert sell_only is False


class TestMarketHealthGate:

    def _gated(self, recommendation):
        from unittest.mock import AsyncMock

        from autotrader.models import MarketHealth

        world = _world()
        engine = world[-1]
        engine.market_health.analyze = AsyncMock(return_value=MarketHealth(recommendation=recommendation))
        return world

    def test_halt_blocks_buys(self):
        from autotrader.models import HealthRecommendation

        storage, bus, token, portfolio, engine = self._gated(HealthRecommendation.HALT_TRADING)
        assert asyncio.run(engine.handle_pattern(_bullish(token.id, confidence=99))) == []

    def test_minimize_needs_high_confidence(self):
        from autotrader.models import HealthRecommendation

        storage, bus, token, portfolio, engine = self._gated(HealthRecommendation.MINIMIZE_TRADING)

        async def scenario():
            low = await engine.handle_pattern(_bullish(token.id, confidence=85))
            high = await engine.handle_pattern(_bullish(token.id, confidence=92))
            return low, high

        low, high = asyncio.run(scenario())
        assert low == []
        assert len(high) == 1

    def test_halt_does_not_block_exits(self):
        from autotrader.models import HealthRecommendation

        storage, bus, token, portfolio, engine = self._gated(HealthRecommendation.HALT_TRADING)
        _hold(storage, portfolio, token)
        assert len(asyncio.run(engine.handle_pattern(_bearish(token.id)))) == 1

    def test_analysis_failure_falls_back_to_caution(self):
        from unittest.mock import AsyncMock

        storage, bus, token, portfolio, engine = _world()
        engine.market_health.analyze = AsyncMock(side_effect=RuntimeError("feed down"))
        assert len(asyncio.run(engine.handle_pattern(_bullish(token.id)))) == 1
