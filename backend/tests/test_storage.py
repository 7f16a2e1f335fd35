"""
AutoTrader - Storage Tests

InMemoryStorage behaviour the engines rely on.
"""

import asyncio
from datetime import timedelta

import pytest


def _pattern(token_id: str = "t1", pattern_type=None, timeframe: str = "1h", confidence: float = 80.0):
    from autotrader.models import BullishMomentumMetadata, Pattern, PatternType
    return Pattern(
        token_id=token_id,
        pattern_type=pattern_type or PatternType.STRONG_BULLISH_MOMENTUM,
        confidence=confidence,
        timeframe=timeframe,
        metadata=BullishMomentumMetadata(consecutive_ups=3, volume_increase_pct=30.0),
    )


class TestInMemoryStorage:

    def test_satisfies_protocol(self):
        from autotrader.storage import InMemoryStorage, Storage
        assert isinstance(InMemoryStorage(), Storage)

    def test_price_history_window(self):
        from autotrader.models import Token, utcnow
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            token = storage.add_token(Token(symbol="AAA", current_price=1.0))
            end = utcnow()
            storage.add_price_points(token.id, [1.0, 1.1, 1.2, 1.3], end=end, step_minutes=60)
            recent = await storage.get_price_history(token.id, start=end - timedelta(minutes=90))
            everything = await storage.get_price_history(token.id)
            return [p.price for p in recent], len(everything)

        assert asyncio.run(scenario()) == ([1.2, 1.3], 4)

    def test_returns_copies(self):
        from autotrader.models import Portfolio
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            portfolio = storage.add_portfolio(Portfolio())
            fetched = await storage.get_portfolio(portfolio.id)
            fetched.cash_balance = 0
            return (await storage.get_portfolio(portfolio.id)).cash_balance

        assert asyncio.run(scenario()) == 10_000.0

    def test_update_unknown_record_raises(self):
        from autotrader.errors import StorageError
        from autotrader.storage import InMemoryStorage

        with pytest.raises(StorageError):
            asyncio.run(InMemoryStorage().update_portfolio("missing", {"cash_balance": 1.0}))

    def test_update_unknown_field_raises(self):
        from autotrader.errors import StorageError
        from autotrader.models import Portfolio
        from autotrader.storage import InMemoryStorage

        storage = InMemoryStorage()
        portfolio = storage.add_portfolio(Portfolio())
        with pytest.raises(StorageError):
            asyncio.run(storage.update_portfolio(portfolio.id, {"not_a_field": 1}))

    def test_duplicate_position_rejected(self):
        from autotrader.errors import StorageError
        from autotrader.models import Position
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            await storage.create_position(Position(portfolio_id="p", token_id="t", amount=1, avg_buy_price=1))
            await storage.create_position(Position(portfolio_id="p", token_id="t", amount=2, avg_buy_price=1))

        with pytest.raises(StorageError):
            asyncio.run(scenario())

    def test_trades_by_pattern_type_join(self):
        from autotrader.models import PatternType, Trade, TradeType
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            hit = await storage.create_pattern(_pattern(timeframe="1h"))
            other_tf = await storage.create_pattern(_pattern(timeframe="2h"))
            for pattern in (hit, other_tf, None):
                await storage.create_trade(Trade(
                    portfolio_id="p", token_id="t", pattern_id=pattern.id if pattern else None,
                    type=TradeType.BUY, amount=1, price=1, total_value=1,
                ))
            trades = await storage.get_trades_by_pattern_type(PatternType.STRONG_BULLISH_MOMENTUM.value, "1h")
            return [t.pattern_id for t in trades], hit.id

        ids, expected = asyncio.run(scenario())
        assert ids == [expected]

    def test_recent_trades_newest_first(self):
        from autotrader.models import Trade, TradeType, utcnow
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            now = utcnow()
            for minutes in (30, 10, 20):
                await storage.create_trade(Trade(
                    portfolio_id="p", token_id="t", type=TradeType.SELL, amount=1, price=1,
                    total_value=1, trigger=str(minutes), created_at=now - timedelta(minutes=minutes),
                ))
            return [t.trigger for t in await storage.get_recent_trades(2)]

        assert asyncio.run(scenario()) == ["10", "20"]

    def test_confidence_multiplier_rescales_matching_patterns(self):
        from autotrader.models import PatternType
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            strong = await storage.create_pattern(_pattern(confidence=90.0))
            await storage.create_pattern(_pattern(confidence=70.0, timeframe="2h"))
            touched = await storage.update_pattern_confidence_multiplier(
                PatternType.STRONG_BULLISH_MOMENTUM, "1h", 1.2,
            )
            patterns = {p.id: p for p in await storage.get_all_patterns()}
            return touched, patterns[strong.id].adjusted_confidence, patterns[strong.id].confidence

        assert asyncio.run(scenario()) == (1, 100.0, 90.0)

    def test_learning_params(self):
        from autotrader.storage import InMemoryStorage

        async def scenario():
            storage = InMemoryStorage()
            before = await storage.get_ml_learning_param("min_confidence_threshold")
            await storage.update_ml_learning_param("min_confidence_threshold", 60)
            return before, await storage.get_ml_learning_param("min_confidence_threshold")

        assert asyncio.run(scenario()) == (None, 60.0)
