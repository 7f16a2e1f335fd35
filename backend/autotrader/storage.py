"""
AutoTrader - Storage

The persistence contract the engines depend on, plus an in-memory
implementation used by tests and local simulation.

Every method is async so a database-backed implementation can be dropped
in. Records cross the boundary as copies: mutating a returned model never
changes stored state; use the ``update_*`` methods instead.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

import structlog

from autotrader.errors import StorageError
from autotrader.models import (
    Pattern,
    PatternPerformanceRecord,
    Portfolio,
    Position,
    PriceHistoryPoint,
    Token,
    Trade,
    utcnow,
)

log = structlog.get_logger(__name__)


@runtime_checkable
class Storage(Protocol):
    """Async persistence operations used by the trading core."""

    # ── Market data ──
    async def get_active_tokens(self) -> list[Token]: ...

    async def get_token(self, token_id: str) -> Optional[Token]: ...

    async def get_price_history(
        self,
        token_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[PriceHistoryPoint]:
        """Samples for ``token_id`` ordered oldest first."""
        ...

    # ── Patterns ──
    async def create_pattern(self, pattern: Pattern) -> Pattern: ...

    async def get_all_patterns(self) -> list[Pattern]: ...

    async def update_pattern_confidence_multiplier(
        self, pattern_type: str, timeframe: str, multiplier: float
    ) -> int:
        """Rewrite ``adjusted_confidence`` on stored patterns; returns the count touched."""
        ...

    # ── Positions ──
    async def get_positions_by_portfolio(self, portfolio_id: str) -> list[Position]: ...

    async def get_position(self, position_id: str) -> Optional[Position]: ...

    async def get_position_by_portfolio_and_token(
        self, portfolio_id: str, token_id: str
    ) -> Optional[Position]: ...

    async def create_position(self, position: Position) -> Position: ...

    async def update_position(self, position_id: str, changes: dict[str, Any]) -> Position: ...

    # ── Trades ──
    async def create_trade(self, trade: Trade) -> Trade: ...

    async def update_trade(self, trade_id: str, changes: dict[str, Any]) -> Trade: ...

    async def get_trades_by_portfolio(self, portfolio_id: str) -> list[Trade]:
        """Trades for one portfolio in chronological order."""
        ...

    async def get_trades_by_pattern_type(self, pattern_type: str, timeframe: str) -> list[Trade]: ...

    async def get_recent_trades(self, limit: int) -> list[Trade]:
        """Most recent trades across all portfolios, newest first."""
        ...

    # ── Learning ──
    async def get_pattern_performance(
        self, pattern_type: str, timeframe: str
    ) -> Optional[PatternPerformanceRecord]: ...

    async def upsert_pattern_performance(self, record: PatternPerformanceRecord) -> PatternPerformanceRecord: ...

    async def get_all_pattern_performance(self) -> list[PatternPerformanceRecord]: ...

    async def get_ml_learning_param(self, key: str) -> Optional[float]: ...

    async def update_ml_learning_param(self, key: str, value: float) -> None: ...

    # ── Portfolios ──
    async def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]: ...

    async def update_portfolio(self, portfolio_id: str, changes: dict[str, Any]) -> Portfolio: ...

    async def get_all_portfolios(self) -> list[Portfolio]: ...


def _enum_value(value: Any) -> str:
    return getattr(value, "value", value)


class InMemoryStorage:
    """Dict-backed ``Storage`` implementation.

    Usage:
        storage = InMemoryStorage()
        token = storage.add_token(Token(symbol="PEPE", current_price=1.0))
        storage.add_price_points(token.id, prices, volumes)
    """

    def __init__(self):
        self._tokens: dict[str, Token] = {}
        self._history: dict[str, list[PriceHistoryPoint]] = {}
        self._patterns: dict[str, Pattern] = {}
        self._positions: dict[str, Position] = {}
        self._trades: dict[str, Trade] = {}
        self._performance: dict[tuple[str, str], PatternPerformanceRecord] = {}
        self._params: dict[str, float] = {}
        self._portfolios: dict[str, Portfolio] = {}

    # ── Seeding helpers (synchronous, for ingestion and tests) ──

    def add_token(self, token: Token) -> Token:
        self._tokens[token.id] = token.model_copy(deep=True)
        return token

    def set_token_price(self, token_id: str, price: float) -> None:
        token = self._require(self._tokens, token_id, "set_token_price")
        self._tokens[token_id] = token.model_copy(update={"current_price": price})

    def add_price_point(self, point: PriceHistoryPoint) -> None:
        series = self._history.setdefault(point.token_id, [])
        series.append(point.model_copy())
        series.sort(key=lambda p: p.timestamp)

    def add_price_points(
        self,
        token_id: str,
        prices: Iterable[float],
        volumes: Optional[Iterable[float]] = None,
        end: Optional[datetime] = None,
        step_minutes: float = 5.0,
    ) -> list[PriceHistoryPoint]:
        """Append an evenly spaced series ending at ``end`` (default: now)."""
        prices = list(prices)
        volumes = list(volumes) if volumes is not None else [0.0] * len(prices)
        end = end or utcnow()
        points = [
            PriceHistoryPoint(
                token_id=token_id,
                timestamp=end - timedelta(minutes=step_minutes * (len(prices) - 1 - i)),
                price=price,
                volume=volume,
            )
            for i, (price, volume) in enumerate(zip(prices, volumes))
        ]
        series = self._history.setdefault(token_id, [])
        series.extend(points)
        series.sort(key=lambda p: p.timestamp)
        return points

    def add_portfolio(self, portfolio: Portfolio) -> Portfolio:
        self._portfolios[portfolio.id] = portfolio.model_copy(deep=True)
        return portfolio

    @staticmethod
    def _require(table: dict, key: Any, operation: str):
        record = table.get(key)
        if record is None:
            raise StorageError(operation, f"record '{key}' not found")
        return record

    @staticmethod
    def _apply(record, changes: dict[str, Any]):
        unknown = set(changes) - set(type(record).model_fields)
        if unknown:
            raise StorageError("update", f"unknown fields {sorted(unknown)}")
        return record.model_copy(update=changes, deep=True)

    # ── Market data ──

    async def get_active_tokens(self) -> list[Token]:
        return [t.model_copy() for t in self._tokens.values() if t.is_active]

    async def get_token(self, token_id: str) -> Optional[Token]:
        token = self._tokens.get(token_id)
        return token.model_copy() if token else None

    async def get_price_history(
        self,
        token_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[PriceHistoryPoint]:
        return [
            p.model_copy()
            for p in self._history.get(token_id, [])
            if (start is None or p.timestamp >= start) and (end is None or p.timestamp <= end)
        ]

    # ── Patterns ──

    async def create_pattern(self, pattern: Pattern) -> Pattern:
        self._patterns[pattern.id] = pattern.model_copy(deep=True)
        return pattern.model_copy(deep=True)

    async def get_all_patterns(self) -> list[Pattern]:
        return [p.model_copy(deep=True) for p in self._patterns.values()]

    async def update_pattern_confidence_multiplier(
        self, pattern_type: str, timeframe: str, multiplier: float
    ) -> int:
        touched = 0
        for pattern_id, pattern in self._patterns.items():
            if _enum_value(pattern.pattern_type) == _enum_value(pattern_type) and pattern.timeframe == timeframe:
                self._patterns[pattern_id] = pattern.model_copy(
                    update={"adjusted_confidence": min(pattern.confidence * multiplier, 100.0)}
                )
                touched += 1
        return touched

    # ── Positions ──

    async def get_positions_by_portfolio(self, portfolio_id: str) -> list[Position]:
        return [p.model_copy() for p in self._positions.values() if p.portfolio_id == portfolio_id]

    async def get_position(self, position_id: str) -> Optional[Position]:
        position = self._positions.get(position_id)
        return position.model_copy() if position else None

    async def get_position_by_portfolio_and_token(
        self, portfolio_id: str, token_id: str
    ) -> Optional[Position]:
        for position in self._positions.values():
            if position.portfolio_id == portfolio_id and position.token_id == token_id:
                return position.model_copy()
        return None

    async def create_position(self, position: Position) -> Position:
        existing = await self.get_position_by_portfolio_and_token(position.portfolio_id, position.token_id)
        if existing is not None:
            raise StorageError("create_position", f"position for token '{position.token_id}' already exists")
        self._positions[position.id] = position.model_copy()
        return position.model_copy()

    async def update_position(self, position_id: str, changes: dict[str, Any]) -> Position:
        position = self._require(self._positions, position_id, "update_position")
        updated = self._apply(position, {**changes, "updated_at": changes.get("updated_at", utcnow())})
        self._positions[position_id] = updated
        return updated.model_copy()

    # ── Trades ──

    async def create_trade(self, trade: Trade) -> Trade:
        self._trades[trade.id] = trade.model_copy()
        return trade.model_copy()

    async def update_trade(self, trade_id: str, changes: dict[str, Any]) -> Trade:
        trade = self._require(self._trades, trade_id, "update_trade")
        updated = self._apply(trade, changes)
        self._trades[trade_id] = updated
        return updated.model_copy()

    async def get_trades_by_portfolio(self, portfolio_id: str) -> list[Trade]:
        trades = [t for t in self._trades.values() if t.portfolio_id == portfolio_id]
        return [t.model_copy() for t in sorted(trades, key=lambda t: t.created_at)]

    async def get_trades_by_pattern_type(self, pattern_type: str, timeframe: str) -> list[Trade]:
        wanted = _enum_value(pattern_type)
        pattern_ids = {
            p.id for p in self._patterns.values()
            if _enum_value(p.pattern_type) == wanted and p.timeframe == timeframe
        }
        return [t.model_copy() for t in self._trades.values() if t.pattern_id in pattern_ids]

    async def get_recent_trades(self, limit: int) -> list[Trade]:
        newest_first = sorted(reversed(list(self._trades.values())), key=lambda t: t.created_at, reverse=True)
        return [t.model_copy() for t in newest_first[:max(limit, 0)]]

    # ── Learning ──

    async def get_pattern_performance(
        self, pattern_type: str, timeframe: str
    ) -> Optional[PatternPerformanceRecord]:
        record = self._performance.get((_enum_value(pattern_type), timeframe))
        return record.model_copy() if record else None

    async def upsert_pattern_performance(self, record: PatternPerformanceRecord) -> PatternPerformanceRecord:
        key = (_enum_value(record.pattern_type), record.timeframe)
        self._performance[key] = record.model_copy()
        return record.model_copy()

    async def get_all_pattern_performance(self) -> list[PatternPerformanceRecord]:
        return [r.model_copy() for r in self._performance.values()]

    async def get_ml_learning_param(self, key: str) -> Optional[float]:
        return self._params.get(key)

    async def update_ml_learning_param(self, key: str, value: float) -> None:
        self._params[key] = float(value)
        log.debug("storage.param_updated", key=key, value=value)

    # ── Portfolios ──

    async def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        portfolio = self._portfolios.get(portfolio_id)
        return portfolio.model_copy() if portfolio else None

    async def update_portfolio(self, portfolio_id: str, changes: dict[str, Any]) -> Portfolio:
        portfolio = self._require(self._portfolios, portfolio_id, "update_portfolio")
        updated = self._apply(portfolio, changes)
        self._portfolios[portfolio_id] = updated
        return updated.model_copy()

    async def get_all_portfolios(self) -> list[Portfolio]:
        return [p.model_copy() for p in self._portfolios.values()]
