"""
AutoTrader - Runtime

Wires the engines around one storage and one event bus, and owns their
startup and shutdown order.
"""

from __future__ import annotations

import logging
from typing import Optional

import structlog

from autotrader.config import Settings, get_settings
from autotrader.engines.alert_scanner import AlertScanner
from autotrader.engines.execution_engine import ExecutionEngine
from autotrader.engines.market_health import MarketHealthAnalyzer
from autotrader.engines.pattern_engine import PatternDetector
from autotrader.engines.performance_tracker import PerformanceTracker
from autotrader.engines.risk_engine import RiskGate
from autotrader.events import EventBus
from autotrader.storage import Storage

log = structlog.get_logger("autotrader.startup")


def configure_logging(level: str = "INFO") -> None:
    """Key-value console logging filtered at ``level``."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        cache_logger_on_first_use=False,
    )


class TradingCore:
    """All engines sharing one storage and bus.

    Usage:
        core = TradingCore(storage)
        await core.start()
        ...
        await core.stop()

    or ``async with TradingCore(storage) as core: ...``
    """

    def __init__(self, storage: Storage, settings: Optional[Settings] = None, bus: Optional[EventBus] = None):
        self.settings = settings or get_settings()
        self.storage = storage
        self.bus = bus or EventBus(maxsize=self.settings.event_queue_size)
        self.risk_gate = RiskGate(storage, self.bus, self.settings)
        self.market_health = MarketHealthAnalyzer(storage, self.settings)
        self.execution = ExecutionEngine(storage, self.bus, self.risk_gate, self.settings, self.market_health)
        self.risk_gate.bind_closer(self.execution)
        self.detector = PatternDetector(storage, self.bus, self.settings)
        self.tracker = PerformanceTracker(storage, self.bus, self.settings)
        self.scanner = AlertScanner(storage, self.bus, self.settings)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the execution engine first so no early signal is missed."""
        if self._running:
            return
        log.info("startup", env=self.settings.app_env, risk_profile=self.settings.risk_profile)
        await self.execution.start()
        self.risk_gate.start()
        self.detector.start()
        self.tracker.start()
        self.scanner.start()
        self._running = True

    async def stop(self) -> None:
        """Stop producers, then let execution drain what they already published."""
        if not self._running:
            return
        await self.scanner.stop()
        await self.detector.stop()
        await self.tracker.stop()
        await self.risk_gate.stop()
        await self.execution.stop()
        self.bus.close()
        self._running = False
        log.info("shutdown")

    async def __aenter__(self) -> "TradingCore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
