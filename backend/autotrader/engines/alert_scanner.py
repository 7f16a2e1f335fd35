"""
AutoTrader - Alert Scanner

Cheap tick-to-tick scan of active tokens, independent of pattern detection.
Compares each token's two most recent samples and publishes
``AlertTriggered`` for price spikes, volume surges and newly seen large caps.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog

from autotrader.config import Settings, get_settings
from autotrader.events import AlertTriggered, EventBus
from autotrader.models import AlertType, Token, utcnow
from autotrader.scheduler import PeriodicJob
from autotrader.storage import Storage

log = structlog.get_logger(__name__)

ALERT_CONFIDENCE = {
    AlertType.PRICE_SPIKE: 85.0,
    AlertType.VOLUME_SURGE: 92.0,
    AlertType.NEW_TOKEN: 75.0,
}


def pct_change(previous: float, current: float) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


class AlertScanner:
    """Publishes alerts; owns the set of tokens it has already scanned."""

    def __init__(self, storage: Storage, bus: EventBus, settings: Optional[Settings] = None):
        self.storage = storage
        self.bus = bus
        self.settings = settings or get_settings()
        self._scanned: set[str] = set()
        self._job: Optional[PeriodicJob] = None

    def has_scanned(self, token_id: str) -> bool:
        return token_id in self._scanned

    def reset(self) -> None:
        self._scanned.clear()

    async def analyze_token(self, token: Token) -> list[AlertTriggered]:
        alerts: list[AlertTriggered] = []
        first_scan = token.id not in self._scanned
        self._scanned.add(token.id)

        if first_scan and token.market_cap > self.settings.new_token_market_cap:
            alerts.append(AlertTriggered(
                alert_type=AlertType.NEW_TOKEN,
                token_id=token.id,
                token_symbol=token.symbol,
                confidence=ALERT_CONFIDENCE[AlertType.NEW_TOKEN],
                message=f"New token {token.symbol} with ${token.market_cap:,.0f} market cap",
            ))

        since = utcnow() - timedelta(hours=self.settings.alert_lookback_hours)
        history = await self.storage.get_price_history(token.id, start=since)
        if len(history) < 2:
            return alerts
        previous, latest = history[-2], history[-1]

        price_change = pct_change(previous.price, latest.price)
        if abs(price_change) > self.settings.price_spike_pct:
            alerts.append(AlertTriggered(
                alert_type=AlertType.PRICE_SPIKE,
                token_id=token.id,
                token_symbol=token.symbol,
                confidence=ALERT_CONFIDENCE[AlertType.PRICE_SPIKE],
                change_pct=price_change,
                message=f"{token.symbol} price moved {price_change:+.1f}%",
            ))

        volume_change = pct_change(previous.volume, latest.volume)
        if volume_change > self.settings.volume_surge_pct:
            alerts.append(AlertTriggered(
                alert_type=AlertType.VOLUME_SURGE,
                token_id=token.id,
                token_symbol=token.symbol,
                confidence=ALERT_CONFIDENCE[AlertType.VOLUME_SURGE],
                change_pct=volume_change,
                message=f"{token.symbol} volume up {volume_change:.0f}%",
            ))
        return alerts

    async def scan(self) -> int:
        """Scan every active token and publish its alerts. Returns alerts published."""
        published = 0
        for token in await self.storage.get_active_tokens():
            try:
                alerts = await self.analyze_token(token)
            except Exception as exc:
                log.error("alert_scanner.token_failed", token=token.symbol, error=str(exc))
                continue
            for alert in alerts:
                log.info("alert_scanner.alert", alert_type=alert.alert_type.value, token=token.symbol, change_pct=round(alert.change_pct, 1))
                await self.bus.publish(alert)
                published += 1
        return published

    def start(self) -> None:
        if self._job is None:
            self._job = PeriodicJob("alert_scanner", self.settings.alert_scan_interval, self.scan)
        self._job.start()

    async def stop(self) -> None:
        if self._job is not None:
            await self._job.stop()
