"""
AutoTrader - Configuration Management

Pydantic Settings: loads from .env, validates all configuration at startup.
Named risk profiles live here too so every engine resolves limits the same way.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from autotrader.models import RiskLimits


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AUTOTRADER_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"
    log_level: str = "INFO"

    # ── Cycle intervals (seconds) ──
    pattern_interval: float = 120.0
    risk_monitor_interval: float = 30.0
    execution_monitor_interval: float = 20.0
    performance_interval: float = 120.0
    alert_scan_interval: float = 60.0

    # ── Pattern detection ──
    min_price_points: int = 50
    pattern_lookback_hours: int = 168
    pattern_max_points: int = 500
    static_confidence_floor: float = 65.0

    # ── Adaptive thresholds ──
    default_min_confidence: float = 75.0
    min_confidence_floor: float = 60.0
    min_confidence_ceiling: float = 90.0
    min_trades_for_learning: int = 5
    recent_trades_window: int = 50
    min_recent_closed_trades: int = 10

    # ── Risk ──
    risk_profile: str = "default"
    volatility_lookback_hours: int = 24

    # ── Alert scanner ──
    price_spike_pct: float = 50.0
    volume_surge_pct: float = 200.0
    new_token_market_cap: float = 1_000_000.0
    alert_lookback_hours: int = 24

    # ── Market health ──
    market_health_cache_seconds: float = 300.0
    market_health_lookback_hours: int = 48
    market_health_min_tokens: int = 10

    # ── Sell-only mode ──
    sell_only_trade_value: float = 500.0
    sell_only_exit_profit_pct: float = 2.0
    sell_only_take_profit_pct: float = 5.0
    sell_only_min_confidence: float = 80.0

    # ── Event bus ──
    event_queue_size: int = 1000


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


# ──────────────────────────────────────────────
# Risk Profiles
# ──────────────────────────────────────────────

RISK_PROFILES: dict[str, RiskLimits] = {
    "default": RiskLimits(),
    "conservative": RiskLimits(
        kelly_multiplier=0.5,
        max_position_size_pct=5,
        min_cash_pct=25,
        min_confidence=85,
        min_pattern_win_rate=0.65,
        stop_loss_pct=3,
        max_daily_loss_pct=2,
        max_open_positions=8,
        take_profit_stages=[4, 7, 10],
        take_profit_pct=10,
        max_concentration_pct=15,
    ),
    "moderate": RiskLimits(
        kelly_multiplier=0.75,
        max_position_size_pct=8,
        min_cash_pct=20,
        min_confidence=78,
        min_pattern_win_rate=0.58,
        stop_loss_pct=4,
        max_daily_loss_pct=3,
        max_open_positions=10,
        take_profit_stages=[5, 9, 13],
        take_profit_pct=13,
        max_concentration_pct=20,
    ),
    "balanced": RiskLimits(
        kelly_multiplier=1.0,
        max_position_size_pct=10,
        min_cash_pct=15,
        min_confidence=72,
        min_pattern_win_rate=0.52,
        stop_loss_pct=5,
        max_daily_loss_pct=4,
        max_open_positions=12,
        take_profit_stages=[6, 11, 16],
        take_profit_pct=16,
        max_concentration_pct=25,
    ),
    "aggressive": RiskLimits(
        kelly_multiplier=1.5,
        max_position_size_pct=15,
        min_cash_pct=10,
        min_confidence=65,
        min_pattern_win_rate=0.48,
        stop_loss_pct=6,
        max_daily_loss_pct=6,
        max_open_positions=15,
        take_profit_stages=[8, 14, 22],
        take_profit_pct=22,
        max_concentration_pct=30,
    ),
    "very_aggressive": RiskLimits(
        kelly_multiplier=2.0,
        max_position_size_pct=20,
        min_cash_pct=5,
        min_confidence=58,
        min_pattern_win_rate=0.42,
        stop_loss_pct=8,
        max_daily_loss_pct=8,
        max_open_positions=20,
        take_profit_stages=[10, 18, 30],
        take_profit_pct=30,
        max_concentration_pct=40,
    ),
}


def get_risk_limits(profile: Optional[str] = None) -> RiskLimits:
    """Resolve a named risk profile, falling back to the configured default.

    Unknown names resolve to the configured profile, then to ``default``.
    Callers get a private copy they may mutate.
    """
    name = (profile or get_settings().risk_profile or "default").lower()
    limits = RISK_PROFILES.get(name)
    if limits is None:
        limits = RISK_PROFILES.get(get_settings().risk_profile.lower(), RISK_PROFILES["default"])
    return limits.model_copy(deep=True)
