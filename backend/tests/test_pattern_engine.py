"""
AutoTrader - Pattern Engine Tests

Heuristic scoring, ensemble rules and the detector's filtering cycle.
"""

import asyncio

import pytest


def _momentum_series(n: int = 60):
    """Flat series ending in three rising closes on expanding volume."""
    prices = [1.0] * (n - 3) + [1.01, 1.02, 1.03]
    volumes = [100.0] * (n - 1) + [130.0]
    return prices, volumes


def _bundle(prices, volumes=None):
    from autotrader.engines.indicator_engine import IndicatorEngine
    return IndicatorEngine().compute_series(prices, volumes)


def _candidate(pattern_type, confidence: float):
    from autotrader.engines.pattern_engine import PatternCandidate
    from autotrader.models import BullishMomentumMetadata
    return PatternCandidate(pattern_type, confidence, "1h", BullishMomentumMetadata(consecutive_ups=3, volume_increase_pct=20))


def _settings(**overrides):
    from autotrader.config import Settings
    return Settings(_env_file=None, **overrides)


# ──────────────────────────────────────────────
# PatternEngine
# ──────────────────────────────────────────────


class TestPatternEngine:

    @pytest.mark.parametrize("n", [0, 1, 5, 9])
    def test_short_series_yields_nothing(self, n):
        from autotrader.engines.pattern_engine import PatternEngine
        prices = [1.0 + i * 0.01 for i in range(n)]
        assert PatternEngine().detect(_bundle(prices, [100.0] * n)) == []

    def test_zero_price_yields_nothing(self):
        from autotrader.engines.pattern_engine import PatternEngine
        assert PatternEngine().detect(_bundle([1.0] * 30 + [0.0])) == []

    def test_strong_bullish_momentum_detected(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        prices, volumes = _momentum_series()
        found = {c.pattern_type: c for c in PatternEngine().detect(_bundle(prices, volumes))}
        momentum = found[PatternType.STRONG_BULLISH_MOMENTUM]
        assert momentum.confidence == 82.0
        assert momentum.timeframe == "1h"
        assert momentum.metadata.consecutive_ups == 3

    def test_bullish_momentum_needs_volume_expansion(self):
        from autotrader.engines.pattern_engine import PatternEngine
        prices, _ = _momentum_series()
        assert PatternEngine.bullish_momentum(prices, [100.0] * 59 + [119.0]) is None
        assert PatternEngine.bullish_momentum(prices, [100.0] * 59 + [120.0]) is not None

    def test_bullish_momentum_needs_strict_rise(self):
        from autotrader.engines.pattern_engine import PatternEngine
        assert PatternEngine.bullish_momentum([1.0, 1.01, 1.01], [100.0, 100.0, 200.0]) is None

    def test_flat_series_has_no_timeframe_alignment(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        types = {c.pattern_type for c in PatternEngine().detect(_bundle([1.0] * 60, [100.0] * 60))}
        assert PatternType.MULTI_TIMEFRAME not in types
        assert PatternType.FIBONACCI not in types

    def test_consolidation_breakout(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        prices = [1.0] * 20 + [1.0, 1.001, 0.999, 1.0, 1.002, 1.05]
        found = PatternEngine().price_action_patterns(prices, [100.0] * len(prices))
        breakout = [c for c in found if c.pattern_type == PatternType.CONSOLIDATION_BREAKOUT]
        assert len(breakout) == 1
        assert breakout[0].metadata.breakout_size_pct > 2

    def test_v_shaped_reversal(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        prices = [1.0] * 10 + [1.0, 0.95, 0.95, 0.98]
        found = PatternEngine().price_action_patterns(prices, [100.0] * len(prices))
        assert PatternType.V_SHAPED_REVERSAL in {c.pattern_type for c in found}

    def test_harmonic_ratio_is_deterministic(self):
        from autotrader.engines.pattern_engine import PatternEngine

        prices = [1.0, 2.0, 1.382, 1.8, 1.5]
        engine = PatternEngine()
        first = engine.harmonic_ratio(prices)
        assert first == engine.harmonic_ratio(prices)
        ratio, nearest, accuracy = first
        assert ratio == pytest.approx(0.418 / 0.618)
        assert nearest == 0.618
        assert accuracy == pytest.approx(1 - abs(0.418 / 0.618 - 0.618) / 0.618)

    def test_harmonic_ratio_without_swings(self):
        from autotrader.engines.pattern_engine import PatternEngine
        assert PatternEngine().harmonic_ratio([1.0, 1.1, 1.2, 1.3]) == (0.0, 0.0, 0.0)


class TestEnsemble:

    def test_needs_three_members(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        bundle = _bundle([1.0] * 60)
        two = [_candidate(PatternType.STRONG_BUY_PRESSURE, 90), _candidate(PatternType.ACCUMULATION, 90)]
        assert PatternEngine().ensemble(two, bundle) is None

    def test_weighted_average_of_members(self):
        from autotrader.engines.pattern_engine import ENSEMBLE_WEIGHTS, PatternEngine
        from autotrader.models import PatternType

        bundle = _bundle([1.0] * 60)
        members = [
            _candidate(PatternType.STRONG_BUY_PRESSURE, 90),
            _candidate(PatternType.ACCUMULATION, 84),
            _candidate(PatternType.CONSOLIDATION_BREAKOUT, 81),
        ]
        weight = ENSEMBLE_WEIGHTS[PatternType.STRONG_BUY_PRESSURE]
        expected = (90 * weight + 84 + 81) / (weight + 2)
        combined = PatternEngine().ensemble(members, bundle)
        assert combined.pattern_type == PatternType.ENSEMBLE
        assert combined.confidence == pytest.approx(expected)
        assert combined.metadata.pattern_count == 3

    def test_capped_at_95(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        bundle = _bundle([1.0 + i * 0.01 for i in range(80)])
        members = [_candidate(t, 100) for t in (PatternType.STRONG_BUY_PRESSURE, PatternType.ACCUMULATION, PatternType.V_SHAPED_REVERSAL)]
        assert PatternEngine().ensemble(members, bundle).confidence == 95.0

    def test_weak_consensus_dropped(self):
        from autotrader.engines.pattern_engine import PatternEngine
        from autotrader.models import PatternType

        bundle = _bundle([1.0] * 60)
        members = [_candidate(t, 70) for t in (PatternType.STRONG_BUY_PRESSURE, PatternType.ACCUMULATION, PatternType.V_SHAPED_REVERSAL)]
        assert PatternEngine().ensemble(members, bundle) is None


# ──────────────────────────────────────────────
# PatternDetector
# ──────────────────────────────────────────────


class TestPatternDetector:

    def _setup(self, n: int = 60, **settings):
        from autotrader.engines.pattern_engine import PatternDetector
        from autotrader.events import EventBus, PatternDetected
        from autotrader.models import Token
        from autotrader.storage import InMemoryStorage

        storage = InMemoryStorage()
        bus = EventBus()
        sub = bus.subscribe(PatternDetected)
        token = storage.add_token(Token(symbol="MOMO", current_price=1.03))
        prices, volumes = _momentum_series(n)
        storage.add_price_points(token.id, prices, volumes)
        detector = PatternDetector(storage, bus, _settings(**settings))
        return storage, sub, token, detector

    def test_insufficient_history_is_skipped(self):
        async def scenario():
            storage, sub, token, detector = self._setup(n=20)
            patterns = await detector.analyze_token(token)
            return patterns, sub.pending

        assert asyncio.run(scenario()) == ([], 0)

    def test_detects_persists_and_publishes(self):
        from autotrader.models import PatternType

        async def scenario():
            storage, sub, token, detector = self._setup()
            count = await detector.run_cycle()
            stored = await storage.get_all_patterns()
            published = [(await sub.get()).pattern.pattern_type for _ in range(sub.pending)]
            return count, stored, published

        count, stored, published = asyncio.run(scenario())
        assert count == len(stored) == len(published)
        assert PatternType.STRONG_BULLISH_MOMENTUM in published
        assert all(p.confidence > 65 for p in stored)

    def test_dynamic_threshold_filters(self):
        from autotrader.engines.pattern_engine import MIN_CONFIDENCE_PARAM
        from autotrader.models import PatternType

        async def scenario():
            storage, sub, token, detector = self._setup()
            await storage.update_ml_learning_param(MIN_CONFIDENCE_PARAM, 90)
            return [p.pattern_type for p in await detector.analyze_token(token)]

        assert PatternType.STRONG_BULLISH_MOMENTUM not in asyncio.run(scenario())

    def test_multiplier_lifts_pattern_over_threshold(self):
        from autotrader.engines.pattern_engine import MIN_CONFIDENCE_PARAM
        from autotrader.models import PatternPerformanceRecord, PatternType

        async def scenario():
            storage, sub, token, detector = self._setup()
            await storage.update_ml_learning_param(MIN_CONFIDENCE_PARAM, 90)
            await storage.upsert_pattern_performance(PatternPerformanceRecord(
                pattern_type=PatternType.STRONG_BULLISH_MOMENTUM.value, timeframe="1h",
                total_trades=5, confidence_multiplier=1.2,
            ))
            patterns = await detector.analyze_token(token)
            return {p.pattern_type: p for p in patterns}

        momentum = asyncio.run(scenario())[PatternType.STRONG_BULLISH_MOMENTUM]
        assert momentum.confidence == 82.0
        assert momentum.adjusted_confidence == pytest.approx(98.4)

    def test_threshold_is_clamped(self):
        from autotrader.engines.pattern_engine import MIN_CONFIDENCE_PARAM

        async def scenario():
            storage, sub, token, detector = self._setup()
            await storage.update_ml_learning_param(MIN_CONFIDENCE_PARAM, 99)
            high = await detector.get_min_confidence()
            await storage.update_ml_learning_param(MIN_CONFIDENCE_PARAM, 10)
            low = await detector.get_min_confidence()
            return high, low

        assert asyncio.run(scenario()) == (90.0, 60.0)

    def test_default_threshold(self):
        async def scenario():
            storage, sub, token, detector = self._setup()
            return await detector.get_min_confidence()

        assert asyncio.run(scenario()) == 75.0

    def test_failing_token_does_not_abort_cycle(self):
        from unittest.mock import AsyncMock

        from autotrader.models import Token

        async def scenario():
            storage, sub, token, detector = self._setup()
            storage.add_token(Token(symbol="BROKEN", current_price=1.0))
            real = detector.analyze_token

            async def flaky(t):
                if t.symbol == "BROKEN":
                    raise RuntimeError("boom")
                return await real(t)

            detector.analyze_token = AsyncMock(side_effect=flaky)
            count = await detector.run_cycle()
            return count, detector.analyze_token.await_count

        count, calls = asyncio.run(scenario())
        assert calls == 2
        assert count > 0
