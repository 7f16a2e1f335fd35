"""
AutoTrader - Market Feature Tests

Sentiment, feature vector and price geometry helpers.
"""

import pytest


def _bundle(prices, volumes=None):
    from autotrader.engines.indicator_engine import IndicatorEngine
    return IndicatorEngine().compute_series(prices, volumes)


class TestSentiment:

    def test_bullish_regime_on_steady_uptrend(self):
        from autotrader.engines.market_features import compute_market_sentiment
        from autotrader.models import MarketRegime, VolatilityRegime

        prices = [1.0 + i * 0.01 for i in range(60)]
        sentiment = compute_market_sentiment(_bundle(prices, [100.0] * 60))
        assert sentiment.market_regime == MarketRegime.BULLISH
        assert sentiment.volatility_regime == VolatilityRegime.LOW
        assert sentiment.volume_weighted_price == pytest.approx(sum(prices) / 60)

    def test_sideways_on_flat_series(self):
        from autotrader.engines.market_features import compute_market_sentiment, trend_strength
        from autotrader.models import MarketRegime

        prices = [1.0] * 60
        assert compute_market_sentiment(_bundle(prices)).market_regime == MarketRegime.SIDEWAYS
        assert trend_strength(prices) == 0.0

    def test_volatility_regime_boundaries(self):
        from autotrader.engines.market_features import volatility_regime
        from autotrader.models import VolatilityRegime

        regimes = [volatility_regime(v) for v in (0.0, 1.99, 2.0, 4.99, 5.0, 12.0)]
        assert regimes == [
            VolatilityRegime.LOW,
            VolatilityRegime.LOW,
            VolatilityRegime.MEDIUM,
            VolatilityRegime.MEDIUM,
            VolatilityRegime.HIGH,
            VolatilityRegime.HIGH,
        ]

    def test_trend_strength_needs_full_window(self):
        from autotrader.engines.market_features import trend_strength
        assert trend_strength([1.0, 1.1, 1.2]) == 0.0
        assert trend_strength([1.0 + i * 0.01 for i in range(20)]) == pytest.approx(100.0)


class TestFeatureVector:

    def test_group_sizes(self):
        from autotrader.engines.market_features import build_feature_vector, compute_market_sentiment

        bundle = _bundle([1.0 + (i % 7) * 0.01 for i in range(60)], [100.0 + i for i in range(60)])
        features = build_feature_vector(bundle, compute_market_sentiment(bundle))
        assert len(features.technical) == 10
        assert len(features.sentiment) == 6
        assert len(features.pattern) == 3
        assert len(features.momentum) == 3
        assert features.rsi == bundle.rsi

    def test_price_volume_correlation_perfect(self):
        from autotrader.engines.market_features import price_volume_correlation
        prices = [float(i) for i in range(1, 21)]
        volumes = [float(i * 10) for i in range(1, 21)]
        assert price_volume_correlation(prices, volumes) == pytest.approx(1.0)

    def test_momentum_divergence_at_rsi_extreme(self):
        from autotrader.engines.market_features import momentum_divergence
        prices = [1.0 + i * 0.01 for i in range(12)]
        assert momentum_divergence(prices, rsi=80) == 0.8
        assert momentum_divergence(prices, rsi=50) == 0.0


class TestGeometry:

    def test_local_extrema(self):
        from autotrader.engines.market_features import local_maxima, local_minima, swing_points
        prices = [1, 3, 2, 4, 1, 5]
        assert local_maxima(prices) == [1, 3]
        assert local_minima(prices) == [2, 4]
        assert swing_points(prices) == [1, 2, 3, 4]

    def test_fibonacci_levels(self):
        from autotrader.engines.market_features import fibonacci_levels
        prices = [1.0] + [1.5] * 8 + [2.0]
        levels = fibonacci_levels(prices)
        assert levels["0.0"] == 1.0
        assert levels["0.5"] == pytest.approx(1.5)
        assert levels["1.0"] == 2.0

    def test_fibonacci_empty_when_flat(self):
        from autotrader.engines.market_features import fibonacci_levels, retracement_level
        assert fibonacci_levels([2.0] * 20) == {}
        assert retracement_level([2.0] * 20) == 0.0

    def test_volume_nodes_sorted_and_poc(self):
        from autotrader.engines.market_features import point_of_control, volume_nodes
        prices = [1.0, 1.0, 2.0]
        volumes = [10.0, 10.0, 100.0]
        nodes = volume_nodes(prices, volumes)
        assert len(nodes) == 20
        assert nodes[0].volume == 100.0
        assert [n.volume for n in nodes] == sorted((n.volume for n in nodes), reverse=True)
        assert point_of_control(prices, volumes) == pytest.approx(nodes[0].price)

    def test_volume_nodes_empty_when_flat(self):
        from autotrader.engines.market_features import point_of_control, volume_nodes
        assert volume_nodes([3.0] * 10, [1.0] * 10) == []
        assert point_of_control([3.0] * 10, [1.0] * 10) == 3.0

    def test_window_trend(self):
        from autotrader.engines.market_features import window_trend
        assert window_trend([1.0, 1.0, 1.1], 3) == pytest.approx(0.1)
        assert window_trend([1.0], 3) == 0.0

    def test_sigmoid_bounds(self):
        from autotrader.engines.market_features import sigmoid
        assert sigmoid(0) == 0.5
        assert 0.0 <= sigmoid(-1e6) < 1e-100
        assert sigmoid(1e6) == pytest.approx(1.0)
