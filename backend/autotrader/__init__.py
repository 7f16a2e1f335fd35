"""
AutoTrader - Trading Core

Pattern detection, risk gating, simulated execution and adaptive
performance learning for crypto tokens, wired together by an in-process
event bus.
"""

__version__ = "0.4.0"

from autotrader.runtime import TradingCore  # noqa: E402

__all__ = ["TradingCore", "__version__"]
