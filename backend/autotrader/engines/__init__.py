"""Trading engines: indicators, patterns, risk, execution, learning and alerts."""
