"""EvoTrader dashboard backend: trade gates, paper/live execution and dashboard feeds"""

__version__ = "0.4.0"
