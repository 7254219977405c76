"""
Volume Radar scan service
Once-per-run watchlist scanner: relative volume ranking with consolidation setup detection

Layers:
  Acquisition     → multi-provider fetch with retry and bounded concurrency
  Processing      → series normalisation and MarketRecord construction
  Analysis        → technical indicators (SMA / Wilder RSI / peak & base)
  Classification  → consolidation setup tiers
  Ranking         → RVOL filter, tie-break ranking, volume without price
"""

__version__ = "1.0.0"
