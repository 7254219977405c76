"""
Scan pipeline layers
  Acquisition     : provider fallback, retry, bounded concurrency
  Processing      : bar normalisation, MarketRecord construction
  Analysis        : indicator library
  Classification  : consolidation setup tiers
  Ranking         : RVOL filter, ranking, volume without price
"""
