"""Investment analytics engine and its lookup tables."""

from estate_sync.analysis.engine import AnalyticsEngine, InvestmentMetrics
from estate_sync.analysis.tables import City, Tier

__all__ = [
    "AnalyticsEngine",
    "City",
    "InvestmentMetrics",
    "Tier",
]
