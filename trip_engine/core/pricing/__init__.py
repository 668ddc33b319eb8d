# trip_engine/core/pricing/__init__.py
"""
Домен тарифов.
"""

from trip_engine.core.pricing.service import FareEstimator, haversine_km

__all__ = ["FareEstimator", "haversine_km"]
