"""
SmartCharge Pricing Package

Modules:
    normalizer: Day-ahead feed parsing and hourly rate normalization
    windows: Cheapest charging window selection and per-user fan-out
    feed: ENTSO-E day-ahead client
    service: Daily refresh pipeline (fetch, publish, recompute windows)
"""

from .normalizer import HourlyRate, PriceSeries
from .windows import select_optimal_window

__all__ = ["HourlyRate", "PriceSeries", "select_optimal_window"]
