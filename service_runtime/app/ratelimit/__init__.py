"""
Rate limiting package for the Runtime Service.

Holds the fixed-window limiter (in memory or Redis) that enforces
per-route request budgets.
"""
