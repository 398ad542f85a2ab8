"""
Route resolution with a TTL cache.
"""
