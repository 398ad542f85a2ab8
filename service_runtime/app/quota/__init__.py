"""
Per-credential quota accounting.
"""
