"""
Scriptable endpoint runtime.
"""
