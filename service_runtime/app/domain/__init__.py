"""
Domain models and request processing for the Runtime Service.
"""
