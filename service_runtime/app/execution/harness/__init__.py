"""
Harness templates written next to user code for each invocation.
"""
