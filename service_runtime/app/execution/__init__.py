"""
Code execution package.

Each invocation writes a harness, the user code and the request context
into a private temporary directory and runs the interpreter in its own
process group under a single deadline.
"""

from .engine import ExecutionEngine

__all__ = ["ExecutionEngine"]
