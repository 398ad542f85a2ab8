"""
Adapters package for the Runtime Service.

Contains the collaborators the runtime reads from and writes to:

- The route and credential registry (in memory, loadable from YAML)
- The request log sink

Keep adapters thin; admission decisions live elsewhere.
"""

from .registry import InMemoryRegistry, load_registry_file
from .request_log import RequestLogSink, RequestRecord

__all__ = [
    "InMemoryRegistry",
    "RequestLogSink",
    "RequestRecord",
    "load_registry_file",
]
