"""Instance management components.

API:
    - EmbeddedClickHouse: lifecycle facade
    - RunningInstance: handle for one started server
    - start / stop / stop_all: module-level shortcuts on a default facade
"""

from .lifecycle import EmbeddedClickHouse, start, stop, stop_all
from .server import RunningInstance

__all__ = [
    "EmbeddedClickHouse",
    "RunningInstance",
    "start",
    "stop",
    "stop_all",
]
