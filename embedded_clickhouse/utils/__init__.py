"""Utility modules."""

from .filesystem import atomic_write, ensure_dir, safe_remove
from .ports import PortManager, get_port_manager

__all__ = [
    "atomic_write",
    "ensure_dir",
    "safe_remove",
    "PortManager",
    "get_port_manager",
]
