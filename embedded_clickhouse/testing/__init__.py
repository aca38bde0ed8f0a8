"""Testing utilities for embedding ClickHouse in test suites."""

from .hooks import LifecycleHook, ClickHouseLifecycleHook

__all__ = ["LifecycleHook", "ClickHouseLifecycleHook"]
