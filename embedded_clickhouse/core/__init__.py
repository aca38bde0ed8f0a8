"""Core framework components."""

from .value_objects import ClickHouseVersion, Platform, CacheKey, InstanceId

__all__ = ["ClickHouseVersion", "Platform", "CacheKey", "InstanceId"]
