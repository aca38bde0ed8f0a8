"""Version resolution and platform asset naming."""

from .platform import detect_platform, resolve_asset
from .resolver import VersionResolver

__all__ = ["detect_platform", "resolve_asset", "VersionResolver"]
