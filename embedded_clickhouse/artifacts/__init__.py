"""Artifact cache, downloads and archive extraction."""

from .cache import ArtifactCache, InstallSession
from .downloader import Downloader, FetchResult
from .extractor import ArchiveExtractor
from .locking import InstallLock

__all__ = [
    "ArtifactCache",
    "InstallSession",
    "Downloader",
    "FetchResult",
    "ArchiveExtractor",
    "InstallLock",
]
