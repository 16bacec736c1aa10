"""Calendar source providers."""

from calsync.sources.base import FetchResult, SourceProvider
from calsync.sources.cloud import CloudAccountProvider
from calsync.sources.fallback import NativeCalendarProvider
from calsync.sources.ics import FileImportProvider
from calsync.sources.native import NativeHelperProvider
from calsync.sources.script import ScriptFallbackProvider

__all__ = [
    "CloudAccountProvider",
    "FetchResult",
    "FileImportProvider",
    "NativeCalendarProvider",
    "NativeHelperProvider",
    "ScriptFallbackProvider",
    "SourceProvider",
]
